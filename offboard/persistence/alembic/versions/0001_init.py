"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-12 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _created_at(name: str = "created_at") -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now())


def _tenant_fk() -> sa.Column:
    # Avoid index=True here because we create explicit indexes below.
    return sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=False)


def _user_fk(name: str, *, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.String(), sa.ForeignKey("users.id"), nullable=nullable)


# Tenant-owned tables, parents first.
_TENANT_INDEXED_TABLES = (
    "users",
    "departments",
    "teams",
    "user_teams",
    "conversations",
    "conversation_participants",
    "messages",
    "message_read_receipts",
    "documents",
    "document_read_status",
    "surveys",
    "survey_responses",
    "shifts",
    "calendar_events",
    "calendar_attendees",
    "blackboard_entries",
    "blackboard_confirmations",
    "kvp_suggestions",
    "kvp_comments",
    "activity_logs",
    "notification_preferences",
    "invoices",
    "shared_resources",
    "tenant_webhooks",
    "subdomain_reservations",
    "legal_holds",
    "audit_events",
    "deletion_audit_trail",
    "tenant_deletion_queue",
    "tenant_data_exports",
    "tenant_deletion_backups",
    "archived_tenant_invoices",
    "deletion_file_failures",
)


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("company_name", sa.String(), nullable=False),
        sa.Column("subdomain", sa.String(), nullable=False, unique=True),
        sa.Column("deletion_status", sa.String(), nullable=False, server_default="active"),
        sa.Column("deletion_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deletion_requested_by", sa.String(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_tenants_deletion_status", "tenants", ["deletion_status"])

    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True),
        _tenant_fk(),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("first_name", sa.String(), nullable=True),
        sa.Column("last_name", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _user_fk("created_by"),
        _created_at(),
    )
    op.create_table(
        "departments",
        sa.Column("id", sa.String(), primary_key=True),
        _tenant_fk(),
        sa.Column("name", sa.String(), nullable=False),
        _user_fk("manager_id"),
        _user_fk("created_by"),
        _created_at(),
    )
    op.create_table(
        "teams",
        sa.Column("id", sa.String(), primary_key=True),
        _tenant_fk(),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("department_id", sa.String(), sa.ForeignKey("departments.id"), nullable=True),
        _user_fk("team_lead_id"),
        _user_fk("created_by"),
        _created_at(),
    )
    op.create_table(
        "user_teams",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _tenant_fk(),
        _user_fk("user_id", nullable=False),
        sa.Column("team_id", sa.String(), sa.ForeignKey("teams.id"), nullable=False),
    )
    op.create_index("ix_user_teams_user_id", "user_teams", ["user_id"])
    op.create_index("ix_user_teams_team_id", "user_teams", ["team_id"])

    op.create_table(
        "conversations",
        sa.Column("id", sa.String(), primary_key=True),
        _tenant_fk(),
        sa.Column("title", sa.String(), nullable=True),
        _user_fk("created_by"),
        _created_at(),
    )
    op.create_table(
        "conversation_participants",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _tenant_fk(),
        sa.Column("conversation_id", sa.String(), sa.ForeignKey("conversations.id"), nullable=False),
        _user_fk("user_id", nullable=False),
    )
    op.create_index(
        "ix_conversation_participants_conversation_id", "conversation_participants", ["conversation_id"]
    )
    op.create_index("ix_conversation_participants_user_id", "conversation_participants", ["user_id"])
    op.create_table(
        "messages",
        sa.Column("id", sa.String(), primary_key=True),
        _tenant_fk(),
        sa.Column("conversation_id", sa.String(), sa.ForeignKey("conversations.id"), nullable=False),
        _user_fk("sender_id"),
        sa.Column("content", sa.Text(), nullable=False),
        _created_at(),
    )
    op.create_index("ix_messages_conversation_id", "messages", ["conversation_id"])
    op.create_table(
        "message_read_receipts",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _tenant_fk(),
        sa.Column("message_id", sa.String(), sa.ForeignKey("messages.id"), nullable=False),
        _user_fk("user_id", nullable=False),
        _created_at("read_at"),
    )
    op.create_index("ix_message_read_receipts_message_id", "message_read_receipts", ["message_id"])
    op.create_index("ix_message_read_receipts_user_id", "message_read_receipts", ["user_id"])

    op.create_table(
        "documents",
        sa.Column("id", sa.String(), primary_key=True),
        _tenant_fk(),
        _user_fk("owner_user_id"),
        _user_fk("uploaded_by"),
        sa.Column("filename", sa.String(), nullable=False),
        sa.Column("file_path", sa.String(), nullable=True),
        _created_at(),
    )
    op.create_table(
        "document_read_status",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _tenant_fk(),
        sa.Column("document_id", sa.String(), sa.ForeignKey("documents.id"), nullable=False),
        _user_fk("user_id", nullable=False),
        _created_at("read_at"),
    )
    op.create_index("ix_document_read_status_document_id", "document_read_status", ["document_id"])
    op.create_index("ix_document_read_status_user_id", "document_read_status", ["user_id"])

    op.create_table(
        "surveys",
        sa.Column("id", sa.String(), primary_key=True),
        _tenant_fk(),
        sa.Column("title", sa.String(), nullable=False),
        _user_fk("created_by"),
        _created_at(),
    )
    op.create_table(
        "survey_responses",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _tenant_fk(),
        sa.Column("survey_id", sa.String(), sa.ForeignKey("surveys.id"), nullable=False),
        _user_fk("user_id"),
        sa.Column("answers_json", postgresql.JSONB(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_survey_responses_survey_id", "survey_responses", ["survey_id"])

    op.create_table(
        "shifts",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _tenant_fk(),
        _user_fk("user_id", nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
        _user_fk("created_by"),
    )
    op.create_index("ix_shifts_user_id", "shifts", ["user_id"])

    op.create_table(
        "calendar_events",
        sa.Column("id", sa.String(), primary_key=True),
        _tenant_fk(),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        _user_fk("created_by"),
    )
    op.create_table(
        "calendar_attendees",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _tenant_fk(),
        sa.Column("event_id", sa.String(), sa.ForeignKey("calendar_events.id"), nullable=False),
        _user_fk("user_id", nullable=False),
    )
    op.create_index("ix_calendar_attendees_event_id", "calendar_attendees", ["event_id"])
    op.create_index("ix_calendar_attendees_user_id", "calendar_attendees", ["user_id"])

    op.create_table(
        "blackboard_entries",
        sa.Column("id", sa.String(), primary_key=True),
        _tenant_fk(),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("content", sa.Text(), nullable=True),
        _user_fk("author_id"),
        _created_at(),
    )
    op.create_table(
        "blackboard_confirmations",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _tenant_fk(),
        sa.Column("entry_id", sa.String(), sa.ForeignKey("blackboard_entries.id"), nullable=False),
        _user_fk("user_id", nullable=False),
        _created_at("confirmed_at"),
    )
    op.create_index("ix_blackboard_confirmations_entry_id", "blackboard_confirmations", ["entry_id"])
    op.create_index("ix_blackboard_confirmations_user_id", "blackboard_confirmations", ["user_id"])

    op.create_table(
        "kvp_suggestions",
        sa.Column("id", sa.String(), primary_key=True),
        _tenant_fk(),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        _user_fk("submitted_by"),
        _created_at(),
    )
    op.create_table(
        "kvp_comments",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _tenant_fk(),
        sa.Column("suggestion_id", sa.String(), sa.ForeignKey("kvp_suggestions.id"), nullable=False),
        _user_fk("user_id"),
        sa.Column("comment", sa.Text(), nullable=False),
    )
    op.create_index("ix_kvp_comments_suggestion_id", "kvp_comments", ["suggestion_id"])

    op.create_table(
        "activity_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _tenant_fk(),
        _user_fk("user_id"),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("details_json", postgresql.JSONB(), nullable=True),
        _created_at(),
    )
    op.create_table(
        "notification_preferences",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _tenant_fk(),
        _user_fk("user_id", nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index("ix_notification_preferences_user_id", "notification_preferences", ["user_id"])

    op.create_table(
        "invoices",
        sa.Column("id", sa.String(), primary_key=True),
        _tenant_fk(),
        sa.Column("number", sa.String(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False, server_default="EUR"),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload_json", postgresql.JSONB(), nullable=True),
    )
    op.create_table(
        "shared_resources",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _tenant_fk(),
        sa.Column("shared_with_tenant_id", sa.String(), nullable=True),
        sa.Column("resource_type", sa.String(), nullable=False),
        sa.Column("resource_id", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index("ix_shared_resources_shared_with_tenant_id", "shared_resources", ["shared_with_tenant_id"])
    op.create_table(
        "tenant_webhooks",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _tenant_fk(),
        sa.Column("url", sa.String(), nullable=False),
        sa.Column("secret", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    # Tables below keep their rows after the tenant is gone, so no FK to tenants.
    op.create_table(
        "subdomain_reservations",
        sa.Column("subdomain", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        _created_at("reserved_at"),
    )
    op.create_table(
        "legal_holds",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("created_by_actor_id", sa.String(), nullable=True),
        _created_at(),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index("ix_legal_holds_is_active", "legal_holds", ["is_active"])
    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("actor_role", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"])
    op.create_table(
        "deletion_audit_trail",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("queue_id", sa.BigInteger(), nullable=True),
        sa.Column("tenant_name", sa.String(), nullable=False),
        sa.Column("user_count_at_deletion", sa.Integer(), nullable=False),
        sa.Column("deleted_by", sa.String(), nullable=False),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_deletion_audit_trail_queue_id", "deletion_audit_trail", ["queue_id"])

    op.create_table(
        "tenant_deletion_queue",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("approval_status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("approver_id", sa.String(), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approval_comment", sa.Text(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("cooling_off_hours", sa.Integer(), nullable=False),
        sa.Column("scheduled_deletion_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending_approval"),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_step", sa.String(), nullable=True),
        sa.Column("total_steps", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("emergency_stop", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("emergency_stopped_by", sa.String(), nullable=True),
        sa.Column("emergency_stopped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        _created_at(),
        _created_at("updated_at"),
    )
    op.create_index("ix_tenant_deletion_queue_status", "tenant_deletion_queue", ["status"])
    op.create_index("ix_tenant_deletion_queue_approval_status", "tenant_deletion_queue", ["approval_status"])
    op.create_index(
        "ix_tenant_deletion_queue_scheduled_deletion_date", "tenant_deletion_queue", ["scheduled_deletion_date"]
    )
    # Worker poll: queued + approved items.
    op.create_index(
        "ix_tenant_deletion_queue_eligible", "tenant_deletion_queue", ["status", "approval_status"]
    )
    op.create_table(
        "tenant_deletion_log",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("queue_id", sa.BigInteger(), sa.ForeignKey("tenant_deletion_queue.id"), nullable=False),
        sa.Column("step_name", sa.String(), nullable=False),
        sa.Column("records_deleted", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("duration_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_tenant_deletion_log_queue_id", "tenant_deletion_log", ["queue_id"])

    op.create_table(
        "tenant_data_exports",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("queue_id", sa.BigInteger(), nullable=True),
        sa.Column("file_path", sa.String(), nullable=False),
        sa.Column("checksum", sa.String(), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("row_count", sa.Integer(), nullable=False, server_default="0"),
        _created_at(),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_tenant_data_exports_queue_id", "tenant_data_exports", ["queue_id"])
    op.create_table(
        "tenant_deletion_backups",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("queue_id", sa.BigInteger(), nullable=True),
        sa.Column("file_path", sa.String(), nullable=False),
        sa.Column("manifest_path", sa.String(), nullable=False),
        sa.Column("checksum", sa.String(), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("encrypted", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
    )
    op.create_index("ix_tenant_deletion_backups_queue_id", "tenant_deletion_backups", ["queue_id"])
    op.create_table(
        "archived_tenant_invoices",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("queue_id", sa.BigInteger(), nullable=True),
        sa.Column("original_invoice_id", sa.String(), nullable=False, unique=True),
        sa.Column("number", sa.String(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload_json", postgresql.JSONB(), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("retain_until", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_table(
        "deletion_file_failures",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("queue_id", sa.BigInteger(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("file_path", sa.String(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=False),
        _created_at(),
    )
    op.create_index("ix_deletion_file_failures_queue_id", "deletion_file_failures", ["queue_id"])
    op.create_table(
        "deletion_alerts",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("queue_id", sa.BigInteger(), nullable=True),
        sa.Column("alert_type", sa.String(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("response_code", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        _created_at("sent_at"),
    )
    op.create_index("ix_deletion_alerts_queue_id", "deletion_alerts", ["queue_id"])

    for table_name in _TENANT_INDEXED_TABLES:
        op.create_index(f"ix_{table_name}_tenant_id", table_name, ["tenant_id"])


def downgrade() -> None:
    for table_name in reversed(_TENANT_INDEXED_TABLES):
        op.drop_index(f"ix_{table_name}_tenant_id", table_name=table_name)
    for table_name in (
        "deletion_alerts",
        "deletion_file_failures",
        "archived_tenant_invoices",
        "tenant_deletion_backups",
        "tenant_data_exports",
        "tenant_deletion_log",
        "tenant_deletion_queue",
        "deletion_audit_trail",
        "audit_events",
        "legal_holds",
        "subdomain_reservations",
        "tenant_webhooks",
        "shared_resources",
        "invoices",
        "notification_preferences",
        "activity_logs",
        "kvp_comments",
        "kvp_suggestions",
        "blackboard_confirmations",
        "blackboard_entries",
        "calendar_attendees",
        "calendar_events",
        "shifts",
        "survey_responses",
        "surveys",
        "document_read_status",
        "documents",
        "message_read_receipts",
        "messages",
        "conversation_participants",
        "conversations",
        "user_teams",
        "teams",
        "departments",
        "users",
        "tenants",
    ):
        # Indexes go with their tables.
        op.drop_table(table_name)
