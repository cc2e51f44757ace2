from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Sequence

from sqlalchemy import Table
from sqlalchemy.ext.asyncio import AsyncSession

from offboard.domain.models import (
    ActivityLog,
    Base,
    BlackboardConfirmation,
    BlackboardEntry,
    CalendarAttendee,
    CalendarEvent,
    Conversation,
    ConversationParticipant,
    Department,
    DocumentReadStatus,
    KvpComment,
    KvpSuggestion,
    Message,
    MessageReadReceipt,
    NotificationPreference,
    SharedResource,
    Shift,
    Survey,
    SurveyResponse,
    Team,
    TenantWebhook,
    UserTeam,
)
from offboard.services.deletion import handlers
from offboard.services.deletion.context import DeletionContext


PHASE_PRE_DELETION = "pre_deletion"
PHASE_CACHE_CLEANUP = "cache_cleanup"
PHASE_LEAF_CLEANUP = "leaf_cleanup"
PHASE_MID_TIER = "mid_tier"
PHASE_FK_NULLING = "fk_nulling"
PHASE_CORE = "core"
PHASE_POST_DELETION = "post_deletion"

PHASES = (
    PHASE_PRE_DELETION,
    PHASE_CACHE_CLEANUP,
    PHASE_LEAF_CLEANUP,
    PHASE_MID_TIER,
    PHASE_FK_NULLING,
    PHASE_CORE,
    PHASE_POST_DELETION,
)

StepHandler = Callable[[DeletionContext, str, int, AsyncSession], Awaitable[int]]


@dataclass(frozen=True)
class DeletionStep:
    name: str
    description: str
    phase: str
    critical: bool
    handler: StepHandler


# Tables nothing else points at; safe to clear first and non-critical.
LEAF_MODELS: tuple[Any, ...] = (
    ActivityLog,
    MessageReadReceipt,
    DocumentReadStatus,
    BlackboardConfirmation,
    NotificationPreference,
    SharedResource,
    TenantWebhook,
)


def dependency_order(models: Sequence[Any]) -> list[Any]:
    """Order models so every table comes before the tables it references.

    ``MetaData.sorted_tables`` lists referenced tables first; walking it in
    reverse yields dependents first, which is the safe deletion order.
    """
    wanted: dict[Table, Any] = {model.__table__: model for model in models}
    return [wanted[tbl] for tbl in reversed(Base.metadata.sorted_tables) if tbl in wanted]


def _leaf_steps() -> list[DeletionStep]:
    return [
        DeletionStep(
            name=f"delete_{model.__tablename__}",
            description=f"Delete {model.__tablename__} rows",
            phase=PHASE_LEAF_CLEANUP,
            critical=False,
            handler=handlers.make_tenant_rows_handler(model),
        )
        for model in dependency_order(LEAF_MODELS)
    ]


def _step(name: str, description: str, phase: str, critical: bool, handler: StepHandler) -> DeletionStep:
    return DeletionStep(name=name, description=description, phase=phase, critical=critical, handler=handler)


def build_deletion_steps() -> tuple[DeletionStep, ...]:
    pre_deletion = [
        _step(
            "check_legal_hold",
            "Abort if a legal hold is active",
            PHASE_PRE_DELETION,
            True,
            handlers.check_legal_hold,
        ),
        _step(
            "check_shared_resources",
            "Abort if resources are shared with other tenants",
            PHASE_PRE_DELETION,
            True,
            handlers.check_shared_resources,
        ),
        _step("create_data_export", "GDPR data export", PHASE_PRE_DELETION, True, handlers.export_tenant_data),
        _step("create_final_backup", "Final rollback backup", PHASE_PRE_DELETION, True, handlers.backup_tenant_data),
        _step(
            "archive_billing_records",
            "Archive invoices for statutory retention",
            PHASE_PRE_DELETION,
            False,
            handlers.archive_billing_records,
        ),
        _step(
            "send_final_notifications",
            "Email every active user",
            PHASE_PRE_DELETION,
            False,
            handlers.send_final_notifications,
        ),
        _step(
            "notify_external_webhooks",
            "Notify tenant webhooks",
            PHASE_PRE_DELETION,
            False,
            handlers.notify_external_webhooks,
        ),
    ]
    cache_cleanup = [
        _step(
            "purge_cache_and_sessions",
            "Purge sessions and cache keys",
            PHASE_CACHE_CLEANUP,
            False,
            handlers.purge_cache_and_sessions,
        ),
    ]
    mid_tier = [
        _step(
            "delete_messages",
            "Chat messages and conversations",
            PHASE_MID_TIER,
            True,
            handlers.make_tenant_rows_handler(MessageReadReceipt, Message, ConversationParticipant, Conversation),
        ),
        _step("delete_documents", "Documents and stored files", PHASE_MID_TIER, True, handlers.delete_documents),
        _step(
            "delete_surveys",
            "Surveys and responses",
            PHASE_MID_TIER,
            True,
            handlers.make_tenant_rows_handler(SurveyResponse, Survey),
        ),
        _step("delete_shifts", "Shift plans", PHASE_MID_TIER, True, handlers.make_tenant_rows_handler(Shift)),
        _step(
            "delete_calendar",
            "Calendar events and attendees",
            PHASE_MID_TIER,
            True,
            handlers.make_tenant_rows_handler(CalendarAttendee, CalendarEvent),
        ),
        _step(
            "delete_blackboard",
            "Blackboard entries and confirmations",
            PHASE_MID_TIER,
            True,
            handlers.make_tenant_rows_handler(BlackboardConfirmation, BlackboardEntry),
        ),
        _step(
            "delete_kvp",
            "Improvement suggestions and comments",
            PHASE_MID_TIER,
            True,
            handlers.make_tenant_rows_handler(KvpComment, KvpSuggestion),
        ),
    ]
    fk_nulling = [
        _step(
            "nullify_user_references",
            "Null created_by/manager/team lead references",
            PHASE_FK_NULLING,
            True,
            handlers.nullify_user_references,
        ),
    ]
    core = [
        _step(
            "delete_teams",
            "Teams and memberships",
            PHASE_CORE,
            True,
            handlers.make_tenant_rows_handler(UserTeam, Team),
        ),
        _step("delete_departments", "Departments", PHASE_CORE, True, handlers.make_tenant_rows_handler(Department)),
        _step("delete_users", "Users except the requester", PHASE_CORE, True, handlers.delete_users_except_requester),
        _step("delete_requester", "The requesting user", PHASE_CORE, True, handlers.delete_requester),
        _step("delete_tenant_record", "The tenant row", PHASE_CORE, True, handlers.delete_tenant_record),
        _step("cleanup_queue_history", "Superseded queue items", PHASE_CORE, False, handlers.cleanup_queue_history),
    ]
    post_deletion = [
        _step("release_subdomain", "Release the subdomain", PHASE_POST_DELETION, False, handlers.release_subdomain),
        _step(
            "purge_temp_directories",
            "Upload and temp directories",
            PHASE_POST_DELETION,
            False,
            handlers.purge_temp_directories,
        ),
        _step(
            "purge_object_storage",
            "Object storage prefix",
            PHASE_POST_DELETION,
            False,
            handlers.purge_object_storage,
        ),
    ]
    return tuple(pre_deletion + cache_cleanup + _leaf_steps() + mid_tier + fk_nulling + core + post_deletion)


DELETION_STEPS: tuple[DeletionStep, ...] = build_deletion_steps()
