from __future__ import annotations


TENANT_ACTIVE = "active"
TENANT_MARKED_FOR_DELETION = "marked_for_deletion"
TENANT_SUSPENDED = "suspended"
TENANT_DELETING = "deleting"
# Reported by the status endpoint once the tenant row is gone.
TENANT_DELETED = "deleted"

APPROVAL_PENDING = "pending"
APPROVAL_APPROVED = "approved"
APPROVAL_REJECTED = "rejected"

QUEUE_PENDING_APPROVAL = "pending_approval"
QUEUE_QUEUED = "queued"
QUEUE_PROCESSING = "processing"
QUEUE_COMPLETED = "completed"
QUEUE_FAILED = "failed"
QUEUE_CANCELLED = "cancelled"
QUEUE_REJECTED = "rejected"
QUEUE_EMERGENCY_STOPPED = "emergency_stopped"

QUEUE_TERMINAL_STATUSES = frozenset(
    {QUEUE_COMPLETED, QUEUE_FAILED, QUEUE_CANCELLED, QUEUE_REJECTED, QUEUE_EMERGENCY_STOPPED}
)
# Statuses that block a new request for the same tenant.
QUEUE_IN_FLIGHT_STATUSES = frozenset({QUEUE_PENDING_APPROVAL, QUEUE_QUEUED, QUEUE_PROCESSING})

STEP_SUCCESS = "success"
STEP_FAILED = "failed"

BLOCKED_LEGAL_HOLD = "legal_hold"
BLOCKED_SHARED_RESOURCES = "shared_resources"

# Tables that keep tenant rows after deletion for compliance.
COMPLIANCE_TABLES = frozenset(
    {
        "audit_events",
        "deletion_audit_trail",
        "tenant_deletion_queue",
        "tenant_deletion_log",
        "tenant_deletion_backups",
        "archived_tenant_invoices",
        "tenant_data_exports",
        "deletion_file_failures",
        "legal_holds",
    }
)
