from offboard.services.deletion.approval import (
    approve_deletion,
    cancel_deletion,
    emergency_stop,
    list_pending_approvals,
    reject_deletion,
    request_deletion,
    retry_deletion,
)
from offboard.services.deletion.context import DeletionContext, build_default_context
from offboard.services.deletion.orchestrator import (
    DeletionRunResult,
    claim_next_item,
    process_queue_item,
    recover_orphaned_runs,
    run_deletion_cycle,
    run_deletion_worker_loop,
)
from offboard.services.deletion.status import get_deletion_status, run_dry_run
from offboard.services.deletion.steps import DELETION_STEPS, DeletionStep
from offboard.services.deletion.verification import verify_tenant_erased

__all__ = [
    "DELETION_STEPS",
    "DeletionContext",
    "DeletionRunResult",
    "DeletionStep",
    "approve_deletion",
    "build_default_context",
    "cancel_deletion",
    "claim_next_item",
    "emergency_stop",
    "get_deletion_status",
    "list_pending_approvals",
    "process_queue_item",
    "recover_orphaned_runs",
    "reject_deletion",
    "request_deletion",
    "retry_deletion",
    "run_deletion_cycle",
    "run_deletion_worker_loop",
    "run_dry_run",
    "verify_tenant_erased",
]
