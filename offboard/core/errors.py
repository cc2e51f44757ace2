from __future__ import annotations

from typing import Any


class OffboardError(Exception):
    """Base error for the tenant offboarding service."""

    code = "OFFBOARD_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class DeletionBlockedError(OffboardError):
    """A deletion precondition failed (legal hold, shared resources)."""

    code = "DELETION_BLOCKED"

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message, details={"reason": reason})
        self.reason = reason


class InvalidStateError(OffboardError):
    """Operation attempted while the request or tenant is in the wrong state."""

    code = "INVALID_STATE"


class SelfApprovalError(OffboardError):
    """The approver is the same operator who requested the deletion."""

    code = "SELF_APPROVAL"


class ForeignTenantError(OffboardError):
    """The operator is not an active root user of the tenant being deleted."""

    code = "FOREIGN_TENANT"


class CoolingOffNotElapsedError(OffboardError):
    """Approval attempted before the cooling-off window elapsed."""

    code = "COOLING_OFF_NOT_ELAPSED"

    def __init__(self, remaining_hours: float) -> None:
        rounded = round(remaining_hours, 1)
        super().__init__(
            f"Cooling-off period has not elapsed; retry in {rounded} hours",
            details={"remaining_hours": rounded},
        )
        self.remaining_hours = remaining_hours


class DeletionNotFoundError(OffboardError):
    """Deletion queue item or tenant not found."""

    code = "NOT_FOUND"


class InvalidTenantIdError(OffboardError):
    """Tenant identifier is empty or malformed."""

    code = "INVALID_TENANT_ID"


class StepFailedError(OffboardError):
    """A deletion step raised while executing."""

    code = "STEP_FAILED"

    def __init__(self, step_name: str, message: str) -> None:
        super().__init__(f"Step {step_name} failed: {message}", details={"step": step_name})
        self.step_name = step_name


class StepFailedCriticalError(StepFailedError):
    """A critical step failed; the run aborts."""

    code = "STEP_FAILED_CRITICAL"


class StepFailedNonCriticalError(StepFailedError):
    """A non-critical step failed; the run continues."""

    code = "STEP_FAILED_NON_CRITICAL"


class IntegrityViolationError(OffboardError):
    """Tenant rows remain after a completed deletion run."""

    code = "INTEGRITY_VIOLATION"

    def __init__(self, tenant_id: str, remaining: dict[str, int]) -> None:
        tables = ", ".join(f"{name}={count}" for name, count in sorted(remaining.items()))
        super().__init__(
            f"Tenant {tenant_id} still has rows after deletion: {tables}",
            details={"remaining": dict(remaining)},
        )
        self.tenant_id = tenant_id
        self.remaining = dict(remaining)
