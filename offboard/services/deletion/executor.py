from __future__ import annotations

from dataclasses import dataclass
import logging
import time

from offboard.core.errors import StepFailedCriticalError, StepFailedError, StepFailedNonCriticalError
from offboard.domain.models import DeletionStepRecord
from offboard.services.deletion.context import DeletionContext
from offboard.services.deletion.states import STEP_FAILED, STEP_SUCCESS
from offboard.services.deletion.steps import DeletionStep


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepOutcome:
    step: DeletionStep
    records_deleted: int
    duration_ms: int
    error: StepFailedError | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def aborts_run(self) -> bool:
        return isinstance(self.error, StepFailedCriticalError)


async def execute_step(
    ctx: DeletionContext,
    step: DeletionStep,
    *,
    tenant_id: str,
    queue_id: int,
) -> StepOutcome:
    """Run one step in its own transaction and append its log row.

    A failing handler rolls back only its own writes. The failure is classified
    by the step's criticality and returned, never raised; the log row is
    committed before the caller sees the outcome.
    """
    start = time.monotonic()
    records = 0
    error: StepFailedError | None = None
    try:
        async with ctx.session_factory() as session:
            async with session.begin():
                records = int(await step.handler(ctx, tenant_id, queue_id, session) or 0)
    except Exception as exc:  # noqa: BLE001 - classified and persisted below
        error_cls = StepFailedCriticalError if step.critical else StepFailedNonCriticalError
        error = error_cls(step.name, str(exc) or exc.__class__.__name__)
        error.__cause__ = exc
        records = 0
    duration_ms = int((time.monotonic() - start) * 1000)

    if error is None:
        logger.info(
            "deletion_step_succeeded queue_id=%s step=%s records=%s duration_ms=%s",
            queue_id,
            step.name,
            records,
            duration_ms,
        )
    else:
        log = logger.error if step.critical else logger.warning
        log(
            "deletion_step_failed queue_id=%s step=%s critical=%s error=%s",
            queue_id,
            step.name,
            step.critical,
            error.message,
            exc_info=error.__cause__,
        )

    async with ctx.session_factory() as session:
        session.add(
            DeletionStepRecord(
                queue_id=queue_id,
                step_name=step.name,
                records_deleted=records,
                duration_ms=duration_ms,
                status=STEP_SUCCESS if error is None else STEP_FAILED,
                error_message=None if error is None else error.message,
            )
        )
        await session.commit()
    return StepOutcome(step=step, records_deleted=records, duration_ms=duration_ms, error=error)
