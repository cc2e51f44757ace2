from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
import logging
from typing import Sequence

from sqlalchemy import func, select, update

from offboard.core.errors import IntegrityViolationError, StepFailedError
from offboard.domain.models import DeletionQueueItem, Tenant, User
from offboard.services.audit import record_event
from offboard.services.cache import revoke_sessions_quietly
from offboard.services.deletion.approval import set_tenant_status
from offboard.services.deletion.context import DeletionContext
from offboard.services.deletion.executor import execute_step
from offboard.services.deletion.states import (
    APPROVAL_APPROVED,
    QUEUE_COMPLETED,
    QUEUE_EMERGENCY_STOPPED,
    QUEUE_FAILED,
    QUEUE_PROCESSING,
    QUEUE_QUEUED,
    TENANT_ACTIVE,
    TENANT_DELETING,
)
from offboard.services.deletion.steps import DELETION_STEPS, DeletionStep
from offboard.services.deletion.verification import verify_tenant_erased
from offboard.services.notifications import (
    SEVERITY_CRITICAL,
    SEVERITY_INFO,
    SEVERITY_WARNING,
    send_alert_quietly,
    send_email_quietly,
)


logger = logging.getLogger(__name__)

RUN_CRASHED = "RUN_CRASHED"


@dataclass
class DeletionRunResult:
    queue_id: int
    tenant_id: str
    status: str
    completed_steps: int = 0
    failed_steps: list[str] = field(default_factory=list)
    error_message: str | None = None


def compute_progress(completed: int, total: int) -> int:
    if total <= 0:
        return 100
    return int(round(completed / total * 100))


def _steps(ctx: DeletionContext) -> Sequence[DeletionStep]:
    return ctx.steps if ctx.steps is not None else DELETION_STEPS


def _system_actor() -> dict[str, str | None]:
    return {"actor_type": "system", "actor_id": "deletion-worker", "actor_role": None}


async def claim_next_item(ctx: DeletionContext) -> DeletionQueueItem | None:
    """Claim the oldest eligible queue item, or None.

    Eligible: queued, approved, past its scheduled date and past the cooling-off
    window after approval. Nothing is claimed while another item is processing.
    """
    now = ctx.now()
    async with ctx.session_factory() as session:
        running = await session.scalar(
            select(func.count()).select_from(DeletionQueueItem).where(DeletionQueueItem.status == QUEUE_PROCESSING)
        )
        if running:
            logger.info("deletion_claim_skipped_in_flight processing=%s", running)
            return None
        candidates = (
            await session.execute(
                select(DeletionQueueItem)
                .where(
                    DeletionQueueItem.status == QUEUE_QUEUED,
                    DeletionQueueItem.approval_status == APPROVAL_APPROVED,
                    DeletionQueueItem.scheduled_deletion_date <= now,
                    DeletionQueueItem.approved_at.is_not(None),
                )
                .order_by(DeletionQueueItem.requested_at.asc(), DeletionQueueItem.id.asc())
            )
        ).scalars().all()
        for candidate in candidates:
            if candidate.approved_at + timedelta(hours=candidate.cooling_off_hours) > now:
                continue
            claimed = await session.execute(
                update(DeletionQueueItem)
                .where(DeletionQueueItem.id == candidate.id, DeletionQueueItem.status == QUEUE_QUEUED)
                .values(
                    status=QUEUE_PROCESSING,
                    started_at=now,
                    progress=0,
                    current_step=None,
                    total_steps=len(_steps(ctx)),
                    completed_at=None,
                )
            )
            if (claimed.rowcount or 0) != 1:
                continue
            await session.commit()
            await session.refresh(candidate)
            return candidate
    return None


async def _emergency_stop_requested(ctx: DeletionContext, queue_id: int) -> bool:
    async with ctx.session_factory() as session:
        flag = await session.scalar(
            select(DeletionQueueItem.emergency_stop).where(DeletionQueueItem.id == queue_id)
        )
    return bool(flag)


async def _update_item(ctx: DeletionContext, queue_id: int, **values: object) -> None:
    async with ctx.session_factory() as session:
        await session.execute(update(DeletionQueueItem).where(DeletionQueueItem.id == queue_id).values(**values))
        await session.commit()


async def _reactivate_tenant(ctx: DeletionContext, tenant_id: str) -> None:
    async with ctx.session_factory() as session:
        updated = await set_tenant_status(session, tenant_id, TENANT_ACTIVE)
        await session.commit()
    if not updated:
        logger.warning("tenant_reactivation_skipped_missing_row tenant_id=%s", tenant_id)


async def _audit(ctx: DeletionContext, item: DeletionQueueItem, event_type: str, outcome: str, **extra) -> None:
    await record_event(
        session_factory=ctx.session_factory,
        tenant_id=item.tenant_id,
        event_type=event_type,
        outcome=outcome,
        resource_type="tenant_deletion",
        resource_id=str(item.id),
        **_system_actor(),
        **extra,
    )


async def _abort_emergency(
    ctx: DeletionContext, item: DeletionQueueItem, result: DeletionRunResult
) -> DeletionRunResult:
    now = ctx.now()
    await _update_item(ctx, item.id, status=QUEUE_EMERGENCY_STOPPED, completed_at=now, current_step=None)
    await _reactivate_tenant(ctx, item.tenant_id)
    await _audit(
        ctx,
        item,
        "deletion.emergency_stopped",
        "success",
        metadata={"completed_steps": result.completed_steps},
    )
    logger.warning(
        "deletion_emergency_stopped queue_id=%s tenant_id=%s completed_steps=%s",
        item.id,
        item.tenant_id,
        result.completed_steps,
    )
    await send_alert_quietly(
        ctx.notifier,
        channel=ctx.settings.alert_critical_channel,
        severity=SEVERITY_WARNING,
        title="Tenant deletion emergency stopped",
        message=(
            f"Deletion of tenant {item.tenant_id} halted after {result.completed_steps} steps; tenant reactivated."
        ),
        fields={"queue_id": item.id, "tenant_id": item.tenant_id, "alert_type": "emergency_stopped"},
    )
    result.status = QUEUE_EMERGENCY_STOPPED
    return result


async def _fail_run(
    ctx: DeletionContext,
    item: DeletionQueueItem,
    result: DeletionRunResult,
    *,
    message: str,
    error_code: str,
    reactivate: bool,
) -> DeletionRunResult:
    now = ctx.now()
    await _update_item(
        ctx,
        item.id,
        status=QUEUE_FAILED,
        error_message=message,
        error_code=error_code,
        completed_at=now,
    )
    if reactivate:
        await _reactivate_tenant(ctx, item.tenant_id)
    await _audit(ctx, item, "deletion.failed", "failure", error_code=error_code, metadata={"error": message})
    await send_alert_quietly(
        ctx.notifier,
        channel=ctx.settings.alert_critical_channel,
        severity=SEVERITY_CRITICAL,
        title="Tenant deletion failed",
        message=message,
        fields={
            "queue_id": item.id,
            "tenant_id": item.tenant_id,
            "completed_steps": result.completed_steps,
            "alert_type": "failed",
        },
    )
    result.status = QUEUE_FAILED
    result.error_message = message
    return result


async def process_queue_item(ctx: DeletionContext, item: DeletionQueueItem) -> DeletionRunResult:
    """Drive a claimed item through every step, in declared order.

    The emergency-stop flag is read before each step. A critical step failure
    marks the item failed and reactivates the tenant; non-critical failures are
    logged and the run continues. A clean run ends with the verification pass,
    and leftover tenant rows raise IntegrityViolationError after the item is
    marked failed.
    """
    steps = list(_steps(ctx))
    total = len(steps)
    tenant_id = item.tenant_id
    result = DeletionRunResult(queue_id=item.id, tenant_id=tenant_id, status=QUEUE_PROCESSING)

    async with ctx.session_factory() as session:
        await set_tenant_status(session, tenant_id, TENANT_DELETING)
        requester_email = await session.scalar(select(User.email).where(User.id == item.created_by))
        company_name = await session.scalar(select(Tenant.company_name).where(Tenant.id == tenant_id))
        await session.commit()
    await revoke_sessions_quietly(ctx.cache, ctx.session_patterns(tenant_id), tenant_id=tenant_id)
    await _audit(ctx, item, "deletion.started", "success", metadata={"total_steps": total})
    logger.info("deletion_started queue_id=%s tenant_id=%s total_steps=%s", item.id, tenant_id, total)
    await send_alert_quietly(
        ctx.notifier,
        channel=ctx.settings.alert_ops_channel,
        severity=SEVERITY_INFO,
        title="Tenant deletion started",
        message=f"Deleting tenant {tenant_id} ({company_name or 'unknown'}).",
        fields={"queue_id": item.id, "tenant_id": tenant_id, "alert_type": "started"},
    )

    for index, step in enumerate(steps):
        if await _emergency_stop_requested(ctx, item.id):
            return await _abort_emergency(ctx, item, result)
        await _update_item(ctx, item.id, current_step=step.name, progress=compute_progress(index, total))
        outcome = await execute_step(ctx, step, tenant_id=tenant_id, queue_id=item.id)
        if outcome.aborts_run:
            error: StepFailedError = outcome.error
            return await _fail_run(
                ctx,
                item,
                result,
                message=error.message,
                error_code=error.code,
                reactivate=True,
            )
        if outcome.error is not None:
            result.failed_steps.append(step.name)
        result.completed_steps += 1

    try:
        await verify_tenant_erased(ctx, tenant_id)
    except IntegrityViolationError as violation:
        await _fail_run(
            ctx,
            item,
            result,
            message=violation.message,
            error_code=violation.code,
            reactivate=False,
        )
        raise

    await _update_item(
        ctx,
        item.id,
        status=QUEUE_COMPLETED,
        progress=100,
        current_step=None,
        completed_at=ctx.now(),
    )
    result.status = QUEUE_COMPLETED
    await _audit(
        ctx,
        item,
        "deletion.completed",
        "success",
        metadata={"completed_steps": result.completed_steps, "failed_steps": result.failed_steps},
    )
    logger.info(
        "deletion_completed queue_id=%s tenant_id=%s failed_steps=%s",
        item.id,
        tenant_id,
        ",".join(result.failed_steps) or "-",
    )
    await send_alert_quietly(
        ctx.notifier,
        channel=ctx.settings.alert_ops_channel,
        severity=SEVERITY_WARNING if result.failed_steps else SEVERITY_INFO,
        title="Tenant deletion completed",
        message=f"Tenant {tenant_id} deleted; {len(result.failed_steps)} non-critical step(s) failed.",
        fields={"queue_id": item.id, "tenant_id": tenant_id, "alert_type": "completed"},
    )
    if requester_email:
        await send_email_quietly(
            ctx.notifier,
            to=requester_email,
            subject=f"{company_name or tenant_id}: deletion completed",
            html="<p>The tenant and all of its data have been permanently deleted.</p>",
        )
    return result


async def run_deletion_cycle(ctx: DeletionContext) -> DeletionRunResult | None:
    item = await claim_next_item(ctx)
    if item is None:
        return None
    try:
        return await process_queue_item(ctx, item)
    except IntegrityViolationError:
        raise
    except Exception as exc:
        # Bookkeeping itself failed; park the item as failed so it does not block the queue.
        logger.exception("deletion_run_crashed queue_id=%s", item.id)
        await _fail_run(
            ctx,
            item,
            DeletionRunResult(queue_id=item.id, tenant_id=item.tenant_id, status=QUEUE_PROCESSING),
            message=f"Deletion run crashed: {exc}",
            error_code=RUN_CRASHED,
            reactivate=True,
        )
        raise


async def recover_orphaned_runs(ctx: DeletionContext) -> list[int]:
    """Settle items left in processing by a worker that died mid-run.

    A single worker owns the queue, so a processing item seen at startup has no
    live run behind it. Flagged items end emergency_stopped; the rest fail with
    RUN_CRASHED and stay retryable. Either way the tenant is reactivated.
    """
    async with ctx.session_factory() as session:
        orphans = (
            await session.execute(
                select(DeletionQueueItem)
                .where(DeletionQueueItem.status == QUEUE_PROCESSING)
                .order_by(DeletionQueueItem.id.asc())
            )
        ).scalars().all()
    recovered: list[int] = []
    for item in orphans:
        logger.warning(
            "deletion_orphan_recovered queue_id=%s tenant_id=%s current_step=%s emergency_stop=%s",
            item.id,
            item.tenant_id,
            item.current_step,
            item.emergency_stop,
        )
        result = DeletionRunResult(queue_id=item.id, tenant_id=item.tenant_id, status=QUEUE_PROCESSING)
        if item.emergency_stop:
            await _abort_emergency(ctx, item, result)
        else:
            await _fail_run(
                ctx,
                item,
                result,
                message=f"Worker stopped during step {item.current_step or '-'}; run abandoned",
                error_code=RUN_CRASHED,
                reactivate=True,
            )
        recovered.append(item.id)
    return recovered


async def run_deletion_worker_loop(ctx: DeletionContext, *, stop_event: asyncio.Event | None = None) -> None:
    # One deletion at a time; the loop sleeps between polls and survives cycle errors.
    interval = max(1, int(ctx.settings.deletion_poll_interval_s))
    logger.info("deletion_worker_started poll_interval_s=%s", interval)
    recovered = False
    while stop_event is None or not stop_event.is_set():
        try:
            # Orphans block every claim, so they are settled before the first poll.
            if not recovered:
                await recover_orphaned_runs(ctx)
                recovered = True
            await run_deletion_cycle(ctx)
        except Exception:
            logger.exception("deletion worker cycle failed")
        if stop_event is None:
            await asyncio.sleep(interval)
            continue
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.info("deletion_worker_stopped")
