from __future__ import annotations

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from offboard.core.errors import StepFailedCriticalError, StepFailedNonCriticalError
from offboard.domain.models import ActivityLog, DeletionFileFailure, DeletionQueueItem, DeletionStepRecord, Document
from offboard.services.deletion import DELETION_STEPS, handlers
from offboard.services.deletion.context import DeletionContext
from offboard.services.deletion.executor import execute_step
from offboard.services.deletion.handlers import make_tenant_rows_handler
from offboard.services.deletion.steps import PHASE_LEAF_CLEANUP, DeletionStep
from offboard.tests.utils.flows import due_request
from offboard.tests.utils.seed import seed_tenant


async def _failing_after_delete(ctx: DeletionContext, tenant_id: str, queue_id: int, session: AsyncSession) -> int:
    await make_tenant_rows_handler(ActivityLog)(ctx, tenant_id, queue_id, session)
    raise RuntimeError("disk full")


def _step(handler, *, critical: bool) -> DeletionStep:
    return DeletionStep(
        name="delete_activity_logs",
        description="Delete activity logs",
        phase=PHASE_LEAF_CLEANUP,
        critical=critical,
        handler=handler,
    )


async def _log_rows(ctx: DeletionContext, queue_id: int) -> list[DeletionStepRecord]:
    async with ctx.session_factory() as session:
        return list(
            (
                await session.execute(select(DeletionStepRecord).where(DeletionStepRecord.queue_id == queue_id))
            ).scalars()
        )


async def _activity_count(ctx: DeletionContext, tenant_id: str) -> int:
    async with ctx.session_factory() as session:
        return int(
            await session.scalar(
                select(func.count()).select_from(ActivityLog).where(ActivityLog.tenant_id == tenant_id)
            )
        )


@pytest.mark.asyncio
async def test_successful_step_commits_and_logs(ctx, clock) -> None:
    seeded = await seed_tenant(ctx.session_factory, "t-exec", settings=ctx.settings)
    item = await due_request(ctx, clock, seeded)

    outcome = await execute_step(
        ctx, _step(make_tenant_rows_handler(ActivityLog), critical=False), tenant_id="t-exec", queue_id=item.id
    )

    assert outcome.succeeded
    assert outcome.records_deleted == 1
    assert await _activity_count(ctx, "t-exec") == 0
    rows = await _log_rows(ctx, item.id)
    assert [(row.step_name, row.status, row.records_deleted) for row in rows] == [
        ("delete_activity_logs", "success", 1)
    ]


@pytest.mark.asyncio
async def test_failed_step_rolls_back_its_own_writes(ctx, clock) -> None:
    seeded = await seed_tenant(ctx.session_factory, "t-rollback", settings=ctx.settings)
    item = await due_request(ctx, clock, seeded)

    outcome = await execute_step(
        ctx, _step(_failing_after_delete, critical=False), tenant_id="t-rollback", queue_id=item.id
    )

    assert not outcome.succeeded
    assert outcome.records_deleted == 0
    assert await _activity_count(ctx, "t-rollback") == 1
    rows = await _log_rows(ctx, item.id)
    assert len(rows) == 1
    assert rows[0].status == "failed"
    assert "disk full" in rows[0].error_message


@pytest.mark.asyncio
async def test_failure_is_classified_by_criticality(ctx, clock) -> None:
    seeded = await seed_tenant(ctx.session_factory, "t-classify", with_data=False)
    item = await due_request(ctx, clock, seeded)

    critical = await execute_step(
        ctx, _step(_failing_after_delete, critical=True), tenant_id="t-classify", queue_id=item.id
    )
    non_critical = await execute_step(
        ctx, _step(_failing_after_delete, critical=False), tenant_id="t-classify", queue_id=item.id
    )

    assert isinstance(critical.error, StepFailedCriticalError)
    assert critical.aborts_run
    assert isinstance(non_critical.error, StepFailedNonCriticalError)
    assert not non_critical.aborts_run
    assert critical.error.step_name == "delete_activity_logs"
    assert len(await _log_rows(ctx, item.id)) == 2


@pytest.mark.asyncio
async def test_executor_leaves_queue_item_untouched(ctx, clock) -> None:
    seeded = await seed_tenant(ctx.session_factory, "t-untouched", with_data=False)
    item = await due_request(ctx, clock, seeded)

    await execute_step(ctx, _step(_failing_after_delete, critical=True), tenant_id="t-untouched", queue_id=item.id)

    async with ctx.session_factory() as session:
        stored = await session.get(DeletionQueueItem, item.id)
    assert stored.status == "queued"
    assert stored.error_message is None


def _registered(name: str) -> DeletionStep:
    return next(step for step in DELETION_STEPS if step.name == name)


async def _documents(ctx: DeletionContext, tenant_id: str) -> int:
    async with ctx.session_factory() as session:
        return int(
            await session.scalar(select(func.count()).select_from(Document).where(Document.tenant_id == tenant_id))
        )


@pytest.mark.asyncio
async def test_document_files_survive_a_failed_row_delete(ctx, clock, monkeypatch) -> None:
    seeded = await seed_tenant(ctx.session_factory, "t-docs-keep", settings=ctx.settings)
    item = await due_request(ctx, clock, seeded)
    real_delete = handlers.delete_tenant_rows

    async def _refuse_documents(session, model, tenant_id):
        if model is Document:
            raise RuntimeError("lock timeout")
        return await real_delete(session, model, tenant_id)

    monkeypatch.setattr(handlers, "delete_tenant_rows", _refuse_documents)

    outcome = await execute_step(ctx, _registered("delete_documents"), tenant_id="t-docs-keep", queue_id=item.id)

    assert isinstance(outcome.error, StepFailedCriticalError)
    assert await _documents(ctx, "t-docs-keep") == 1
    assert seeded.document_path.exists()


@pytest.mark.asyncio
async def test_unremovable_document_file_is_recorded_not_fatal(ctx, clock, monkeypatch) -> None:
    seeded = await seed_tenant(ctx.session_factory, "t-docs-stuck", settings=ctx.settings)
    item = await due_request(ctx, clock, seeded)

    def _read_only(path):
        raise PermissionError("read-only volume")

    monkeypatch.setattr(handlers, "remove_file", _read_only)

    outcome = await execute_step(ctx, _registered("delete_documents"), tenant_id="t-docs-stuck", queue_id=item.id)

    assert outcome.succeeded
    assert outcome.records_deleted >= 1
    assert await _documents(ctx, "t-docs-stuck") == 0
    async with ctx.session_factory() as session:
        failures = (
            await session.execute(select(DeletionFileFailure).where(DeletionFileFailure.queue_id == item.id))
        ).scalars().all()
    assert [failure.file_path for failure in failures] == [str(seeded.document_path)]
    assert failures[0].error_message == "read-only volume"
