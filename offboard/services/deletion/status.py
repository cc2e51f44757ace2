from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
import math
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from offboard.core.errors import DeletionNotFoundError
from offboard.domain.models import DeletionQueueItem, DeletionStepRecord, Document, Tenant
from offboard.persistence.guards import tenant_predicate, validate_tenant_id
from offboard.services.deletion.checks import count_shared_resources, find_active_legal_hold
from offboard.services.deletion.context import DeletionContext
from offboard.services.deletion.states import (
    BLOCKED_LEGAL_HOLD,
    BLOCKED_SHARED_RESOURCES,
    STEP_FAILED,
    STEP_SUCCESS,
    TENANT_DELETED,
)
from offboard.services.deletion.verification import count_tenant_rows


LARGE_TABLE_THRESHOLD = 10_000
# Rough throughput of the step handlers, used only for the operator estimate.
SECONDS_PER_RECORD = 0.001


def days_remaining(scheduled: datetime | None, now: datetime) -> int | None:
    if scheduled is None:
        return None
    return max(0, math.ceil((scheduled - now) / timedelta(days=1)))


async def _step_counts(session: AsyncSession, queue_id: int) -> tuple[int, int]:
    rows = (
        await session.execute(
            select(DeletionStepRecord.status, func.count())
            .where(DeletionStepRecord.queue_id == queue_id)
            .group_by(DeletionStepRecord.status)
        )
    ).all()
    counts = {status: int(count) for status, count in rows}
    return counts.get(STEP_SUCCESS, 0), counts.get(STEP_FAILED, 0)


async def get_deletion_status(ctx: DeletionContext, tenant_id: str) -> dict[str, Any]:
    """Summarize the tenant lifecycle and its latest deletion request.

    A tenant whose row is gone but has queue history reports ``deleted``.
    """
    validate_tenant_id(tenant_id)
    now = ctx.now()
    async with ctx.session_factory() as session:
        tenant = await session.get(Tenant, tenant_id)
        item = (
            await session.execute(
                select(DeletionQueueItem)
                .where(tenant_predicate(DeletionQueueItem, tenant_id))
                .order_by(DeletionQueueItem.requested_at.desc(), DeletionQueueItem.id.desc())
                .limit(1)
            )
        ).scalar_one_or_none()
        if tenant is None and item is None:
            raise DeletionNotFoundError(f"Tenant {tenant_id} not found")
        completed_steps, failed_steps = (0, 0) if item is None else await _step_counts(session, item.id)

    payload: dict[str, Any] = {
        "tenant_id": tenant_id,
        "deletion_status": tenant.deletion_status if tenant is not None else TENANT_DELETED,
        "queue_id": None,
        "status": None,
        "approval_status": None,
        "progress": 0,
        "current_step": None,
        "grace_period_days": ctx.settings.deletion_grace_period_days,
        "days_remaining": None,
        "scheduled_deletion_date": None,
        "error_message": None,
        "completed_steps": completed_steps,
        "failed_steps": failed_steps,
        "retry_count": 0,
    }
    if item is not None:
        payload.update(
            queue_id=item.id,
            status=item.status,
            approval_status=item.approval_status,
            progress=item.progress,
            current_step=item.current_step,
            days_remaining=days_remaining(item.scheduled_deletion_date, now),
            scheduled_deletion_date=item.scheduled_deletion_date.isoformat() if item.scheduled_deletion_date else None,
            error_message=item.error_message,
            retry_count=item.retry_count,
        )
    return payload


@dataclass
class DryRunReport:
    tenant_id: str
    company_name: str
    table_counts: dict[str, int]
    blockers: list[dict[str, str]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    total_records: int = 0
    estimated_duration_minutes: int = 0

    @property
    def would_delete(self) -> bool:
        return not self.blockers

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["would_delete"] = self.would_delete
        return payload


async def run_dry_run(ctx: DeletionContext, tenant_id: str) -> DryRunReport:
    # Read-only: nothing is written, no notifications are sent.
    validate_tenant_id(tenant_id)
    now = ctx.now()
    async with ctx.session_factory() as session:
        tenant = await session.get(Tenant, tenant_id)
        if tenant is None:
            raise DeletionNotFoundError(f"Tenant {tenant_id} not found")
        table_counts = await count_tenant_rows(session, tenant_id)
        hold = await find_active_legal_hold(session, tenant_id, now)
        shared = await count_shared_resources(session, tenant_id)
        stored_files = int(
            await session.scalar(
                select(func.count())
                .select_from(Document)
                .where(tenant_predicate(Document, tenant_id), Document.file_path.is_not(None))
            )
            or 0
        )

    report = DryRunReport(tenant_id=tenant_id, company_name=tenant.company_name, table_counts=table_counts)
    if hold is not None:
        report.blockers.append({"reason": BLOCKED_LEGAL_HOLD, "message": f"Active legal hold: {hold.reason}"})
    if shared:
        report.blockers.append(
            {"reason": BLOCKED_SHARED_RESOURCES, "message": f"{shared} resource(s) shared with other tenants"}
        )
    for name, count in sorted(table_counts.items()):
        if count > LARGE_TABLE_THRESHOLD:
            report.warnings.append(f"Large data volume in {name}: {count} rows")
    if stored_files:
        report.warnings.append(f"{stored_files} stored file(s) will be removed from disk")

    # The tenant row itself is one more record.
    report.total_records = sum(table_counts.values()) + 1
    report.estimated_duration_minutes = max(1, math.ceil(report.total_records * SECONDS_PER_RECORD / 60))
    return report
