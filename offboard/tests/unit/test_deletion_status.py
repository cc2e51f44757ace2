from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from offboard.core.errors import DeletionNotFoundError, InvalidTenantIdError
from offboard.domain.models import ActivityLog, AuditEvent, LegalHold, SharedResource
from offboard.services.deletion import get_deletion_status, request_deletion, run_dry_run
from offboard.services.deletion.status import days_remaining
from offboard.tests.utils.seed import seed_tenant


def test_days_remaining_rounds_up_and_floors_at_zero() -> None:
    now = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
    assert days_remaining(now + timedelta(days=29, hours=1), now) == 30
    assert days_remaining(now + timedelta(days=30), now) == 30
    assert days_remaining(now - timedelta(days=2), now) == 0
    assert days_remaining(None, now) is None


@pytest.mark.asyncio
async def test_status_for_tenant_without_requests(ctx) -> None:
    await seed_tenant(ctx.session_factory, "t-idle", with_data=False)

    status = await get_deletion_status(ctx, "t-idle")

    assert status["deletion_status"] == "active"
    assert status["queue_id"] is None
    assert status["days_remaining"] is None
    assert status["grace_period_days"] == 30


@pytest.mark.asyncio
async def test_status_reports_latest_request(ctx, clock) -> None:
    seeded = await seed_tenant(ctx.session_factory, "t-status", with_data=False)
    item = await request_deletion(ctx, tenant_id="t-status", requester_id=seeded.requester_id, reason=None)
    clock.advance(days=10)

    status = await get_deletion_status(ctx, "t-status")

    assert status["deletion_status"] == "marked_for_deletion"
    assert status["queue_id"] == item.id
    assert status["status"] == "pending_approval"
    assert status["approval_status"] == "pending"
    assert status["days_remaining"] == 20
    assert status["completed_steps"] == 0


@pytest.mark.asyncio
async def test_status_unknown_tenant(ctx) -> None:
    with pytest.raises(DeletionNotFoundError):
        await get_deletion_status(ctx, "t-nobody")
    with pytest.raises(InvalidTenantIdError):
        await get_deletion_status(ctx, "../etc")


@pytest.mark.asyncio
async def test_dry_run_counts_rows_without_writing(ctx, notifier) -> None:
    await seed_tenant(ctx.session_factory, "t-dry", settings=ctx.settings)

    report = await run_dry_run(ctx, "t-dry")

    assert report.would_delete is True
    assert report.blockers == []
    assert report.table_counts["users"] == 4
    assert report.table_counts["conversation_participants"] == 2
    assert report.table_counts["subdomain_reservations"] == 1
    assert "audit_events" not in report.table_counts
    assert report.total_records == sum(report.table_counts.values()) + 1
    assert report.estimated_duration_minutes == 1
    assert report.warnings == ["1 stored file(s) will be removed from disk"]
    assert notifier.alerts == [] and notifier.emails == []
    status = await get_deletion_status(ctx, "t-dry")
    assert status["deletion_status"] == "active"
    async with ctx.session_factory() as session:
        assert await session.get(AuditEvent, 1) is None


@pytest.mark.asyncio
async def test_dry_run_reports_blockers_and_large_tables(ctx, monkeypatch) -> None:
    await seed_tenant(ctx.session_factory, "t-blocked", with_data=False)
    async with ctx.session_factory() as session:
        session.add(LegalHold(tenant_id="t-blocked", reason="Tax audit"))
        session.add(
            SharedResource(
                tenant_id="t-blocked", shared_with_tenant_id="t-peer", resource_type="calendar", resource_id="c1"
            )
        )
        session.add_all(
            [ActivityLog(tenant_id="t-blocked", action=f"login-{index}") for index in range(3)]
        )
        await session.commit()
    monkeypatch.setattr("offboard.services.deletion.status.LARGE_TABLE_THRESHOLD", 2)

    report = await run_dry_run(ctx, "t-blocked")

    assert report.would_delete is False
    assert [blocker["reason"] for blocker in report.blockers] == ["legal_hold", "shared_resources"]
    assert "Large data volume in activity_logs: 3 rows" in report.warnings
    payload = report.to_dict()
    assert payload["would_delete"] is False
    assert payload["table_counts"]["activity_logs"] == 3


@pytest.mark.asyncio
async def test_dry_run_unknown_tenant(ctx) -> None:
    with pytest.raises(DeletionNotFoundError):
        await run_dry_run(ctx, "t-missing")
