from __future__ import annotations

import pytest

from offboard.core.errors import IntegrityViolationError
from offboard.domain.models import AuditEvent, DeletionAuditTrail, LegalHold
from offboard.services.deletion.states import COMPLIANCE_TABLES
from offboard.services.deletion.verification import (
    count_tenant_rows,
    find_remaining_tenant_rows,
    list_tenant_scoped_tables,
    verify_tenant_erased,
)
from offboard.tests.utils.seed import seed_tenant


@pytest.mark.asyncio
async def test_scoped_tables_come_from_the_live_schema(ctx) -> None:
    async with ctx.session_factory() as session:
        scoped = await list_tenant_scoped_tables(session)
        everything = await list_tenant_scoped_tables(session, include_compliance=True)

    assert "users" in scoped
    assert "subdomain_reservations" in scoped
    assert "tenants" not in scoped
    assert not set(scoped) & COMPLIANCE_TABLES
    assert {"audit_events", "legal_holds", "deletion_audit_trail"} <= set(everything)
    assert scoped == sorted(scoped)


@pytest.mark.asyncio
async def test_counts_are_scoped_to_one_tenant(ctx) -> None:
    await seed_tenant(ctx.session_factory, "t-left", with_data=False)
    await seed_tenant(ctx.session_factory, "t-right")

    async with ctx.session_factory() as session:
        left = await count_tenant_rows(session, "t-left")
        right = await count_tenant_rows(session, "t-right")

    assert left["users"] == 4
    assert left["messages"] == 0
    assert right["messages"] == 1


@pytest.mark.asyncio
async def test_remaining_rows_include_tenant_row(ctx) -> None:
    await seed_tenant(ctx.session_factory, "t-still", with_data=False)

    remaining = await find_remaining_tenant_rows(ctx, "t-still")

    assert remaining == {"users": 4, "tenants": 1}
    with pytest.raises(IntegrityViolationError) as excinfo:
        await verify_tenant_erased(ctx, "t-still")
    assert excinfo.value.remaining == remaining
    assert "tenants=1" in excinfo.value.message


@pytest.mark.asyncio
async def test_compliance_rows_do_not_count_as_leftovers(ctx) -> None:
    async with ctx.session_factory() as session:
        session.add(LegalHold(tenant_id="t-gone", reason="Closed", is_active=False))
        session.add(
            AuditEvent(
                occurred_at=ctx.now(),
                tenant_id="t-gone",
                actor_type="system",
                actor_id="deletion-worker",
                event_type="deletion.completed",
                outcome="success",
            )
        )
        session.add(
            DeletionAuditTrail(
                tenant_id="t-gone", tenant_name="Gone GmbH", user_count_at_deletion=3, deleted_by="u-root"
            )
        )
        await session.commit()

    assert await find_remaining_tenant_rows(ctx, "t-gone") == {}
    await verify_tenant_erased(ctx, "t-gone")
