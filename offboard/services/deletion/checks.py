from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from offboard.core.errors import DeletionBlockedError
from offboard.domain.models import LegalHold, SharedResource
from offboard.persistence.guards import tenant_predicate
from offboard.services.deletion.states import BLOCKED_LEGAL_HOLD, BLOCKED_SHARED_RESOURCES


async def find_active_legal_hold(session: AsyncSession, tenant_id: str, now: datetime) -> LegalHold | None:
    # Expired holds no longer block.
    return (
        await session.execute(
            select(LegalHold)
            .where(
                tenant_predicate(LegalHold, tenant_id),
                LegalHold.is_active.is_(True),
                or_(LegalHold.expires_at.is_(None), LegalHold.expires_at > now),
            )
            .order_by(LegalHold.created_at.desc(), LegalHold.id.desc())
            .limit(1)
        )
    ).scalar_one_or_none()


async def count_shared_resources(session: AsyncSession, tenant_id: str) -> int:
    # Active grants from this tenant to a different tenant.
    count = await session.scalar(
        select(func.count())
        .select_from(SharedResource)
        .where(
            tenant_predicate(SharedResource, tenant_id),
            SharedResource.is_active.is_(True),
            SharedResource.shared_with_tenant_id.is_not(None),
            SharedResource.shared_with_tenant_id != tenant_id,
        )
    )
    return int(count or 0)


async def enforce_no_legal_hold(session: AsyncSession, tenant_id: str, now: datetime) -> None:
    hold = await find_active_legal_hold(session, tenant_id, now)
    if hold is not None:
        raise DeletionBlockedError(
            f"Tenant {tenant_id} is under legal hold: {hold.reason}",
            reason=BLOCKED_LEGAL_HOLD,
        )


async def enforce_no_shared_resources(session: AsyncSession, tenant_id: str) -> None:
    shared = await count_shared_resources(session, tenant_id)
    if shared:
        raise DeletionBlockedError(
            f"Tenant {tenant_id} shares {shared} resource(s) with other tenants",
            reason=BLOCKED_SHARED_RESOURCES,
        )
