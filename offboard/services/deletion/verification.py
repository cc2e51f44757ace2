from __future__ import annotations

import logging

from sqlalchemy import column, func, inspect, select, table
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import AsyncSession

from offboard.core.errors import IntegrityViolationError
from offboard.domain.models import Tenant
from offboard.persistence.guards import tenant_predicate
from offboard.services.deletion.context import DeletionContext
from offboard.services.deletion.states import COMPLIANCE_TABLES


logger = logging.getLogger(__name__)


def _tables_with_tenant_column(sync_conn: Connection) -> list[str]:
    inspector = inspect(sync_conn)
    names: list[str] = []
    for table_name in inspector.get_table_names():
        columns = {col["name"] for col in inspector.get_columns(table_name)}
        if "tenant_id" in columns:
            names.append(table_name)
    return sorted(names)


async def list_tenant_scoped_tables(session: AsyncSession, *, include_compliance: bool = False) -> list[str]:
    # Read from the live schema catalog so new tables are covered without code changes.
    connection = await session.connection()
    names = await connection.run_sync(_tables_with_tenant_column)
    if include_compliance:
        return names
    return [name for name in names if name not in COMPLIANCE_TABLES]


def tenant_table(name: str):
    return table(name, column("tenant_id"))


async def count_tenant_rows(
    session: AsyncSession,
    tenant_id: str,
    *,
    include_compliance: bool = False,
) -> dict[str, int]:
    counts: dict[str, int] = {}
    for name in await list_tenant_scoped_tables(session, include_compliance=include_compliance):
        scoped = tenant_table(name)
        count = await session.scalar(
            select(func.count()).select_from(scoped).where(tenant_predicate(scoped, tenant_id))
        )
        counts[name] = int(count or 0)
    return counts


async def find_remaining_tenant_rows(ctx: DeletionContext, tenant_id: str) -> dict[str, int]:
    async with ctx.session_factory() as session:
        counts = await count_tenant_rows(session, tenant_id)
        remaining = {name: count for name, count in counts.items() if count}
        tenant_rows = await session.scalar(
            select(func.count()).select_from(Tenant).where(Tenant.id == tenant_id)
        )
        if tenant_rows:
            remaining[Tenant.__tablename__] = int(tenant_rows)
    return remaining


async def verify_tenant_erased(ctx: DeletionContext, tenant_id: str) -> None:
    remaining = await find_remaining_tenant_rows(ctx, tenant_id)
    if remaining:
        logger.error("tenant_integrity_violation tenant_id=%s remaining=%s", tenant_id, remaining)
        raise IntegrityViolationError(tenant_id, remaining)
