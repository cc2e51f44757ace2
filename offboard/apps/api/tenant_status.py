from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, Request, Response, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from offboard.apps.api.deps import get_db
from offboard.domain.models import DeletionQueueItem, Tenant
from offboard.persistence.guards import tenant_predicate
from offboard.services.deletion.states import (
    QUEUE_IN_FLIGHT_STATUSES,
    TENANT_DELETING,
    TENANT_MARKED_FOR_DELETION,
    TENANT_SUSPENDED,
)


logger = logging.getLogger(__name__)

# Reachable in every lifecycle state so users can log out, export or cancel.
WHITELISTED_SUFFIXES = ("/health", "/logout", "/deletion-status", "/cancel", "/export-data")

_BLOCKED_STATES = {
    TENANT_SUSPENDED: ("TENANT_SUSPENDED", "Tenant is suspended pending deletion"),
    TENANT_DELETING: ("TENANT_DELETING", "Tenant is being deleted"),
}


def _resolve_tenant_id(request: Request) -> str | None:
    return request.path_params.get("tenant_id") or request.headers.get("X-Tenant-Id")


async def enforce_tenant_status(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
) -> None:
    """Gate tenant-facing routes on the tenant's deletion lifecycle.

    Active tenants pass. Tenants marked for deletion pass with warning headers.
    Suspended and deleting tenants get 403; unknown tenants get 404.
    """
    if request.url.path.rstrip("/").endswith(WHITELISTED_SUFFIXES):
        return
    tenant_id = _resolve_tenant_id(request)
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "TENANT_REQUIRED", "message": "Tenant id is required"},
        )
    tenant = await db.get(Tenant, tenant_id)
    if tenant is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "TENANT_NOT_FOUND", "message": f"Tenant {tenant_id} not found"},
        )
    blocked = _BLOCKED_STATES.get(tenant.deletion_status)
    if blocked is not None:
        code, message = blocked
        logger.info(
            "tenant_request_blocked tenant_id=%s status=%s path=%s",
            tenant_id,
            tenant.deletion_status,
            request.url.path,
        )
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail={"code": code, "message": message})
    if tenant.deletion_status == TENANT_MARKED_FOR_DELETION:
        scheduled = await db.scalar(
            select(DeletionQueueItem.scheduled_deletion_date)
            .where(
                tenant_predicate(DeletionQueueItem, tenant_id),
                DeletionQueueItem.status.in_(QUEUE_IN_FLIGHT_STATUSES),
            )
            .order_by(DeletionQueueItem.requested_at.desc(), DeletionQueueItem.id.desc())
            .limit(1)
        )
        response.headers["X-Tenant-Status"] = TENANT_MARKED_FOR_DELETION
        if scheduled is not None:
            response.headers["X-Tenant-Deletion-Date"] = scheduled.isoformat()
