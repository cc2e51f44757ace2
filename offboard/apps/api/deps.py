from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from offboard.domain.models import User
from offboard.services.audit import get_request_context
from offboard.services.deletion.approval import ROOT_ROLE
from offboard.services.deletion.context import DeletionContext


def get_deletion_context(request: Request) -> DeletionContext:
    # Built once by the app factory; tests install their own.
    return request.app.state.deletion_context


async def get_db(ctx: DeletionContext = Depends(get_deletion_context)) -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with ctx.session_factory() as session:
        yield session


class Operator(BaseModel):
    user_id: str
    tenant_id: str
    role: str
    email: str | None = None


class RequestMeta(BaseModel):
    request_id: str | None
    ip_address: str | None


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


async def get_current_operator(
    actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
    db: AsyncSession = Depends(get_db),
) -> Operator:
    # Authentication happens upstream; the header names an existing user.
    if not actor_id:
        raise _auth_error("X-Actor-Id header is required")
    user = await db.get(User, actor_id)
    if user is None or not user.is_active:
        raise _auth_error("Unknown or inactive operator")
    return Operator(user_id=user.id, tenant_id=user.tenant_id, role=user.role, email=user.email)


async def require_root(operator: Operator = Depends(get_current_operator)) -> Operator:
    if operator.role != ROOT_ROLE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "AUTH_FORBIDDEN", "message": "Root role required for tenant deletion"},
        )
    return operator


def get_request_meta(request: Request) -> RequestMeta:
    request_ctx = get_request_context(request)
    request_id = getattr(request.state, "request_id", None) or request_ctx["request_id"]
    return RequestMeta(request_id=request_id, ip_address=request_ctx["ip_address"])


async def require_tenant_operator(tenant_id: str, operator: Operator = Depends(require_root)) -> Operator:
    # Tenant-scoped routes only serve root users of the tenant in the path.
    if operator.tenant_id != tenant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "FOREIGN_TENANT", "message": "Operator does not belong to this tenant"},
        )
    return operator
