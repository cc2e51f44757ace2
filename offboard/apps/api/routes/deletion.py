from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from offboard.apps.api.deps import (
    Operator,
    RequestMeta,
    get_deletion_context,
    get_request_meta,
    require_root,
    require_tenant_operator,
)
from offboard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from offboard.apps.api.response import SuccessEnvelope, success_response
from offboard.apps.api.tenant_status import enforce_tenant_status
from offboard.domain.models import DeletionQueueItem
from offboard.services.deletion import (
    approve_deletion,
    cancel_deletion,
    emergency_stop,
    get_deletion_status,
    list_pending_approvals,
    reject_deletion,
    request_deletion,
    retry_deletion,
    run_dry_run,
)
from offboard.services.deletion.context import DeletionContext


router = APIRouter(tags=["tenant-deletion"], responses=DEFAULT_ERROR_RESPONSES)
tenants_router = APIRouter(
    prefix="/tenants",
    tags=["tenant-deletion"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(enforce_tenant_status)],
)


class DeletionRequestCreate(BaseModel):
    tenant_id: str = Field(min_length=1, max_length=64)
    reason: str | None = Field(default=None, max_length=2048)


class ApprovalPayload(BaseModel):
    comment: str | None = Field(default=None, max_length=2048)


class RejectionPayload(BaseModel):
    reason: str = Field(min_length=1, max_length=2048)


class DeletionRequestResponse(BaseModel):
    queue_id: int
    tenant_id: str
    status: str
    approval_status: str
    created_by: str
    reason: str | None
    requested_at: str
    scheduled_deletion_date: str
    approver_id: str | None
    approved_at: str | None
    progress: int
    current_step: str | None
    retry_count: int
    emergency_stop: bool
    error_message: str | None


class PendingApprovalsResponse(BaseModel):
    items: list[DeletionRequestResponse]


class DeletionStatusResponse(BaseModel):
    tenant_id: str
    deletion_status: str
    queue_id: int | None
    status: str | None
    approval_status: str | None
    progress: int
    current_step: str | None
    grace_period_days: int
    days_remaining: int | None
    scheduled_deletion_date: str | None
    error_message: str | None
    completed_steps: int
    failed_steps: int
    retry_count: int


class DryRunResponse(BaseModel):
    tenant_id: str
    company_name: str
    table_counts: dict[str, int]
    blockers: list[dict[str, str]]
    warnings: list[str]
    total_records: int
    estimated_duration_minutes: int
    would_delete: bool


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def _item_payload(item: DeletionQueueItem) -> dict[str, Any]:
    return DeletionRequestResponse(
        queue_id=item.id,
        tenant_id=item.tenant_id,
        status=item.status,
        approval_status=item.approval_status,
        created_by=item.created_by,
        reason=item.reason,
        requested_at=item.requested_at.isoformat(),
        scheduled_deletion_date=item.scheduled_deletion_date.isoformat(),
        approver_id=item.approver_id,
        approved_at=_iso(item.approved_at),
        progress=item.progress,
        current_step=item.current_step,
        retry_count=item.retry_count,
        emergency_stop=item.emergency_stop,
        error_message=item.error_message,
    ).model_dump()


@router.post(
    "/deletion-requests",
    status_code=201,
    response_model=SuccessEnvelope[DeletionRequestResponse],
)
async def create_deletion_request(
    payload: DeletionRequestCreate,
    request: Request,
    operator: Operator = Depends(require_root),
    meta: RequestMeta = Depends(get_request_meta),
    ctx: DeletionContext = Depends(get_deletion_context),
) -> dict:
    item = await request_deletion(
        ctx,
        tenant_id=payload.tenant_id,
        requester_id=operator.user_id,
        reason=payload.reason,
        ip_address=meta.ip_address,
        request_id=meta.request_id,
    )
    return success_response(request=request, data=_item_payload(item))


@router.get("/deletion-requests/pending", response_model=SuccessEnvelope[PendingApprovalsResponse])
async def pending_deletion_requests(
    request: Request,
    operator: Operator = Depends(require_root),
    ctx: DeletionContext = Depends(get_deletion_context),
) -> dict:
    items = await list_pending_approvals(ctx, viewer_id=operator.user_id)
    return success_response(request=request, data={"items": [_item_payload(item) for item in items]})


@router.post("/deletion-requests/{queue_id}/approve", response_model=SuccessEnvelope[DeletionRequestResponse])
async def approve_deletion_request(
    queue_id: int,
    request: Request,
    payload: ApprovalPayload | None = None,
    operator: Operator = Depends(require_root),
    meta: RequestMeta = Depends(get_request_meta),
    ctx: DeletionContext = Depends(get_deletion_context),
) -> dict:
    item = await approve_deletion(
        ctx,
        queue_id=queue_id,
        approver_id=operator.user_id,
        comment=payload.comment if payload else None,
        ip_address=meta.ip_address,
        request_id=meta.request_id,
    )
    return success_response(request=request, data=_item_payload(item))


@router.post("/deletion-requests/{queue_id}/reject", response_model=SuccessEnvelope[DeletionRequestResponse])
async def reject_deletion_request(
    queue_id: int,
    payload: RejectionPayload,
    request: Request,
    operator: Operator = Depends(require_root),
    meta: RequestMeta = Depends(get_request_meta),
    ctx: DeletionContext = Depends(get_deletion_context),
) -> dict:
    item = await reject_deletion(
        ctx,
        queue_id=queue_id,
        approver_id=operator.user_id,
        reason=payload.reason,
        ip_address=meta.ip_address,
        request_id=meta.request_id,
    )
    return success_response(request=request, data=_item_payload(item))


@router.post(
    "/deletion-requests/{queue_id}/emergency-stop",
    response_model=SuccessEnvelope[DeletionRequestResponse],
)
async def emergency_stop_deletion(
    queue_id: int,
    request: Request,
    operator: Operator = Depends(require_root),
    meta: RequestMeta = Depends(get_request_meta),
    ctx: DeletionContext = Depends(get_deletion_context),
) -> dict:
    item = await emergency_stop(
        ctx,
        queue_id=queue_id,
        stopped_by=operator.user_id,
        ip_address=meta.ip_address,
        request_id=meta.request_id,
    )
    return success_response(request=request, data=_item_payload(item))


@router.post("/deletion-requests/{queue_id}/cancel", response_model=SuccessEnvelope[DeletionRequestResponse])
async def cancel_deletion_request(
    queue_id: int,
    request: Request,
    operator: Operator = Depends(require_root),
    meta: RequestMeta = Depends(get_request_meta),
    ctx: DeletionContext = Depends(get_deletion_context),
) -> dict:
    item = await cancel_deletion(
        ctx,
        queue_id=queue_id,
        actor_id=operator.user_id,
        ip_address=meta.ip_address,
        request_id=meta.request_id,
    )
    return success_response(request=request, data=_item_payload(item))


@router.post("/deletion-queue/{queue_id}/retry", response_model=SuccessEnvelope[DeletionRequestResponse])
async def retry_deletion_run(
    queue_id: int,
    request: Request,
    operator: Operator = Depends(require_root),
    meta: RequestMeta = Depends(get_request_meta),
    ctx: DeletionContext = Depends(get_deletion_context),
) -> dict:
    item = await retry_deletion(
        ctx,
        queue_id=queue_id,
        actor_id=operator.user_id,
        ip_address=meta.ip_address,
        request_id=meta.request_id,
    )
    return success_response(request=request, data=_item_payload(item))


@tenants_router.get("/{tenant_id}/deletion-status", response_model=SuccessEnvelope[DeletionStatusResponse])
async def tenant_deletion_status(
    tenant_id: str,
    request: Request,
    operator: Operator = Depends(require_tenant_operator),
    ctx: DeletionContext = Depends(get_deletion_context),
) -> dict:
    payload = await get_deletion_status(ctx, tenant_id)
    return success_response(request=request, data=payload)


@tenants_router.post("/{tenant_id}/deletion-dry-run", response_model=SuccessEnvelope[DryRunResponse])
async def tenant_deletion_dry_run(
    tenant_id: str,
    request: Request,
    operator: Operator = Depends(require_tenant_operator),
    ctx: DeletionContext = Depends(get_deletion_context),
) -> dict:
    report = await run_dry_run(ctx, tenant_id)
    return success_response(request=request, data=report.to_dict())
