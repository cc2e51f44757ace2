from __future__ import annotations

from datetime import timedelta
import logging
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from offboard.core.errors import (
    CoolingOffNotElapsedError,
    DeletionNotFoundError,
    ForeignTenantError,
    IntegrityViolationError,
    InvalidStateError,
    SelfApprovalError,
)
from offboard.domain.models import DeletionAuditTrail, DeletionQueueItem, Tenant, User
from offboard.persistence.guards import tenant_predicate, validate_tenant_id
from offboard.services.audit import record_event
from offboard.services.cache import revoke_sessions_quietly
from offboard.services.deletion.checks import enforce_no_legal_hold, enforce_no_shared_resources
from offboard.services.deletion.context import DeletionContext
from offboard.services.deletion.states import (
    APPROVAL_APPROVED,
    APPROVAL_PENDING,
    APPROVAL_REJECTED,
    QUEUE_CANCELLED,
    QUEUE_EMERGENCY_STOPPED,
    QUEUE_FAILED,
    QUEUE_IN_FLIGHT_STATUSES,
    QUEUE_PENDING_APPROVAL,
    QUEUE_PROCESSING,
    QUEUE_QUEUED,
    QUEUE_REJECTED,
    TENANT_ACTIVE,
    TENANT_MARKED_FOR_DELETION,
    TENANT_SUSPENDED,
)
from offboard.services.notifications import (
    SEVERITY_CRITICAL,
    SEVERITY_INFO,
    SEVERITY_WARNING,
    send_alert_quietly,
    send_email_quietly,
)


logger = logging.getLogger(__name__)

ADMIN_ROLES = ("root", "admin")
ROOT_ROLE = "root"


def _actor_fields(actor_id: str, request_id: str | None, ip_address: str | None) -> dict[str, Any]:
    return {
        "actor_type": "user",
        "actor_id": actor_id,
        "actor_role": ROOT_ROLE,
        "request_id": request_id,
        "ip_address": ip_address,
    }


async def _load_item(session: AsyncSession, queue_id: int) -> DeletionQueueItem:
    item = await session.get(DeletionQueueItem, queue_id)
    if item is None:
        raise DeletionNotFoundError(f"Deletion request {queue_id} not found")
    return item


async def require_tenant_root(session: AsyncSession, actor_id: str, tenant_id: str) -> User:
    # Both halves of the two-person rule are root users of the tenant being deleted.
    user = await session.get(User, actor_id)
    if user is None or not user.is_active or user.role != ROOT_ROLE or user.tenant_id != tenant_id:
        logger.warning("deletion_foreign_operator_refused actor_id=%s tenant_id=%s", actor_id, tenant_id)
        raise ForeignTenantError(f"Operator {actor_id} is not a root user of tenant {tenant_id}")
    return user


async def set_tenant_status(session: AsyncSession, tenant_id: str, status: str) -> int:
    values: dict[str, Any] = {"deletion_status": status}
    if status == TENANT_ACTIVE:
        values["deletion_requested_at"] = None
        values["deletion_requested_by"] = None
    result = await session.execute(update(Tenant).where(Tenant.id == tenant_id).values(**values))
    return result.rowcount or 0


async def _user_emails(
    session: AsyncSession,
    tenant_id: str,
    *,
    roles: tuple[str, ...],
    exclude_user_id: str | None = None,
) -> list[str]:
    query = select(User.email).where(
        tenant_predicate(User, tenant_id),
        User.role.in_(roles),
        User.is_active.is_(True),
        User.email.is_not(None),
    )
    if exclude_user_id is not None:
        query = query.where(User.id != exclude_user_id)
    return list((await session.execute(query)).scalars().all())


async def _user_email(ctx: DeletionContext, user_id: str) -> str | None:
    async with ctx.session_factory() as session:
        return await session.scalar(select(User.email).where(User.id == user_id))


async def request_deletion(
    ctx: DeletionContext,
    *,
    tenant_id: str,
    requester_id: str,
    reason: str | None,
    ip_address: str | None = None,
    request_id: str | None = None,
) -> DeletionQueueItem:
    """Open a deletion request: audit snapshot, tenant marked, queue item pending approval.

    Raises InvalidStateError when the tenant is not active or already has an
    in-flight request, ForeignTenantError when the requester is not one of
    its root users, and DeletionBlockedError for legal holds or shared
    resources.
    """
    validate_tenant_id(tenant_id)
    settings = ctx.settings
    now = ctx.now()
    async with ctx.session_factory() as session:
        tenant = await session.get(Tenant, tenant_id)
        if tenant is None:
            raise DeletionNotFoundError(f"Tenant {tenant_id} not found")
        await require_tenant_root(session, requester_id, tenant_id)
        if tenant.deletion_status != TENANT_ACTIVE:
            raise InvalidStateError(f"Tenant {tenant_id} is {tenant.deletion_status}; deletion already in progress")
        in_flight = await session.scalar(
            select(func.count())
            .select_from(DeletionQueueItem)
            .where(
                tenant_predicate(DeletionQueueItem, tenant_id),
                DeletionQueueItem.status.in_(QUEUE_IN_FLIGHT_STATUSES),
            )
        )
        if in_flight:
            raise InvalidStateError(f"Tenant {tenant_id} already has a deletion request in flight")
        await enforce_no_legal_hold(session, tenant_id, now)
        await enforce_no_shared_resources(session, tenant_id)

        user_count = int(
            await session.scalar(select(func.count()).select_from(User).where(tenant_predicate(User, tenant_id)))
            or 0
        )
        # Conditional flip guards against a concurrent request for the same tenant.
        marked = await session.execute(
            update(Tenant)
            .where(Tenant.id == tenant_id, Tenant.deletion_status == TENANT_ACTIVE)
            .values(
                deletion_status=TENANT_MARKED_FOR_DELETION,
                deletion_requested_at=now,
                deletion_requested_by=requester_id,
            )
        )
        if (marked.rowcount or 0) != 1:
            raise InvalidStateError(f"Tenant {tenant_id} changed state while requesting deletion")

        item = DeletionQueueItem(
            tenant_id=tenant_id,
            created_by=requester_id,
            reason=reason,
            ip_address=ip_address,
            requested_at=now,
            approval_status=APPROVAL_PENDING,
            cooling_off_hours=settings.deletion_cooling_off_hours,
            scheduled_deletion_date=now + timedelta(days=settings.deletion_grace_period_days),
            status=QUEUE_PENDING_APPROVAL,
        )
        session.add(item)
        await session.flush()
        session.add(
            DeletionAuditTrail(
                tenant_id=tenant_id,
                queue_id=item.id,
                tenant_name=tenant.company_name,
                user_count_at_deletion=user_count,
                deleted_by=requester_id,
                ip_address=ip_address,
                reason=reason,
                metadata_json={
                    "subdomain": tenant.subdomain,
                    "created_at": tenant.created_at.isoformat() if tenant.created_at else None,
                    "scheduled_deletion_date": item.scheduled_deletion_date.isoformat(),
                },
            )
        )
        await record_event(
            session=session,
            tenant_id=tenant_id,
            event_type="deletion.requested",
            outcome="success",
            resource_type="tenant_deletion",
            resource_id=str(item.id),
            metadata={"reason": reason, "user_count": user_count},
            **_actor_fields(requester_id, request_id, ip_address),
        )
        admin_emails = await _user_emails(session, tenant_id, roles=ADMIN_ROLES)
        approver_emails = await _user_emails(session, tenant_id, roles=(ROOT_ROLE,), exclude_user_id=requester_id)
        await session.commit()
        await session.refresh(item)

    logger.info("deletion_requested tenant_id=%s queue_id=%s requested_by=%s", tenant_id, item.id, requester_id)
    scheduled = item.scheduled_deletion_date.date().isoformat()
    for email in admin_emails:
        await send_email_quietly(
            ctx.notifier,
            to=email,
            subject=f"{tenant.company_name}: account scheduled for deletion",
            html=(
                f"<p>Deletion of <strong>{tenant.company_name}</strong> was requested.</p>"
                f"<p>All data will be permanently removed on {scheduled} unless the request is cancelled.</p>"
            ),
        )
    for email in approver_emails:
        await send_email_quietly(
            ctx.notifier,
            to=email,
            subject=f"{tenant.company_name}: deletion approval required",
            html=f"<p>Deletion request #{item.id} requires a second approval.</p>",
        )
    await send_alert_quietly(
        ctx.notifier,
        channel=settings.alert_ops_channel,
        severity=SEVERITY_WARNING,
        title="Tenant deletion requested",
        message=f"Tenant {tenant_id} ({tenant.company_name}) requested deletion; approval pending.",
        fields={"queue_id": item.id, "tenant_id": tenant_id, "requested_by": requester_id, "alert_type": "requested"},
    )
    return item


async def approve_deletion(
    ctx: DeletionContext,
    *,
    queue_id: int,
    approver_id: str,
    comment: str | None = None,
    ip_address: str | None = None,
    request_id: str | None = None,
) -> DeletionQueueItem:
    now = ctx.now()
    async with ctx.session_factory() as session:
        item = await _load_item(session, queue_id)
        await require_tenant_root(session, approver_id, item.tenant_id)
        if item.approval_status != APPROVAL_PENDING or item.status != QUEUE_PENDING_APPROVAL:
            raise InvalidStateError(f"Deletion request {queue_id} is {item.status}, not pending approval")
        if approver_id == item.created_by:
            raise SelfApprovalError("The requester cannot approve their own deletion request")
        elapsed_hours = (now - item.requested_at).total_seconds() / 3600.0
        if elapsed_hours < item.cooling_off_hours:
            raise CoolingOffNotElapsedError(item.cooling_off_hours - elapsed_hours)

        result = await session.execute(
            update(DeletionQueueItem)
            .where(
                DeletionQueueItem.id == queue_id,
                DeletionQueueItem.approval_status == APPROVAL_PENDING,
                DeletionQueueItem.status == QUEUE_PENDING_APPROVAL,
            )
            .values(
                approval_status=APPROVAL_APPROVED,
                approver_id=approver_id,
                approved_at=now,
                approval_comment=comment,
                status=QUEUE_QUEUED,
            )
        )
        if (result.rowcount or 0) != 1:
            raise InvalidStateError(f"Deletion request {queue_id} was decided concurrently")
        await set_tenant_status(session, item.tenant_id, TENANT_SUSPENDED)
        await record_event(
            session=session,
            tenant_id=item.tenant_id,
            event_type="deletion.approved",
            outcome="success",
            resource_type="tenant_deletion",
            resource_id=str(queue_id),
            metadata={"comment": comment},
            **_actor_fields(approver_id, request_id, ip_address),
        )
        await session.commit()
        await session.refresh(item)

    await revoke_sessions_quietly(ctx.cache, ctx.session_patterns(item.tenant_id), tenant_id=item.tenant_id)
    logger.info("deletion_approved tenant_id=%s queue_id=%s approver_id=%s", item.tenant_id, queue_id, approver_id)
    requester_email = await _user_email(ctx, item.created_by)
    if requester_email:
        await send_email_quietly(
            ctx.notifier,
            to=requester_email,
            subject="Tenant deletion approved",
            html=(
                f"<p>Deletion request #{queue_id} was approved. The tenant is suspended and will be "
                f"deleted on or after {item.scheduled_deletion_date.date().isoformat()}.</p>"
            ),
        )
    await send_alert_quietly(
        ctx.notifier,
        channel=ctx.settings.alert_ops_channel,
        severity=SEVERITY_WARNING,
        title="Tenant deletion approved",
        message=f"Tenant {item.tenant_id} suspended; deletion scheduled.",
        fields={
            "queue_id": queue_id,
            "tenant_id": item.tenant_id,
            "approved_by": approver_id,
            "alert_type": "approved",
        },
    )
    return item


async def reject_deletion(
    ctx: DeletionContext,
    *,
    queue_id: int,
    approver_id: str,
    reason: str | None = None,
    ip_address: str | None = None,
    request_id: str | None = None,
) -> DeletionQueueItem:
    now = ctx.now()
    async with ctx.session_factory() as session:
        item = await _load_item(session, queue_id)
        await require_tenant_root(session, approver_id, item.tenant_id)
        if item.approval_status != APPROVAL_PENDING or item.status != QUEUE_PENDING_APPROVAL:
            raise InvalidStateError(f"Deletion request {queue_id} is {item.status}, not pending approval")
        if approver_id == item.created_by:
            raise SelfApprovalError("The requester cannot reject their own deletion request; cancel it instead")
        result = await session.execute(
            update(DeletionQueueItem)
            .where(
                DeletionQueueItem.id == queue_id,
                DeletionQueueItem.approval_status == APPROVAL_PENDING,
                DeletionQueueItem.status == QUEUE_PENDING_APPROVAL,
            )
            .values(
                approval_status=APPROVAL_REJECTED,
                approver_id=approver_id,
                rejection_reason=reason,
                status=QUEUE_REJECTED,
                completed_at=now,
            )
        )
        if (result.rowcount or 0) != 1:
            raise InvalidStateError(f"Deletion request {queue_id} was decided concurrently")
        await set_tenant_status(session, item.tenant_id, TENANT_ACTIVE)
        await record_event(
            session=session,
            tenant_id=item.tenant_id,
            event_type="deletion.rejected",
            outcome="success",
            resource_type="tenant_deletion",
            resource_id=str(queue_id),
            metadata={"reason": reason},
            **_actor_fields(approver_id, request_id, ip_address),
        )
        await session.commit()
        await session.refresh(item)

    logger.info("deletion_rejected tenant_id=%s queue_id=%s", item.tenant_id, queue_id)
    requester_email = await _user_email(ctx, item.created_by)
    if requester_email:
        await send_email_quietly(
            ctx.notifier,
            to=requester_email,
            subject="Tenant deletion rejected",
            html=f"<p>Deletion request #{queue_id} was rejected: {reason or 'no reason given'}.</p>",
        )
    return item


async def cancel_deletion(
    ctx: DeletionContext,
    *,
    queue_id: int,
    actor_id: str,
    ip_address: str | None = None,
    request_id: str | None = None,
) -> DeletionQueueItem:
    # Allowed until the orchestrator picks the item up.
    now = ctx.now()
    async with ctx.session_factory() as session:
        item = await _load_item(session, queue_id)
        await require_tenant_root(session, actor_id, item.tenant_id)
        if item.status not in (QUEUE_PENDING_APPROVAL, QUEUE_QUEUED):
            raise InvalidStateError(f"Deletion request {queue_id} is {item.status} and can no longer be cancelled")
        result = await session.execute(
            update(DeletionQueueItem)
            .where(
                DeletionQueueItem.id == queue_id,
                DeletionQueueItem.status.in_((QUEUE_PENDING_APPROVAL, QUEUE_QUEUED)),
            )
            .values(status=QUEUE_CANCELLED, cancelled_by=actor_id, completed_at=now)
        )
        if (result.rowcount or 0) != 1:
            raise InvalidStateError(f"Deletion request {queue_id} changed state while cancelling")
        await set_tenant_status(session, item.tenant_id, TENANT_ACTIVE)
        await record_event(
            session=session,
            tenant_id=item.tenant_id,
            event_type="deletion.cancelled",
            outcome="success",
            resource_type="tenant_deletion",
            resource_id=str(queue_id),
            **_actor_fields(actor_id, request_id, ip_address),
        )
        await session.commit()
        await session.refresh(item)

    logger.info("deletion_cancelled tenant_id=%s queue_id=%s by=%s", item.tenant_id, queue_id, actor_id)
    await send_alert_quietly(
        ctx.notifier,
        channel=ctx.settings.alert_ops_channel,
        severity=SEVERITY_INFO,
        title="Tenant deletion cancelled",
        message=f"Deletion of tenant {item.tenant_id} was cancelled.",
        fields={"queue_id": queue_id, "tenant_id": item.tenant_id, "cancelled_by": actor_id, "alert_type": "cancelled"},
    )
    return item


async def emergency_stop(
    ctx: DeletionContext,
    *,
    queue_id: int,
    stopped_by: str,
    ip_address: str | None = None,
    request_id: str | None = None,
) -> DeletionQueueItem:
    """Stop a queued or running deletion.

    A queued item is stopped on the spot and its tenant reactivated. A
    processing item only gets the flag; the orchestrator honors it at the next
    step boundary.
    """
    now = ctx.now()
    async with ctx.session_factory() as session:
        item = await _load_item(session, queue_id)
        await require_tenant_root(session, stopped_by, item.tenant_id)
        if item.status not in (QUEUE_QUEUED, QUEUE_PROCESSING):
            raise InvalidStateError(f"Deletion request {queue_id} is {item.status}; nothing to stop")
        stopped_now = await session.execute(
            update(DeletionQueueItem)
            .where(DeletionQueueItem.id == queue_id, DeletionQueueItem.status == QUEUE_QUEUED)
            .values(
                status=QUEUE_EMERGENCY_STOPPED,
                emergency_stop=True,
                emergency_stopped_by=stopped_by,
                emergency_stopped_at=now,
                completed_at=now,
            )
        )
        if (stopped_now.rowcount or 0) == 1:
            await set_tenant_status(session, item.tenant_id, TENANT_ACTIVE)
        else:
            flagged = await session.execute(
                update(DeletionQueueItem)
                .where(DeletionQueueItem.id == queue_id, DeletionQueueItem.status == QUEUE_PROCESSING)
                .values(emergency_stop=True, emergency_stopped_by=stopped_by, emergency_stopped_at=now)
            )
            if (flagged.rowcount or 0) != 1:
                raise InvalidStateError(f"Deletion request {queue_id} finished before it could be stopped")
        await record_event(
            session=session,
            tenant_id=item.tenant_id,
            event_type="deletion.emergency_stop",
            outcome="success",
            resource_type="tenant_deletion",
            resource_id=str(queue_id),
            metadata={"immediate": (stopped_now.rowcount or 0) == 1},
            **_actor_fields(stopped_by, request_id, ip_address),
        )
        await session.commit()
        await session.refresh(item)

    logger.warning("deletion_emergency_stop queue_id=%s tenant_id=%s by=%s", queue_id, item.tenant_id, stopped_by)
    await send_alert_quietly(
        ctx.notifier,
        channel=ctx.settings.alert_critical_channel,
        severity=SEVERITY_CRITICAL,
        title="Emergency stop requested",
        message=f"Emergency stop for deletion of tenant {item.tenant_id} requested by {stopped_by}.",
        fields={"queue_id": queue_id, "tenant_id": item.tenant_id, "alert_type": "emergency_stop"},
    )
    return item


async def retry_deletion(
    ctx: DeletionContext,
    *,
    queue_id: int,
    actor_id: str,
    ip_address: str | None = None,
    request_id: str | None = None,
) -> DeletionQueueItem:
    async with ctx.session_factory() as session:
        item = await _load_item(session, queue_id)
        await require_tenant_root(session, actor_id, item.tenant_id)
        if item.status != QUEUE_FAILED:
            raise InvalidStateError(f"Deletion request {queue_id} is {item.status}; only failed runs can be retried")
        if item.error_code == IntegrityViolationError.code:
            raise InvalidStateError(
                f"Deletion request {queue_id} failed verification and needs operator investigation"
            )
        # A newer request owns the tenant once it exists; the failed item stays parked.
        newer_in_flight = await session.scalar(
            select(func.count())
            .select_from(DeletionQueueItem)
            .where(
                tenant_predicate(DeletionQueueItem, item.tenant_id),
                DeletionQueueItem.id != queue_id,
                DeletionQueueItem.status.in_(QUEUE_IN_FLIGHT_STATUSES),
            )
        )
        if newer_in_flight:
            raise InvalidStateError(
                f"Tenant {item.tenant_id} already has another deletion request in flight; retry refused"
            )
        next_retry_count = item.retry_count + 1
        result = await session.execute(
            update(DeletionQueueItem)
            .where(DeletionQueueItem.id == queue_id, DeletionQueueItem.status == QUEUE_FAILED)
            .values(
                status=QUEUE_QUEUED,
                retry_count=next_retry_count,
                error_message=None,
                error_code=None,
                emergency_stop=False,
                emergency_stopped_by=None,
                emergency_stopped_at=None,
                progress=0,
                current_step=None,
                completed_at=None,
            )
        )
        if (result.rowcount or 0) != 1:
            raise InvalidStateError(f"Deletion request {queue_id} changed state while retrying")
        # Partially deleted tenants must not serve traffic while waiting for the next poll.
        await set_tenant_status(session, item.tenant_id, TENANT_SUSPENDED)
        await record_event(
            session=session,
            tenant_id=item.tenant_id,
            event_type="deletion.retry",
            outcome="success",
            resource_type="tenant_deletion",
            resource_id=str(queue_id),
            metadata={"retry_count": next_retry_count},
            **_actor_fields(actor_id, request_id, ip_address),
        )
        await session.commit()
        await session.refresh(item)

    await revoke_sessions_quietly(ctx.cache, ctx.session_patterns(item.tenant_id), tenant_id=item.tenant_id)
    logger.info("deletion_retry_queued queue_id=%s retry_count=%s", queue_id, item.retry_count)
    return item


async def list_pending_approvals(ctx: DeletionContext, *, viewer_id: str) -> list[DeletionQueueItem]:
    # Viewers see their own tenant's requests only, never the ones they opened.
    async with ctx.session_factory() as session:
        viewer = await session.get(User, viewer_id)
        if viewer is None:
            return []
        rows = (
            await session.execute(
                select(DeletionQueueItem)
                .where(
                    tenant_predicate(DeletionQueueItem, viewer.tenant_id),
                    DeletionQueueItem.approval_status == APPROVAL_PENDING,
                    DeletionQueueItem.status == QUEUE_PENDING_APPROVAL,
                    DeletionQueueItem.created_by != viewer_id,
                )
                .order_by(DeletionQueueItem.requested_at.asc(), DeletionQueueItem.id.asc())
            )
        ).scalars().all()
    return list(rows)
