from __future__ import annotations

from datetime import timedelta
import logging
from pathlib import Path
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from offboard.core.errors import InvalidStateError
from offboard.domain.models import (
    ArchivedTenantInvoice,
    Department,
    DeletionFileFailure,
    DeletionQueueItem,
    DeletionStepRecord,
    Document,
    DocumentReadStatus,
    Invoice,
    SubdomainReservation,
    Team,
    Tenant,
    TenantWebhook,
    User,
)
from offboard.persistence.guards import tenant_predicate
from offboard.services.cache import purge_keys
from offboard.services.deletion.checks import enforce_no_legal_hold, enforce_no_shared_resources
from offboard.services.deletion.context import DeletionContext
from offboard.services.deletion.export import create_data_export, create_final_backup
from offboard.services.deletion.states import QUEUE_CANCELLED, QUEUE_EMERGENCY_STOPPED, QUEUE_REJECTED
from offboard.services.notifications import post_signed_webhook, send_email_quietly
from offboard.services.storage import remove_file, remove_tree, tenant_object_prefix, tenant_temp_dir, tenant_upload_dir


logger = logging.getLogger(__name__)

# Superseded attempts removed by the queue cleanup step.
_SUPERSEDED_QUEUE_STATUSES = (QUEUE_CANCELLED, QUEUE_REJECTED, QUEUE_EMERGENCY_STOPPED)


async def delete_tenant_rows(session: AsyncSession, model: Any, tenant_id: str) -> int:
    result = await session.execute(delete(model).where(tenant_predicate(model, tenant_id)))
    return result.rowcount or 0


async def _requester_id(session: AsyncSession, queue_id: int) -> str:
    item = await session.get(DeletionQueueItem, queue_id)
    if item is None:
        raise InvalidStateError(f"Deletion queue item {queue_id} disappeared during the run")
    return item.created_by


# Pre-deletion


async def check_legal_hold(ctx: DeletionContext, tenant_id: str, queue_id: int, session: AsyncSession) -> int:
    await enforce_no_legal_hold(session, tenant_id, ctx.now())
    return 0


async def check_shared_resources(
    ctx: DeletionContext, tenant_id: str, queue_id: int, session: AsyncSession
) -> int:
    await enforce_no_shared_resources(session, tenant_id)
    return 0


async def export_tenant_data(ctx: DeletionContext, tenant_id: str, queue_id: int, session: AsyncSession) -> int:
    export = await create_data_export(ctx, session, tenant_id=tenant_id, queue_id=queue_id)
    logger.info(
        "tenant_export_ready tenant_id=%s queue_id=%s rows=%s path=%s",
        tenant_id,
        queue_id,
        export.row_count,
        export.file_path,
    )
    return 0


async def backup_tenant_data(ctx: DeletionContext, tenant_id: str, queue_id: int, session: AsyncSession) -> int:
    backup = await create_final_backup(ctx, session, tenant_id=tenant_id, queue_id=queue_id)
    logger.info(
        "tenant_backup_ready tenant_id=%s queue_id=%s encrypted=%s path=%s",
        tenant_id,
        queue_id,
        backup.encrypted,
        backup.file_path,
    )
    return 0


async def archive_billing_records(
    ctx: DeletionContext, tenant_id: str, queue_id: int, session: AsyncSession
) -> int:
    # Copy invoices into the retention archive, then drop the originals.
    now = ctx.now()
    retain_until = now + timedelta(days=365 * ctx.settings.deletion_invoice_retention_years)
    invoices = (
        await session.execute(select(Invoice).where(tenant_predicate(Invoice, tenant_id)).order_by(Invoice.id))
    ).scalars().all()
    if not invoices:
        return 0
    archived_ids = set(
        (
            await session.execute(
                select(ArchivedTenantInvoice.original_invoice_id).where(
                    tenant_predicate(ArchivedTenantInvoice, tenant_id)
                )
            )
        ).scalars().all()
    )
    for invoice in invoices:
        if invoice.id in archived_ids:
            continue
        session.add(
            ArchivedTenantInvoice(
                tenant_id=tenant_id,
                queue_id=queue_id,
                original_invoice_id=invoice.id,
                number=invoice.number,
                amount_cents=invoice.amount_cents,
                currency=invoice.currency,
                issued_at=invoice.issued_at,
                payload_json=invoice.payload_json or {},
                archived_at=now,
                retain_until=retain_until,
            )
        )
    await session.flush()
    return await delete_tenant_rows(session, Invoice, tenant_id)


async def send_final_notifications(
    ctx: DeletionContext, tenant_id: str, queue_id: int, session: AsyncSession
) -> int:
    tenant = await session.get(Tenant, tenant_id)
    company = tenant.company_name if tenant is not None else tenant_id
    recipients = (
        await session.execute(
            select(User.email).where(
                tenant_predicate(User, tenant_id), User.is_active.is_(True), User.email.is_not(None)
            )
        )
    ).scalars().all()
    for email in recipients:
        await send_email_quietly(
            ctx.notifier,
            to=email,
            subject=f"{company}: account deletion in progress",
            html=(
                f"<p>The account for <strong>{company}</strong> is being permanently deleted.</p>"
                "<p>Access has been disabled. A data export was created before deletion.</p>"
            ),
        )
    return 0


async def notify_external_webhooks(
    ctx: DeletionContext, tenant_id: str, queue_id: int, session: AsyncSession
) -> int:
    hooks = (
        await session.execute(
            select(TenantWebhook).where(tenant_predicate(TenantWebhook, tenant_id), TenantWebhook.is_active.is_(True))
        )
    ).scalars().all()
    payload = {
        "event": "tenant.deletion.started",
        "tenant_id": tenant_id,
        "queue_id": queue_id,
        "occurred_at": ctx.now().isoformat(),
    }
    for hook in hooks:
        result = await post_signed_webhook(
            url=hook.url,
            secret=hook.secret,
            event_type="tenant.deletion.started",
            payload=payload,
            timeout_ms=ctx.settings.tenant_webhook_timeout_ms,
            transport=ctx.webhook_transport,
        )
        if not result.sent:
            logger.warning(
                "tenant_webhook_not_delivered tenant_id=%s webhook_id=%s message=%s",
                tenant_id,
                hook.id,
                result.message,
            )
    return 0


# Cache/session cleanup


async def purge_cache_and_sessions(
    ctx: DeletionContext, tenant_id: str, queue_id: int, session: AsyncSession
) -> int:
    if ctx.cache is None:
        logger.info("cache_purge_skipped_no_backend tenant_id=%s", tenant_id)
        return 0
    return await purge_keys(ctx.cache, ctx.session_patterns(tenant_id))


# Table groups


def make_tenant_rows_handler(*models: Any):
    """Delete tenant rows from each model in the given order inside one transaction."""

    async def _handler(ctx: DeletionContext, tenant_id: str, queue_id: int, session: AsyncSession) -> int:
        total = 0
        for model in models:
            total += await delete_tenant_rows(session, model, tenant_id)
        return total

    _handler.__name__ = "delete_" + "_".join(model.__tablename__ for model in models)
    return _handler


async def delete_documents(ctx: DeletionContext, tenant_id: str, queue_id: int, session: AsyncSession) -> int:
    # Rows go first so a failed delete leaves files in place; per-file failures go to the side table.
    paths = (
        await session.execute(
            select(Document.file_path).where(tenant_predicate(Document, tenant_id), Document.file_path.is_not(None))
        )
    ).scalars().all()
    total = await delete_tenant_rows(session, DocumentReadStatus, tenant_id)
    total += await delete_tenant_rows(session, Document, tenant_id)
    for raw_path in paths:
        try:
            remove_file(Path(raw_path))
        except OSError as exc:
            logger.warning("document_file_delete_failed tenant_id=%s path=%s", tenant_id, raw_path, exc_info=exc)
            session.add(
                DeletionFileFailure(
                    queue_id=queue_id,
                    tenant_id=tenant_id,
                    file_path=raw_path,
                    error_message=str(exc) or exc.__class__.__name__,
                )
            )
    await session.flush()
    return total


# Foreign-key nulling pass

NULLABLE_USER_REFERENCES: tuple[tuple[Any, str], ...] = (
    (User, "created_by"),
    (Department, "manager_id"),
    (Department, "created_by"),
    (Team, "team_lead_id"),
    (Team, "created_by"),
)


async def nullify_user_references(
    ctx: DeletionContext, tenant_id: str, queue_id: int, session: AsyncSession
) -> int:
    total = 0
    for model, attribute in NULLABLE_USER_REFERENCES:
        reference = getattr(model, attribute)
        result = await session.execute(
            update(model)
            .where(tenant_predicate(model, tenant_id), reference.is_not(None))
            .values({attribute: None})
        )
        total += result.rowcount or 0
    return total


# Core entities


async def delete_users_except_requester(
    ctx: DeletionContext, tenant_id: str, queue_id: int, session: AsyncSession
) -> int:
    requester_id = await _requester_id(session, queue_id)
    result = await session.execute(
        delete(User).where(tenant_predicate(User, tenant_id), User.id != requester_id)
    )
    return result.rowcount or 0


async def delete_requester(ctx: DeletionContext, tenant_id: str, queue_id: int, session: AsyncSession) -> int:
    requester_id = await _requester_id(session, queue_id)
    result = await session.execute(
        delete(User).where(tenant_predicate(User, tenant_id), User.id == requester_id)
    )
    return result.rowcount or 0


async def delete_tenant_record(
    ctx: DeletionContext, tenant_id: str, queue_id: int, session: AsyncSession
) -> int:
    result = await session.execute(delete(Tenant).where(Tenant.id == tenant_id))
    return result.rowcount or 0


async def cleanup_queue_history(
    ctx: DeletionContext, tenant_id: str, queue_id: int, session: AsyncSession
) -> int:
    # Earlier abandoned attempts go; the running item stays as the last record.
    stale_ids = (
        await session.execute(
            select(DeletionQueueItem.id).where(
                tenant_predicate(DeletionQueueItem, tenant_id),
                DeletionQueueItem.id != queue_id,
                DeletionQueueItem.status.in_(_SUPERSEDED_QUEUE_STATUSES),
            )
        )
    ).scalars().all()
    if not stale_ids:
        return 0
    await session.execute(delete(DeletionStepRecord).where(DeletionStepRecord.queue_id.in_(stale_ids)))
    result = await session.execute(delete(DeletionQueueItem).where(DeletionQueueItem.id.in_(stale_ids)))
    return result.rowcount or 0


# Post-deletion


async def release_subdomain(ctx: DeletionContext, tenant_id: str, queue_id: int, session: AsyncSession) -> int:
    return await delete_tenant_rows(session, SubdomainReservation, tenant_id)


async def purge_temp_directories(
    ctx: DeletionContext, tenant_id: str, queue_id: int, session: AsyncSession
) -> int:
    removed = remove_tree(tenant_upload_dir(ctx.settings, tenant_id))
    removed += remove_tree(tenant_temp_dir(ctx.settings, tenant_id))
    return removed


async def purge_object_storage(
    ctx: DeletionContext, tenant_id: str, queue_id: int, session: AsyncSession
) -> int:
    return await ctx.object_storage.delete_prefix(tenant_object_prefix(tenant_id))
