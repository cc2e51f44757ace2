from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
import json
import logging
from typing import Any, Protocol

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from offboard.core.config import Settings
from offboard.domain.models import DeletionAlert
from offboard.services.resilience import RetryPolicy, retry_async


logger = logging.getLogger(__name__)

SEVERITY_INFO = "info"
SEVERITY_WARNING = "warning"
SEVERITY_CRITICAL = "critical"

_SEVERITY_COLORS = {
    SEVERITY_INFO: "#36a64f",
    SEVERITY_WARNING: "#ff9900",
    SEVERITY_CRITICAL: "#ff0000",
}


@dataclass(frozen=True)
class DeliveryResult:
    sent: bool
    status_code: int | None
    message: str


class NotificationSink(Protocol):
    async def send_email(self, to: str, subject: str, html: str) -> DeliveryResult:
        ...

    async def send_alert(
        self,
        channel: str,
        severity: str,
        title: str,
        message: str,
        fields: dict[str, Any] | None = None,
    ) -> DeliveryResult:
        ...


def build_webhook_signature(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


class HttpNotificationSink:
    """Delivers emails through an HTTP relay and alerts through chat/paging webhooks.

    Sends never raise: every failure is logged and reported in the returned
    DeliveryResult. Alert sends are additionally recorded in ``deletion_alerts``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._transport = transport
        self._policy = RetryPolicy(
            timeout_ms=settings.notification_timeout_ms,
            max_attempts=settings.ext_retry_max_attempts,
            backoff_ms=settings.ext_retry_backoff_ms,
        )

    async def _post(self, url: str, *, payload: dict[str, Any], integration: str) -> DeliveryResult:
        timeout = self._settings.notification_timeout_ms / 1000.0

        async def _call() -> httpx.Response:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                return await client.post(url, json=payload)

        try:
            response = await retry_async(_call, policy=self._policy)
        except Exception as exc:  # noqa: BLE001 - notification failures are non-fatal
            logger.warning("notification_send_failed integration=%s", integration, exc_info=exc)
            return DeliveryResult(sent=False, status_code=None, message=str(exc) or exc.__class__.__name__)
        if response.status_code >= 400:
            logger.warning(
                "notification_rejected integration=%s status=%s", integration, response.status_code
            )
            return DeliveryResult(
                sent=False,
                status_code=response.status_code,
                message=f"{integration} responded with status {response.status_code}",
            )
        return DeliveryResult(sent=True, status_code=response.status_code, message="delivered")

    async def send_email(self, to: str, subject: str, html: str) -> DeliveryResult:
        if not self._settings.email_relay_url:
            logger.info("email_skipped_not_configured to=%s subject=%s", to, subject)
            return DeliveryResult(sent=False, status_code=None, message="Email relay is not configured")
        payload = {"from": self._settings.email_from, "to": to, "subject": subject, "html": html}
        return await self._post(self._settings.email_relay_url, payload=payload, integration="email")

    async def send_alert(
        self,
        channel: str,
        severity: str,
        title: str,
        message: str,
        fields: dict[str, Any] | None = None,
    ) -> DeliveryResult:
        fields = dict(fields or {})
        if self._settings.alert_webhook_url:
            payload = {
                "channel": channel,
                "text": title,
                "attachments": [
                    {
                        "color": _SEVERITY_COLORS.get(severity, _SEVERITY_COLORS[SEVERITY_INFO]),
                        "title": title,
                        "text": message,
                        "fields": [
                            {"title": key, "value": str(value), "short": True}
                            for key, value in fields.items()
                        ],
                    }
                ],
            }
            result = await self._post(self._settings.alert_webhook_url, payload=payload, integration="chat")
        else:
            logger.info("alert_skipped_not_configured channel=%s title=%s", channel, title)
            result = DeliveryResult(sent=False, status_code=None, message="Alert webhook is not configured")

        if severity == SEVERITY_CRITICAL and self._settings.alert_pagerduty_url:
            page = {
                "event_action": "trigger",
                "payload": {
                    "summary": title,
                    "severity": "critical",
                    "source": self._settings.app_name,
                    "custom_details": {"message": message, **{k: str(v) for k, v in fields.items()}},
                },
            }
            await self._post(self._settings.alert_pagerduty_url, payload=page, integration="paging")

        await self._log_alert(
            channel=channel,
            severity=severity,
            title=title,
            message=message,
            fields=fields,
            result=result,
        )
        return result

    async def _log_alert(
        self,
        *,
        channel: str,
        severity: str,
        title: str,
        message: str,
        fields: dict[str, Any],
        result: DeliveryResult,
    ) -> None:
        if self._session_factory is None:
            return
        queue_id = fields.get("queue_id")
        async with self._session_factory() as session:
            try:
                session.add(
                    DeletionAlert(
                        queue_id=int(queue_id) if queue_id is not None else None,
                        alert_type=str(fields.get("alert_type") or "deletion"),
                        severity=severity,
                        channel=channel,
                        title=title,
                        message=message,
                        response_code=result.status_code,
                        error_message=None if result.sent else result.message,
                    )
                )
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.warning("alert_log_write_failed title=%s", title, exc_info=exc)


async def send_email_quietly(sink: NotificationSink, *, to: str, subject: str, html: str) -> None:
    try:
        await sink.send_email(to, subject, html)
    except Exception as exc:  # noqa: BLE001 - notification failures never block deletion
        logger.warning("email_send_failed to=%s subject=%s", to, subject, exc_info=exc)


async def send_alert_quietly(
    sink: NotificationSink,
    *,
    channel: str,
    severity: str,
    title: str,
    message: str,
    fields: dict[str, Any] | None = None,
) -> None:
    try:
        await sink.send_alert(channel, severity, title, message, fields)
    except Exception as exc:  # noqa: BLE001 - notification failures never block deletion
        logger.warning("alert_send_failed channel=%s title=%s", channel, title, exc_info=exc)


async def post_signed_webhook(
    *,
    url: str,
    secret: str | None,
    event_type: str,
    payload: dict[str, Any],
    timeout_ms: int,
    transport: httpx.AsyncBaseTransport | None = None,
) -> DeliveryResult:
    # Single attempt with a short timeout; the caller decides what a failure means.
    body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    headers = {"Content-Type": "application/json", "X-Offboard-Event": event_type}
    if secret:
        headers["X-Offboard-Signature"] = build_webhook_signature(secret, body)
    try:
        async with httpx.AsyncClient(timeout=timeout_ms / 1000.0, transport=transport) as client:
            response = await client.post(url, content=body, headers=headers)
    except httpx.HTTPError as exc:
        logger.warning("tenant_webhook_send_failed url=%s event_type=%s", url, event_type, exc_info=exc)
        return DeliveryResult(sent=False, status_code=None, message=str(exc) or exc.__class__.__name__)
    if response.status_code >= 400:
        return DeliveryResult(
            sent=False,
            status_code=response.status_code,
            message=f"Webhook responded with status {response.status_code}",
        )
    return DeliveryResult(sent=True, status_code=response.status_code, message="delivered")
