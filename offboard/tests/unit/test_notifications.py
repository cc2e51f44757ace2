from __future__ import annotations

import json

import httpx
import pytest
from sqlalchemy import select

from offboard.domain.models import DeletionAlert
from offboard.persistence.db import SessionLocal
from offboard.services.notifications import (
    HttpNotificationSink,
    build_webhook_signature,
    post_signed_webhook,
    send_alert_quietly,
    send_email_quietly,
)
from offboard.tests.utils.fakes import RecordingNotifier


def _recording_transport(requests: list[httpx.Request], status_code: int = 200) -> httpx.MockTransport:
    def _handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code, json={"ok": status_code < 400})

    return httpx.MockTransport(_handler)


@pytest.mark.asyncio
async def test_alert_posts_chat_payload_and_logs_row(settings) -> None:
    requests: list[httpx.Request] = []
    settings = settings.model_copy(update={"alert_webhook_url": "https://chat.test/hook"})
    sink = HttpNotificationSink(settings, session_factory=SessionLocal, transport=_recording_transport(requests))

    result = await sink.send_alert(
        "#tenant-deletions",
        "warning",
        "Tenant deletion approved",
        "t-1 suspended",
        {"queue_id": 12, "alert_type": "approved"},
    )

    assert result.sent
    assert len(requests) == 1
    body = json.loads(requests[0].content)
    assert body["channel"] == "#tenant-deletions"
    assert body["attachments"][0]["color"] == "#ff9900"
    assert {"title": "queue_id", "value": "12", "short": True} in body["attachments"][0]["fields"]
    async with SessionLocal() as session:
        logged = (await session.execute(select(DeletionAlert))).scalar_one()
    assert logged.queue_id == 12
    assert logged.alert_type == "approved"
    assert logged.response_code == 200
    assert logged.error_message is None


@pytest.mark.asyncio
async def test_critical_alert_also_pages(settings) -> None:
    requests: list[httpx.Request] = []
    settings = settings.model_copy(
        update={"alert_webhook_url": "https://chat.test/hook", "alert_pagerduty_url": "https://pager.test/enqueue"}
    )
    sink = HttpNotificationSink(settings, transport=_recording_transport(requests))

    await sink.send_alert("#alerts-critical", "critical", "Tenant deletion failed", "boom", {"queue_id": 3})
    await sink.send_alert("#tenant-deletions", "info", "Tenant deletion started", "ok", {"queue_id": 4})

    assert [str(request.url) for request in requests] == [
        "https://chat.test/hook",
        "https://pager.test/enqueue",
        "https://chat.test/hook",
    ]
    page = json.loads(requests[1].content)
    assert page["event_action"] == "trigger"
    assert page["payload"]["severity"] == "critical"
    assert page["payload"]["custom_details"]["queue_id"] == "3"


@pytest.mark.asyncio
async def test_unconfigured_channels_are_skipped_but_logged(settings) -> None:
    sink = HttpNotificationSink(settings, session_factory=SessionLocal)

    email = await sink.send_email("ops@example.test", "Subject", "<p>hi</p>")
    alert = await sink.send_alert("#ops", "info", "Title", "Body")

    assert not email.sent
    assert email.message == "Email relay is not configured"
    assert not alert.sent
    async with SessionLocal() as session:
        logged = (await session.execute(select(DeletionAlert))).scalar_one()
    assert logged.alert_type == "deletion"
    assert logged.error_message == "Alert webhook is not configured"


@pytest.mark.asyncio
async def test_rejected_delivery_is_reported_not_raised(settings) -> None:
    requests: list[httpx.Request] = []
    settings = settings.model_copy(update={"email_relay_url": "https://relay.test/send", "ext_retry_max_attempts": 1})
    sink = HttpNotificationSink(settings, transport=_recording_transport(requests, status_code=503))

    result = await sink.send_email("owner@example.test", "Deleted", "<p>bye</p>")

    assert not result.sent
    assert result.status_code == 503
    assert json.loads(requests[0].content)["to"] == "owner@example.test"


@pytest.mark.asyncio
async def test_network_errors_are_reported_not_raised(settings) -> None:
    def _refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    settings = settings.model_copy(
        update={"email_relay_url": "https://relay.test/send", "ext_retry_max_attempts": 2, "ext_retry_backoff_ms": 1}
    )
    sink = HttpNotificationSink(settings, transport=httpx.MockTransport(_refuse))

    result = await sink.send_email("owner@example.test", "Deleted", "<p>bye</p>")

    assert not result.sent
    assert result.status_code is None
    assert "connection refused" in result.message


@pytest.mark.asyncio
async def test_quiet_helpers_swallow_sink_errors() -> None:
    sink = RecordingNotifier(fail=True)

    await send_email_quietly(sink, to="a@example.test", subject="s", html="h")
    await send_alert_quietly(sink, channel="#ops", severity="info", title="t", message="m")

    assert sink.emails == [] and sink.alerts == []


@pytest.mark.asyncio
async def test_signed_webhook_carries_hmac_of_body() -> None:
    requests: list[httpx.Request] = []

    result = await post_signed_webhook(
        url="https://hooks.example.test/x",
        secret="topsecret",
        event_type="tenant.deletion.started",
        payload={"tenant_id": "t-1", "queue_id": 9},
        timeout_ms=1000,
        transport=_recording_transport(requests),
    )

    assert result.sent
    request = requests[0]
    assert request.content == b'{"tenant_id":"t-1","queue_id":9}'
    assert request.headers["X-Offboard-Signature"] == build_webhook_signature("topsecret", request.content)
    assert request.headers["X-Offboard-Event"] == "tenant.deletion.started"


@pytest.mark.asyncio
async def test_unsigned_webhook_failure_is_returned() -> None:
    requests: list[httpx.Request] = []

    result = await post_signed_webhook(
        url="https://hooks.example.test/y",
        secret=None,
        event_type="tenant.deletion.started",
        payload={},
        timeout_ms=1000,
        transport=_recording_transport(requests, status_code=410),
    )

    assert not result.sent
    assert result.status_code == 410
    assert "X-Offboard-Signature" not in requests[0].headers
