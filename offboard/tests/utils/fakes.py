from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import fnmatch
from typing import Any

from offboard.services.notifications import DeliveryResult


class FakeCache:
    """In-memory stand-in for the Redis session/cache store."""

    def __init__(self, keys: list[str] | None = None, *, fail: bool = False) -> None:
        self.data: dict[str, str] = {key: "1" for key in keys or []}
        self.fail = fail

    async def keys(self, pattern: str) -> list[str]:
        if self.fail:
            raise ConnectionError("cache unavailable")
        return sorted(key for key in self.data if fnmatch.fnmatchcase(key, pattern))

    async def delete(self, keys: list[str]) -> int:
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed


@dataclass
class SentAlert:
    channel: str
    severity: str
    title: str
    message: str
    fields: dict[str, Any]


@dataclass
class RecordingNotifier:
    emails: list[tuple[str, str, str]] = field(default_factory=list)
    alerts: list[SentAlert] = field(default_factory=list)
    fail: bool = False

    async def send_email(self, to: str, subject: str, html: str) -> DeliveryResult:
        if self.fail:
            raise RuntimeError("relay down")
        self.emails.append((to, subject, html))
        return DeliveryResult(sent=True, status_code=202, message="recorded")

    async def send_alert(
        self,
        channel: str,
        severity: str,
        title: str,
        message: str,
        fields: dict[str, Any] | None = None,
    ) -> DeliveryResult:
        if self.fail:
            raise RuntimeError("chat webhook down")
        self.alerts.append(SentAlert(channel, severity, title, message, dict(fields or {})))
        return DeliveryResult(sent=True, status_code=200, message="recorded")

    def alert_types(self) -> list[str]:
        return [str(alert.fields.get("alert_type")) for alert in self.alerts]

    def recipients(self) -> list[str]:
        return [to for to, _subject, _html in self.emails]


class FrozenClock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current
