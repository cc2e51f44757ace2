from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Sequence

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from offboard.core.config import Settings, get_settings
from offboard.persistence.db import SessionLocal
from offboard.services.cache import CacheStore, RedisCacheStore
from offboard.services.notifications import HttpNotificationSink, NotificationSink
from offboard.services.storage import LocalObjectStorage, ObjectStorage

if TYPE_CHECKING:
    from offboard.services.deletion.steps import DeletionStep


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class DeletionContext:
    """Collaborators shared by the approval gate, the orchestrator and step handlers.

    One context is built per process (API app or worker) and passed explicitly;
    tests build their own with fakes and a controllable clock.
    """

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    notifier: NotificationSink
    cache: CacheStore | None
    object_storage: ObjectStorage
    clock: Callable[[], datetime] = _utc_now
    # None means the default registry.
    steps: Sequence["DeletionStep"] | None = None
    # Test hook for outbound tenant webhooks.
    webhook_transport: httpx.AsyncBaseTransport | None = None

    def now(self) -> datetime:
        return self.clock()

    def session_patterns(self, tenant_id: str) -> list[str]:
        return self.settings.session_patterns_for(tenant_id)


def build_default_context(settings: Settings | None = None) -> DeletionContext:
    # Wire production collaborators from settings.
    resolved = settings or get_settings()
    return DeletionContext(
        settings=resolved,
        session_factory=SessionLocal,
        notifier=HttpNotificationSink(resolved, session_factory=SessionLocal),
        cache=RedisCacheStore(resolved.redis_url),
        object_storage=LocalObjectStorage(Path(resolved.object_storage_dir)),
    )
