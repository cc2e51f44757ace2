from __future__ import annotations

import os
import tempfile

# Settings are cached on first import; point them at a throwaway SQLite file first.
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{tempfile.mkdtemp(prefix='offboard-tests-')}/offboard.db"
os.environ.setdefault("ENVIRONMENT", "test")

from datetime import datetime, timezone
from pathlib import Path

import httpx
import pytest

from offboard.core.config import Settings
from offboard.domain.models import Base
from offboard.persistence.db import SessionLocal, engine
from offboard.services.deletion.context import DeletionContext
from offboard.services.storage import LocalObjectStorage
from offboard.tests.utils.fakes import FakeCache, FrozenClock, RecordingNotifier


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Every test starts from an empty schema; disposing keeps connections off stale loops.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        environment="test",
        database_url=os.environ["DATABASE_URL"],
        deletion_grace_period_days=30,
        deletion_cooling_off_hours=24,
        deletion_export_dir=str(tmp_path / "exports"),
        deletion_backup_dir=str(tmp_path / "backups"),
        upload_root_dir=str(tmp_path / "uploads"),
        temp_root_dir=str(tmp_path / "tmp"),
        object_storage_dir=str(tmp_path / "objects"),
        session_key_patterns="session:{tenant_id}:*,tenant:{tenant_id}:*",
    )


@pytest.fixture
def cache() -> FakeCache:
    return FakeCache()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def webhook_requests() -> list[httpx.Request]:
    return []


@pytest.fixture
def ctx(settings, cache, notifier, clock, webhook_requests) -> DeletionContext:
    def _webhook(request: httpx.Request) -> httpx.Response:
        webhook_requests.append(request)
        return httpx.Response(204)

    return DeletionContext(
        settings=settings,
        session_factory=SessionLocal,
        notifier=notifier,
        cache=cache,
        object_storage=LocalObjectStorage(Path(settings.object_storage_dir)),
        clock=clock,
        webhook_transport=httpx.MockTransport(_webhook),
    )
