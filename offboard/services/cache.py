from __future__ import annotations

import logging
from typing import Protocol

from redis.asyncio import Redis


logger = logging.getLogger(__name__)


class CacheStore(Protocol):
    # Narrow view of the session/cache store used for tenant purges.
    async def keys(self, pattern: str) -> list[str]:
        ...

    async def delete(self, keys: list[str]) -> int:
        ...


class RedisCacheStore:
    def __init__(self, url: str, *, client: Redis | None = None, scan_count: int = 500) -> None:
        self._url = url
        self._client = client
        self._scan_count = scan_count

    def _redis(self) -> Redis:
        if self._client is None:
            self._client = Redis.from_url(self._url, encoding="utf-8", decode_responses=True)
        return self._client

    async def keys(self, pattern: str) -> list[str]:
        # SCAN instead of KEYS so large keyspaces do not block the server.
        found: list[str] = []
        async for key in self._redis().scan_iter(match=pattern, count=self._scan_count):
            found.append(key)
        return found

    async def delete(self, keys: list[str]) -> int:
        if not keys:
            return 0
        return int(await self._redis().delete(*keys))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


async def purge_keys(cache: CacheStore, patterns: list[str]) -> int:
    # Errors propagate; callers decide whether a purge failure matters.
    deleted = 0
    for pattern in patterns:
        keys = await cache.keys(pattern)
        if keys:
            deleted += await cache.delete(keys)
    return deleted


async def revoke_sessions_quietly(cache: CacheStore | None, patterns: list[str], *, tenant_id: str) -> int:
    if cache is None:
        return 0
    try:
        revoked = await purge_keys(cache, patterns)
    except Exception as exc:  # noqa: BLE001 - session revocation is best effort
        logger.warning("session_revoke_failed tenant_id=%s", tenant_id, exc_info=exc)
        return 0
    logger.info("sessions_revoked tenant_id=%s keys=%s", tenant_id, revoked)
    return revoked
