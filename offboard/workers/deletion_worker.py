from __future__ import annotations

import asyncio
import logging
import signal

from offboard.persistence.db import engine
from offboard.services.cache import RedisCacheStore
from offboard.services.deletion.context import DeletionContext, build_default_context
from offboard.services.deletion.orchestrator import run_deletion_worker_loop

logger = logging.getLogger(__name__)


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    # SIGTERM/SIGINT finish the current run, then exit at the next poll boundary.
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            logger.warning("signal_handler_unsupported signal=%s", sig.name)


async def run_worker(ctx: DeletionContext | None = None) -> None:
    context = ctx or build_default_context()
    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)
    try:
        await run_deletion_worker_loop(context, stop_event=stop_event)
    finally:
        if isinstance(context.cache, RedisCacheStore):
            await context.cache.close()
        await engine.dispose()
