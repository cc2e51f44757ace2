from __future__ import annotations

import asyncio

from offboard.core.logging import configure_logging
from offboard.workers.deletion_worker import run_worker


async def _main() -> None:
    # Dedicated process: the orchestrator polls the queue independently of API traffic.
    configure_logging()
    await run_worker()


if __name__ == "__main__":
    asyncio.run(_main())
