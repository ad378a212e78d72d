from __future__ import annotations

import asyncio
import logging

from casamatch.db import async_session_maker, init_models
from casamatch.jobs.scheduler import JobWorker
from casamatch.service_layer.sources import build_orchestrator


def _quiet_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(levelname)s:%(name)s:%(message)s",
    )

    # Quiet the usual offenders
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


async def main() -> None:
    _quiet_logging()
    await init_models()

    worker = JobWorker(build_orchestrator(async_session_maker))
    recovered = await worker.start()
    if recovered:
        logging.getLogger(__name__).warning("Recovered stale jobs: %s", recovered)

    try:
        while True:
            await asyncio.sleep(3600)
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    finally:
        worker.stop()


if __name__ == "__main__":
    asyncio.run(main())
