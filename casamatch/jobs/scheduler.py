# casamatch/jobs/scheduler.py
from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from ..config import settings
from ..service_layer.orchestrator import JobOrchestrator

log = logging.getLogger(__name__)

TICK_JOB_ID = "casamatch-orchestrator-tick"


class JobWorker:
    """
    Polls the job queue. The scheduler only decides *when*; whether a tick does
    anything (single-flight, claim) is the orchestrator's call.
    """

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        *,
        interval_s: float | None = None,
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.interval_s = float(settings.WORKER_POLL_INTERVAL_S if interval_s is None else interval_s)
        self.scheduler = scheduler or AsyncIOScheduler()

    async def _tick(self) -> None:
        try:
            job_id = await self.orchestrator.tick()
        except Exception:
            # _execute already absorbs job errors; this is claim/DB trouble
            log.exception("worker tick failed")
            return
        if job_id is not None:
            log.info("worker tick ran job %s", job_id)

    async def start(self) -> list[int]:
        """Fail orphaned jobs first, then start polling. Returns the ids recovered."""
        recovered = await self.orchestrator.recover_stale_jobs()
        self.scheduler.add_job(
            self._tick,
            "interval",
            seconds=self.interval_s,
            id=TICK_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        log.info("worker started (every %.0fs)", self.interval_s)
        return recovered

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        log.info("worker stopped")
