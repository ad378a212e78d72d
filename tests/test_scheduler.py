import logging

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from casamatch.jobs.scheduler import TICK_JOB_ID, JobWorker


class StubOrchestrator:
    def __init__(self, *, recovered=(), tick_result=None, tick_error: Exception | None = None):
        self.recovered = list(recovered)
        self.tick_result = tick_result
        self.tick_error = tick_error
        self.calls: list[str] = []

    async def recover_stale_jobs(self):
        self.calls.append("recover")
        return self.recovered

    async def tick(self):
        self.calls.append("tick")
        if self.tick_error is not None:
            raise self.tick_error
        return self.tick_result


class StubScheduler:
    def __init__(self):
        self.jobs: list[tuple[tuple, dict]] = []
        self.running = False
        self.shutdowns: list[bool] = []

    def add_job(self, *args, **kwargs):
        self.jobs.append((args, kwargs))

    def start(self):
        self.running = True

    def shutdown(self, wait=True):
        self.shutdowns.append(wait)
        self.running = False


@pytest.mark.asyncio
async def test_start_recovers_before_polling():
    orch = StubOrchestrator(recovered=[4, 9])
    sched = StubScheduler()
    worker = JobWorker(orch, interval_s=15, scheduler=sched)

    assert await worker.start() == [4, 9]
    assert orch.calls == ["recover"]
    assert sched.running

    (args, kwargs), = sched.jobs
    assert args == (worker._tick, "interval")
    assert kwargs["seconds"] == 15
    assert kwargs["id"] == TICK_JOB_ID
    assert kwargs["max_instances"] == 1
    assert kwargs["coalesce"] is True

    worker.stop()
    worker.stop()
    assert sched.shutdowns == [False]


@pytest.mark.asyncio
async def test_tick_errors_are_logged_not_raised(caplog):
    worker = JobWorker(StubOrchestrator(tick_error=RuntimeError("database is locked")), scheduler=StubScheduler())
    with caplog.at_level(logging.ERROR, logger="casamatch.jobs.scheduler"):
        await worker._tick()
    assert "worker tick failed" in caplog.text


@pytest.mark.asyncio
async def test_real_scheduler_registers_single_interval_job():
    worker = JobWorker(StubOrchestrator(), interval_s=3600, scheduler=AsyncIOScheduler())
    await worker.start()
    try:
        job = worker.scheduler.get_job(TICK_JOB_ID)
        assert job is not None
        assert job.max_instances == 1
        assert job.coalesce is True
        assert len(worker.scheduler.get_jobs()) == 1
    finally:
        worker.stop()
