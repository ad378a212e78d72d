# casamatch/service_layer/orchestrator.py
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Mapping

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..adapters.ingestion.base import ResumableSource, SourceAdapter
from ..adapters.repos.jobs import JobRepository
from ..config import settings
from ..domain.clock import Clock, utcnow
from ..domain.errors import CheckpointPersistenceError, SourceUnavailable
from ..domain.types import Listing, merge_details
from ..models import JobStatus, JobType, ScrapingJob
from ..schemas import (
    Checkpoint,
    ItemError,
    JobConfig,
    JobResults,
    SearchCriteria,
    load_checkpoint,
    load_results,
)
from .dedup import DeduplicationService
from .importer import ListingImporter
from .matching import MatchingEngine

log = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


def _dump(model: Any) -> dict[str, Any]:
    if model is None:
        return {}
    if isinstance(model, dict):
        return model
    return model.model_dump(exclude_none=True)


def _err(e: BaseException) -> str:
    return f"{type(e).__name__}: {e}"[:500]


async def enqueue_job(
    session: AsyncSession,
    job_type: JobType,
    *,
    criteria: SearchCriteria | dict[str, Any] | None = None,
    config: JobConfig | dict[str, Any] | None = None,
    buyer_id: int | None = None,
    now: datetime | None = None,
) -> ScrapingJob:
    # validate up front; a bad payload should fail here, not when the worker claims it
    crit = SearchCriteria.model_validate(_dump(criteria))
    conf = JobConfig.model_validate(_dump(config))
    return await JobRepository(session).enqueue(
        job_type,
        criteria=crit.model_dump(exclude_none=True),
        config=conf.model_dump(exclude_none=True),
        buyer_id=buyer_id,
        now=now or utcnow(),
    )


async def list_jobs(session: AsyncSession, status: JobStatus) -> list[ScrapingJob]:
    return await JobRepository(session).list_by_status(status)


class JobOrchestrator:
    """
    Runs ingestion jobs one at a time.

    Lifecycle: queued -> running -> completed | failed. A full sweep walks its sources
    in batches and persists checkpoint + results together after every batch, so a job
    picked up again (requeue) continues at the first unprocessed batch instead of
    starting over. Each imported listing commits on its own; a crash between an item
    commit and the next checkpoint replays at most that one batch, which the importer
    absorbs as updates.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        adapters: Mapping[str, SourceAdapter],
        *,
        importer: ListingImporter | None = None,
        dedup: DeduplicationService | None = None,
        matching: MatchingEngine | None = None,
        clock: Clock = utcnow,
        sleep: Sleeper = asyncio.sleep,
        sources: list[str] | None = None,
        stale_minutes: int | None = None,
        batch_size: int | None = None,
        error_cap: int | None = None,
        checkpoint_attempts: int | None = None,
        backoff_base_s: float | None = None,
        backoff_cap_s: float | None = None,
    ) -> None:
        self.session_maker = session_maker
        self.adapters = dict(adapters)
        self.importer = importer or ListingImporter()
        self.dedup = dedup
        self.matching = matching
        self._clock = clock
        self._sleep = sleep

        self.sources = list(settings.SWEEP_SOURCES if sources is None else sources)
        self.stale_minutes = int(settings.STALE_JOB_MINUTES if stale_minutes is None else stale_minutes)
        self.batch_size = int(settings.SWEEP_BATCH_SIZE if batch_size is None else batch_size)
        self.error_cap = int(settings.JOB_ERROR_CAP if error_cap is None else error_cap)
        self.checkpoint_attempts = int(
            settings.CHECKPOINT_MAX_ATTEMPTS if checkpoint_attempts is None else checkpoint_attempts
        )
        self.backoff_base_s = float(settings.CHECKPOINT_BACKOFF_BASE_S if backoff_base_s is None else backoff_base_s)
        self.backoff_cap_s = float(settings.CHECKPOINT_BACKOFF_CAP_S if backoff_cap_s is None else backoff_cap_s)

        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    # -----------------------------
    # Queue management
    # -----------------------------
    async def enqueue(
        self,
        job_type: JobType,
        *,
        criteria: SearchCriteria | dict[str, Any] | None = None,
        config: JobConfig | dict[str, Any] | None = None,
        buyer_id: int | None = None,
    ) -> int:
        async with self.session_maker() as session:
            job = await enqueue_job(
                session, job_type, criteria=criteria, config=config, buyer_id=buyer_id, now=self._clock()
            )
            await session.commit()
            return job.id

    async def requeue(self, job_id: int) -> bool:
        """Put a failed or orphaned job back in the queue; its checkpoint is kept."""
        async with self.session_maker() as session:
            ok = await JobRepository(session).requeue(job_id, now=self._clock())
            await session.commit()
        if ok:
            log.info("job %s requeued", job_id)
        return ok

    async def list_jobs(self, status: JobStatus) -> list[ScrapingJob]:
        async with self.session_maker() as session:
            return await list_jobs(session, status)

    async def recover_stale_jobs(self) -> list[int]:
        """
        Fail running jobs whose started_at is older than stale_minutes (or missing).
        Creation time plays no part: a job queued for hours and started a minute ago is live.
        """
        now = self._clock()
        cutoff = now - timedelta(minutes=self.stale_minutes)
        async with self.session_maker() as session:
            repo = JobRepository(session)
            stale = await repo.list_stale_running(cutoff)
            for job in stale:
                await repo.mark_failed(
                    job.id,
                    f"stale: running since {job.started_at.isoformat() if job.started_at else 'unknown'}",
                    now=now,
                )
            await session.commit()
        ids = [j.id for j in stale]
        if ids:
            log.warning("marked %d stale job(s) failed: %s", len(ids), ids)
        return ids

    # -----------------------------
    # Execution
    # -----------------------------
    async def tick(self) -> int | None:
        """Claim and run the oldest queued job. Returns its id, or None if idle/busy."""
        if self._running:
            log.debug("tick skipped: a job is already running")
            return None
        self._running = True
        try:
            async with self.session_maker() as session:
                job = await JobRepository(session).claim_next(now=self._clock())
                await session.commit()
            if job is None:
                return None
            log.info("job %s (%s) started", job.id, job.job_type.value)
            await self._execute(job)
            return job.id
        finally:
            self._running = False

    run_once = tick

    def _sources_for(self, job: ScrapingJob, config: JobConfig) -> list[str]:
        configured = config.sources or self.sources
        if job.job_type == JobType.single_target:
            return configured[:1]
        return list(configured)

    async def _execute(self, job: ScrapingJob) -> None:
        job_id = job.id
        results: JobResults | None = None
        try:
            checkpoint = load_checkpoint(job.checkpoint_json)
            results = load_results(job.results_json)
            criteria = SearchCriteria.model_validate(json.loads(job.criteria_json or "{}"))
            config = JobConfig.model_validate(json.loads(job.config_json or "{}"))
            batch_size = config.batch_size or self.batch_size

            for source in self._sources_for(job, config):
                if source in checkpoint.completed_sources:
                    log.info("job %s: source %s already completed, skipping", job_id, source)
                    continue
                await self._run_source(job_id, source, criteria, config, checkpoint, results, batch_size)

            await self._after_sources(job, results)

            async with self.session_maker() as session:
                await JobRepository(session).mark_completed(job_id, results, now=self._clock())
                await session.commit()
            log.info(
                "job %s completed: fetched=%d imported=%d updated=%d failed=%d",
                job_id,
                results.total_fetched,
                results.imported,
                results.updated,
                results.failed,
            )
        except Exception as e:
            log.exception("job %s failed", job_id)
            await self._fail(job_id, e, results)

    async def _fail(self, job_id: int, error: Exception, results: JobResults | None) -> None:
        try:
            async with self.session_maker() as session:
                await JobRepository(session).mark_failed(job_id, _err(error), now=self._clock(), results=results)
                await session.commit()
        except Exception:
            log.critical("job %s could not be marked failed; leaving it for the stale sweep", job_id, exc_info=True)

    async def _fetch(
        self,
        adapter: SourceAdapter,
        source: str,
        criteria: SearchCriteria,
        checkpoint: Checkpoint,
    ) -> list[Listing]:
        run_id = checkpoint.run_ids.get(source)
        if run_id and isinstance(adapter, ResumableSource):
            log.info("source %s: re-reading run %s", source, run_id)
            return await adapter.load_run(run_id, criteria)

        listings = await adapter.search(criteria)
        new_run = getattr(adapter, "last_run_id", None)
        if new_run:
            checkpoint.run_ids[source] = new_run
        return listings

    async def _run_source(
        self,
        job_id: int,
        source: str,
        criteria: SearchCriteria,
        config: JobConfig,
        checkpoint: Checkpoint,
        results: JobResults,
        batch_size: int,
    ) -> None:
        res = results.source(source)
        adapter = self.adapters.get(source)

        try:
            if adapter is None:
                raise SourceUnavailable(source)
            if not await adapter.is_available():
                raise SourceUnavailable(source)
            listings = await self._fetch(adapter, source, criteria, checkpoint)
        except Exception as e:
            # one source down never takes the job with it
            log.warning("job %s: source %s failed: %s", job_id, source, e)
            res.error = _err(e)
            checkpoint.complete_source(source)
            await self._persist_progress(job_id, checkpoint, results)
            return

        res.fetched = len(listings)
        res.error = None
        results.total_fetched = sum(r.fetched for r in results.per_source.values())

        start = checkpoint.start_source(source)
        if start:
            log.info("job %s: resuming %s at offset %d/%d", job_id, source, start, len(listings))
        await self._persist_progress(job_id, checkpoint, results)

        for offset in range(start, len(listings), batch_size):
            batch = listings[offset : offset + batch_size]
            for listing in batch:
                await self._import_one(adapter, source, listing, config, results)
            checkpoint.offset = offset + len(batch)
            await self._persist_progress(job_id, checkpoint, results)

        checkpoint.complete_source(source)
        await self._persist_progress(job_id, checkpoint, results)
        log.info(
            "job %s: source %s done (fetched=%d imported=%d updated=%d failed=%d)",
            job_id,
            source,
            res.fetched,
            res.imported,
            res.updated,
            res.failed,
        )

    async def _import_one(
        self,
        adapter: SourceAdapter,
        source: str,
        listing: Listing,
        config: JobConfig,
        results: JobResults,
    ) -> None:
        res = results.source(source)
        try:
            if config.fetch_details:
                listing = merge_details(listing, await adapter.fetch_details(listing.external_id))
            async with self.session_maker() as session:
                outcome = await self.importer.import_listing(session, listing, now=self._clock())
                await session.commit()
        except Exception as e:
            res.failed += 1
            results.failed += 1
            results.record_error(
                ItemError(source=source, external_id=listing.external_id, message=_err(e), at=self._clock()),
                self.error_cap,
            )
            log.warning("%s:%s not imported: %s", source, listing.external_id, e)
            return

        results.record_property(outcome.property_id, created=outcome.created)
        if outcome.created:
            res.imported += 1
            results.imported += 1
        else:
            res.updated += 1
            results.updated += 1

    async def _persist_progress(self, job_id: int, checkpoint: Checkpoint, results: JobResults) -> None:
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self.session_maker() as session:
                    await JobRepository(session).save_progress(job_id, checkpoint, results, now=self._clock())
                    await session.commit()
                return
            except Exception as e:
                if attempt >= self.checkpoint_attempts:
                    raise CheckpointPersistenceError(job_id, attempt) from e
                delay = min(self.backoff_cap_s, self.backoff_base_s * (2 ** (attempt - 1)))
                log.warning(
                    "job %s: checkpoint write failed (attempt %d/%d), retrying in %.1fs: %s",
                    job_id,
                    attempt,
                    self.checkpoint_attempts,
                    delay,
                    e,
                )
                await self._sleep(delay)

    async def _after_sources(self, job: ScrapingJob, results: JobResults) -> None:
        if self.dedup is not None and results.changed > 0:
            try:
                results.dedup = await self.dedup.run_scan(focus=results.touched_ids)
            except Exception as e:
                log.exception("job %s: dedup scan failed", job.id)
                results.note = f"dedup failed: {_err(e)}"

        if self.matching is None:
            return
        if job.job_type == JobType.single_target and job.buyer_id is not None:
            try:
                results.matching = (await self.matching.match_buyer(job.buyer_id)).as_dict()
            except Exception as e:
                log.exception("job %s: matching buyer %s failed", job.id, job.buyer_id)
                results.note = f"matching failed: {_err(e)}"
            return
        if results.created_ids:
            results.matching = await self._match_new_properties(job.id, results.created_ids)

    async def _match_new_properties(self, job_id: int, property_ids: list[int]) -> dict[str, int]:
        """Scan eligible buyers for each property this job created; one failure never stops the rest."""
        totals: dict[str, int] = {"properties": 0, "property_failures": 0}
        for pid in property_ids:
            try:
                summary = await self.matching.match_property(pid)
            except Exception:
                totals["property_failures"] += 1
                log.exception("job %s: matching property %s failed", job_id, pid)
                continue
            totals["properties"] += 1
            for k, v in summary.as_dict().items():
                totals[k] = totals.get(k, 0) + v
        return totals
