# casamatch/adapters/repos/jobs.py
from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ...models import JobStatus, JobType, ScrapingJob
from ...schemas import Checkpoint, JobResults


class JobRepository:
    """
    Job/checkpoint store. Every mutation is a point update keyed by job id.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def enqueue(
        self,
        job_type: JobType,
        *,
        criteria: dict[str, Any] | None = None,
        config: dict[str, Any] | None = None,
        buyer_id: int | None = None,
        now: datetime,
    ) -> ScrapingJob:
        job = ScrapingJob(
            job_type=job_type,
            status=JobStatus.queued,
            buyer_id=buyer_id,
            criteria_json=json.dumps(criteria or {}),
            config_json=json.dumps(config or {}),
            created_at=now,
            updated_at=now,
        )
        self.session.add(job)
        await self.session.flush()
        return job

    async def get(self, job_id: int) -> ScrapingJob | None:
        return await self.session.get(ScrapingJob, job_id)

    async def list_by_status(self, status: JobStatus) -> list[ScrapingJob]:
        q = select(ScrapingJob).where(ScrapingJob.status == status).order_by(ScrapingJob.id.asc())
        return list((await self.session.execute(q)).scalars().all())

    async def list_stale_running(self, cutoff: datetime) -> list[ScrapingJob]:
        """Running jobs whose started_at is older than cutoff (or missing). Creation time is irrelevant."""
        q = (
            select(ScrapingJob)
            .where(ScrapingJob.status == JobStatus.running)
            .where(or_(ScrapingJob.started_at.is_(None), ScrapingJob.started_at < cutoff))
            .order_by(ScrapingJob.id.asc())
        )
        return list((await self.session.execute(q)).scalars().all())

    async def claim_next(self, *, now: datetime) -> ScrapingJob | None:
        """
        Oldest queued job -> running. The conditional UPDATE makes a second claimer lose
        instead of running the same job twice.
        """
        q = (
            select(ScrapingJob.id)
            .where(ScrapingJob.status == JobStatus.queued)
            .order_by(ScrapingJob.created_at.asc(), ScrapingJob.id.asc())
            .limit(1)
        )
        job_id = (await self.session.execute(q)).scalar_one_or_none()
        if job_id is None:
            return None

        res = await self.session.execute(
            update(ScrapingJob)
            .where(ScrapingJob.id == job_id, ScrapingJob.status == JobStatus.queued)
            .values(status=JobStatus.running, started_at=now, completed_at=None, error_message=None, updated_at=now)
        )
        if res.rowcount != 1:
            return None
        job = await self.session.get(ScrapingJob, job_id, populate_existing=True)
        return job

    async def save_progress(self, job_id: int, checkpoint: Checkpoint, results: JobResults, *, now: datetime) -> None:
        """Checkpoint and results land in one UPDATE statement, never one without the other."""
        await self.session.execute(
            update(ScrapingJob)
            .where(ScrapingJob.id == job_id)
            .values(
                checkpoint_json=checkpoint.model_dump_json(),
                results_json=results.model_dump_json(),
                updated_at=now,
            )
        )

    async def mark_completed(self, job_id: int, results: JobResults, *, now: datetime) -> None:
        await self.session.execute(
            update(ScrapingJob)
            .where(ScrapingJob.id == job_id)
            .values(
                status=JobStatus.completed,
                results_json=results.model_dump_json(),
                completed_at=now,
                updated_at=now,
            )
        )

    async def mark_failed(
        self,
        job_id: int,
        error: str,
        *,
        now: datetime,
        results: JobResults | None = None,
    ) -> None:
        values: dict[str, Any] = {
            "status": JobStatus.failed,
            "error_message": error[:2000],
            "completed_at": now,
            "updated_at": now,
        }
        if results is not None:
            values["results_json"] = results.model_dump_json()
        await self.session.execute(update(ScrapingJob).where(ScrapingJob.id == job_id).values(**values))

    async def requeue(self, job_id: int, *, now: datetime) -> bool:
        """failed/running -> queued, keeping the checkpoint so the next claim resumes."""
        res = await self.session.execute(
            update(ScrapingJob)
            .where(ScrapingJob.id == job_id)
            .where(ScrapingJob.status.in_([JobStatus.failed, JobStatus.running]))
            .values(status=JobStatus.queued, error_message=None, completed_at=None, updated_at=now)
        )
        return res.rowcount == 1
