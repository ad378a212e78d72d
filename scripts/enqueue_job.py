from __future__ import annotations

import argparse
import asyncio

from casamatch.db import async_session_maker, init_models
from casamatch.models import JobStatus, JobType
from casamatch.service_layer.orchestrator import enqueue_job, list_jobs
from casamatch.adapters.repos.jobs import JobRepository
from casamatch.domain.clock import utcnow


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Queue a listing ingestion job.")
    p.add_argument("--type", choices=[t.value for t in JobType], default=JobType.full_sweep.value)
    p.add_argument("--city", default=None)
    p.add_argument("--max-price", type=float, default=None)
    p.add_argument("--min-size", type=float, default=None)
    p.add_argument("--min-rooms", type=int, default=None)
    p.add_argument("--max-items", type=int, default=None)
    p.add_argument("--source", action="append", dest="sources", default=None, help="repeatable")
    p.add_argument("--batch-size", type=int, default=None)
    p.add_argument("--fetch-details", action="store_true")
    p.add_argument("--buyer-id", type=int, default=None)
    p.add_argument("--resume", type=int, default=None, metavar="JOB_ID", help="requeue a failed job instead")
    p.add_argument("--list", choices=[s.value for s in JobStatus], default=None, help="list jobs by status")
    return p.parse_args()


async def main() -> None:
    args = _parse_args()
    await init_models()

    async with async_session_maker() as session:
        if args.list:
            for job in await list_jobs(session, JobStatus(args.list)):
                print(f"{job.id}\t{job.job_type.value}\t{job.status.value}\t{job.created_at}\t{job.error_message or ''}")
            return

        if args.resume is not None:
            ok = await JobRepository(session).requeue(args.resume, now=utcnow())
            await session.commit()
            print(f"requeued job {args.resume}" if ok else f"job {args.resume} is not failed/running")
            return

        job = await enqueue_job(
            session,
            JobType(args.type),
            criteria={
                "city": args.city,
                "max_price": args.max_price,
                "min_size": args.min_size,
                "min_rooms": args.min_rooms,
                "max_items": args.max_items,
            },
            config={
                "sources": args.sources or [],
                "batch_size": args.batch_size,
                "fetch_details": args.fetch_details,
            },
            buyer_id=args.buyer_id,
        )
        await session.commit()
        print(f"queued job {job.id} ({job.job_type.value})")


if __name__ == "__main__":
    asyncio.run(main())
