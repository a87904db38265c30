"""Market job worker.

Drains the queue one job at a time until the time budget or the job cap runs
out. Each job gets min(job timeout, remaining budget):

- success                      -> done
- retryable error / job timeout -> back to pending with backoff (failed at max attempts)
- non-retryable error          -> failed
- budget ran out mid-job       -> released to pending without counting an attempt

After the loop: pending snapshot writes are flushed, background region syncs
are awaited, and the latest-price view is refreshed if anything succeeded.
A job that ends failed leaves its error on the item's size mapping.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from datetime import timedelta
import logging
import time
from typing import Any
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from market_data.models import JobStatus, MarketJob, MarketJobRun, SizeMapping
from market_data.services.clock import utcnow
from market_data.services.errors import PipelineError, RateLimited
from market_data.services.job_queue import (
    dequeue_next,
    mark_done,
    mark_failed,
    mark_retry,
    recover_abandoned_jobs,
    release_job,
)
from market_data.services.market_store import run_latest_refresh
from market_data.services.snapshot_logger import flush_snapshot_writes
from market_data.settings import get_settings
from market_data.stores.postgres import get_session

logger = logging.getLogger("uvicorn.error")

JobProcessor = Callable[[MarketJob], Awaitable[Any]]


@dataclass
class WorkerStats:
    run_id: str
    jobs_selected: int = 0
    jobs_succeeded: int = 0
    jobs_failed: int = 0
    jobs_requeued: int = 0
    jobs_released: int = 0
    budget_exhausted: bool = False
    latest_groups: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


async def _start_run(run_id: str) -> int:
    async with get_session() as session:
        run = MarketJobRun(run_id=run_id, started_at=utcnow())
        session.add(run)
        await session.flush()
        return run.id


async def _finish_run(run_pk: int, stats: WorkerStats) -> None:
    async with get_session() as session:
        run = await session.get(MarketJobRun, run_pk)
        if run is None:
            return
        run.completed_at = utcnow()
        run.jobs_selected = stats.jobs_selected
        run.jobs_succeeded = stats.jobs_succeeded
        run.jobs_failed = stats.jobs_failed
        run.jobs_requeued = stats.jobs_requeued
        run.budget_exhausted = stats.budget_exhausted


async def _flag_mapping(session: AsyncSession, job: MarketJob, message: str) -> None:
    """Surface a terminally failed job on the item's mapping."""
    await session.execute(
        update(SizeMapping)
        .where(
            SizeMapping.provider == job.provider,
            SizeMapping.sku == job.sku,
            SizeMapping.uk_size == job.size,
        )
        .values(last_sync_error=f"Job failed after {job.attempts} attempt(s): {message}"[:2000])
        .execution_options(synchronize_session=False)
    )


async def _settle(job_id: int, error: BaseException, stats: WorkerStats) -> None:
    """Record a failed attempt according to the error's retry classification."""
    message = f"{type(error).__name__}: {error}"
    async with get_session() as session:
        if isinstance(error, PipelineError) and not error.retryable:
            job = await mark_failed(session, job_id, message)
            stats.jobs_failed += 1
        else:
            retry_after = error.retry_after if isinstance(error, RateLimited) else None
            job = await mark_retry(session, job_id, message, retry_after=retry_after)
            if job is None or job.status != JobStatus.FAILED.value:
                stats.jobs_requeued += 1
                return
            stats.jobs_failed += 1
            if job.attempts < job.max_attempts:
                # Superseded by a newer pending job for the same key.
                return
        if job is not None:
            await _flag_mapping(session, job, message)


async def run_worker(
    processor: JobProcessor,
    *,
    budget_seconds: float | None = None,
    max_jobs: int | None = None,
    job_timeout: float | None = None,
    refresh_latest: bool = True,
    clock: Callable[[], float] = time.monotonic,
) -> WorkerStats:
    """Process queued jobs within a wall-clock budget."""
    settings = get_settings()
    budget = settings.worker_budget_seconds if budget_seconds is None else budget_seconds
    limit = settings.worker_max_jobs if max_jobs is None else max_jobs
    per_job = settings.job_timeout_seconds if job_timeout is None else job_timeout

    stats = WorkerStats(run_id=uuid4().hex[:16])
    deadline = clock() + budget
    run_pk = await _start_run(stats.run_id)

    async with get_session() as session:
        await recover_abandoned_jobs(session, timedelta(seconds=per_job * 2))

    logger.info(f"Worker {stats.run_id}: budget={budget}s max_jobs={limit} job_timeout={per_job}s")
    while stats.jobs_selected < limit:
        remaining = deadline - clock()
        if remaining <= 0:
            stats.budget_exhausted = True
            break

        async with get_session() as session:
            job = await dequeue_next(session)
        if job is None:
            break

        stats.jobs_selected += 1
        timeout = min(per_job, remaining)
        budget_bound = remaining < per_job
        logger.info(
            f"Worker {stats.run_id}: job {job.id} {job.provider}/{job.sku}/{job.size} "
            f"priority={job.priority} attempt={job.attempts + 1}"
        )

        try:
            await asyncio.wait_for(processor(job), timeout=timeout)
        except asyncio.TimeoutError:
            if budget_bound:
                logger.warning(f"Worker {stats.run_id}: budget ran out during job {job.id}, releasing")
                async with get_session() as session:
                    await release_job(session, job.id)
                stats.jobs_released += 1
                stats.budget_exhausted = True
                break
            logger.warning(f"Worker {stats.run_id}: job {job.id} timed out after {timeout:.0f}s")
            await _settle(job.id, TimeoutError(f"job exceeded its {timeout:.0f}s timeout"), stats)
        except PipelineError as e:
            logger.warning(f"Worker {stats.run_id}: job {job.id} failed ({e.code}): {e}")
            await _settle(job.id, e, stats)
        except Exception as e:
            logger.exception(f"Worker {stats.run_id}: job {job.id} crashed")
            await _settle(job.id, e, stats)
        else:
            async with get_session() as session:
                await mark_done(session, job.id)
            stats.jobs_succeeded += 1

    await flush_snapshot_writes()
    drain = getattr(processor, "drain", None)
    if drain is not None:
        await drain()
    if refresh_latest and stats.jobs_succeeded:
        stats.latest_groups = await run_latest_refresh()

    await _finish_run(run_pk, stats)
    logger.info(
        f"Worker {stats.run_id} done: selected={stats.jobs_selected} ok={stats.jobs_succeeded} "
        f"failed={stats.jobs_failed} requeued={stats.jobs_requeued} released={stats.jobs_released}"
    )
    return stats
