import asyncio

from sqlalchemy import select

from market_data.models import JobStatus, MappingStatus, MarketJob, MarketJobRun, SizeMapping
from market_data.services.errors import NotFound, ProviderUnavailable, RateLimited
from market_data.services.job_queue import PRIORITY_BACKGROUND, PRIORITY_MANUAL, enqueue_job
from market_data.services.worker import run_worker
from market_data.stores.postgres import get_session


class RecordingProcessor:
    def __init__(self, outcome=None):
        self.outcome = outcome
        self.seen = []
        self.drained = False

    async def __call__(self, job):
        self.seen.append((job.sku, job.priority))
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        if callable(self.outcome):
            await self.outcome(job)

    async def drain(self):
        self.drained = True


async def _enqueue(sku, priority=PRIORITY_MANUAL):
    async with get_session() as session:
        job, _ = await enqueue_job(session, "stockx", sku, "9", priority)
        return job.id


async def _job(job_id) -> MarketJob:
    async with get_session() as session:
        return await session.get(MarketJob, job_id)


async def test_processes_jobs_in_priority_order(db) -> None:
    low = await _enqueue("LOW", PRIORITY_BACKGROUND)
    high = await _enqueue("HIGH", PRIORITY_MANUAL)
    processor = RecordingProcessor()

    stats = await run_worker(processor, budget_seconds=30, job_timeout=5)

    assert processor.seen == [("HIGH", PRIORITY_MANUAL), ("LOW", PRIORITY_BACKGROUND)]
    assert stats.jobs_selected == 2
    assert stats.jobs_succeeded == 2
    assert stats.budget_exhausted is False
    assert stats.latest_groups == 0
    assert processor.drained is True
    for job_id in (low, high):
        assert (await _job(job_id)).status == JobStatus.DONE.value

    async with get_session() as session:
        (run,) = (await session.execute(select(MarketJobRun))).scalars().all()
    assert run.run_id == stats.run_id
    assert run.jobs_succeeded == 2
    assert run.completed_at is not None


async def test_retryable_error_requeues(db) -> None:
    job_id = await _enqueue("A")

    stats = await run_worker(RecordingProcessor(ProviderUnavailable("HTTP 503")), budget_seconds=30, job_timeout=5)

    job = await _job(job_id)
    assert stats.jobs_requeued == 1
    assert stats.latest_groups is None
    assert job.status == JobStatus.PENDING.value
    assert job.attempts == 1
    assert job.not_before is not None
    assert job.last_error.startswith("ProviderUnavailable")


async def test_rate_limited_uses_retry_after(db) -> None:
    job_id = await _enqueue("A")

    await run_worker(RecordingProcessor(RateLimited("slow down", retry_after=7200)), budget_seconds=30, job_timeout=5)

    job = await _job(job_id)
    assert job.status == JobStatus.PENDING.value
    assert (job.not_before - job.created_at).total_seconds() >= 7200


async def test_non_retryable_error_fails_job(db) -> None:
    job_id = await _enqueue("A")

    stats = await run_worker(RecordingProcessor(NotFound("HTTP 404", status=404)), budget_seconds=30, job_timeout=5)

    job = await _job(job_id)
    assert stats.jobs_failed == 1
    assert job.status == JobStatus.FAILED.value
    assert job.last_error == "NotFound: HTTP 404"


async def test_unexpected_error_is_retried(db) -> None:
    job_id = await _enqueue("A")

    stats = await run_worker(RecordingProcessor(KeyError("variant")), budget_seconds=30, job_timeout=5)

    assert stats.jobs_requeued == 1
    assert (await _job(job_id)).attempts == 1


async def test_job_timeout_counts_as_attempt(db) -> None:
    job_id = await _enqueue("A")

    async def hang(job):
        await asyncio.sleep(5)

    stats = await run_worker(RecordingProcessor(hang), budget_seconds=30, job_timeout=0.05)

    job = await _job(job_id)
    assert stats.jobs_requeued == 1
    assert job.attempts == 1
    assert "timeout" in job.last_error


async def test_budget_exhaustion_releases_job(db) -> None:
    job_id = await _enqueue("A")

    async def hang(job):
        await asyncio.sleep(5)

    stats = await run_worker(RecordingProcessor(hang), budget_seconds=0.2, job_timeout=30, clock=lambda: 0.0)

    job = await _job(job_id)
    assert stats.budget_exhausted is True
    assert stats.jobs_released == 1
    assert job.status == JobStatus.PENDING.value
    assert job.attempts == 0


async def test_max_jobs_cap(db) -> None:
    for sku in ("A", "B", "C"):
        await _enqueue(sku)
    processor = RecordingProcessor()

    stats = await run_worker(processor, budget_seconds=30, max_jobs=2, job_timeout=5, refresh_latest=False)

    assert stats.jobs_selected == 2
    assert len(processor.seen) == 2
    assert stats.latest_groups is None


async def test_empty_queue(db) -> None:
    stats = await run_worker(RecordingProcessor(), budget_seconds=30, job_timeout=5)
    assert stats.jobs_selected == 0
    assert stats.latest_groups is None


async def _last_attempt_with_mapping(sku) -> tuple[int, int]:
    async with get_session() as session:
        job, _ = await enqueue_job(session, "stockx", sku, "9", PRIORITY_MANUAL)
        job.max_attempts = 1
        mapping = SizeMapping(
            provider="stockx",
            sku=sku,
            uk_size="9",
            provider_product_id="p-1",
            provider_size="10",
            mapping_status=MappingStatus.OK.value,
        )
        session.add(mapping)
        await session.flush()
        return job.id, mapping.id


async def test_timed_out_job_failure_is_recorded_on_mapping(db) -> None:
    job_id, mapping_id = await _last_attempt_with_mapping("A")

    async def hang(job):
        await asyncio.sleep(5)

    stats = await run_worker(RecordingProcessor(hang), budget_seconds=30, job_timeout=0.05)

    assert stats.jobs_failed == 1
    assert (await _job(job_id)).status == JobStatus.FAILED.value
    async with get_session() as session:
        mapping = await session.get(SizeMapping, mapping_id)
    assert mapping.last_sync_error is not None
    assert "timeout" in mapping.last_sync_error


async def test_crashed_job_failure_is_recorded_on_mapping(db) -> None:
    _, mapping_id = await _last_attempt_with_mapping("B")

    await run_worker(RecordingProcessor(KeyError("variant")), budget_seconds=30, job_timeout=5)

    async with get_session() as session:
        mapping = await session.get(SizeMapping, mapping_id)
    assert mapping.last_sync_error.startswith("Job failed after 1 attempt(s): KeyError")
