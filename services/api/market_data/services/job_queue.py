"""Priority job queue for market data fetches.

Priority tiers (higher first, FIFO by creation time within a tier):
- 200: explicit user refresh
- 150: hot fetch for a newly added item
- 100: background staleness refresh (debounced per user and provider)

Guarantees:
- at most one pending job per (provider, sku, size): enqueue raises the
  existing job's priority to max(existing, new) instead of inserting
- at most one processing job per key: dequeue skips keys already in flight
- claims are conditional UPDATEs (status='pending' -> 'processing'), so two
  workers never run the same job
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from market_data.models import JobStatus, MappingStatus, MarketJob, RefreshDebounceMark, SizeMapping
from market_data.services.clock import as_utc, utcnow
from market_data.services.market_store import latest_snapshot_times
from market_data.services.size_matching import canonical_size_label
from market_data.settings import get_settings
from market_data.stores.postgres import is_postgres

logger = logging.getLogger("uvicorn.error")

PRIORITY_BACKGROUND = 100
PRIORITY_NEW_ITEM = 150
PRIORITY_MANUAL = 200

MAX_RETRY_BACKOFF_SECONDS = 3600


@dataclass
class EnqueueResult:
    """Outcome of an enqueue call."""

    created: int = 0
    bumped: int = 0
    unchanged: int = 0
    job_ids: list[int] = field(default_factory=list)
    skipped_debounced: bool = False
    stale_items: int = 0

    @property
    def enqueued(self) -> int:
        return self.created + self.bumped + self.unchanged


async def _pending_job(
    session: AsyncSession,
    provider: str,
    sku: str,
    size: str,
    exclude_id: int | None = None,
) -> MarketJob | None:
    stmt = select(MarketJob).where(
        MarketJob.provider == provider,
        MarketJob.sku == sku,
        MarketJob.size == size,
        MarketJob.status == JobStatus.PENDING.value,
    )
    if exclude_id is not None:
        stmt = stmt.where(MarketJob.id != exclude_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def enqueue_job(
    session: AsyncSession,
    provider: str,
    sku: str,
    size: str,
    priority: int,
    user_id: str | None = None,
) -> tuple[MarketJob, str]:
    """Enqueue a fetch, deduplicating against a pending job for the same key.

    Returns:
        (job, outcome) where outcome is "created", "bumped" or "unchanged".
    """
    size = canonical_size_label(size)
    existing = await _pending_job(session, provider, sku, size)
    if existing is not None:
        if priority > existing.priority:
            logger.info(
                f"Job queue: bump {provider}/{sku}/{size} priority {existing.priority} -> {priority}"
            )
            existing.priority = priority
            await session.flush()
            return existing, "bumped"
        return existing, "unchanged"

    job = MarketJob(
        provider=provider,
        sku=sku,
        size=size,
        priority=priority,
        user_id=user_id,
        status=JobStatus.PENDING.value,
        attempts=0,
        max_attempts=get_settings().job_max_attempts,
        created_at=utcnow(),
    )
    session.add(job)
    await session.flush()
    return job, "created"


async def enqueue_for_items(
    session: AsyncSession,
    pairs: Sequence[tuple[str, str]],
    provider: str,
    priority: int,
    user_id: str | None = None,
) -> EnqueueResult:
    """Bulk enqueue of (sku, size) pairs."""
    result = EnqueueResult()
    for sku, size in pairs:
        job, outcome = await enqueue_job(session, provider, sku, size, priority, user_id)
        result.job_ids.append(job.id)
        if outcome == "created":
            result.created += 1
        elif outcome == "bumped":
            result.bumped += 1
        else:
            result.unchanged += 1
    return result


# ============================================================
# Debounce (persisted per user / tier / provider)
# ============================================================


async def claim_refresh_window(
    session: AsyncSession,
    user_id: str,
    priority: int,
    provider: str,
    window: timedelta,
    now: datetime | None = None,
) -> bool:
    """Claim the debounce window. False when a batch was enqueued within `window`.

    The claim is a conditional UPDATE on the persisted mark, so concurrent
    workers cannot both claim the same window.
    """
    now = now or utcnow()
    cutoff = now - window
    claimed = await session.execute(
        update(RefreshDebounceMark)
        .where(
            RefreshDebounceMark.user_id == user_id,
            RefreshDebounceMark.priority == priority,
            RefreshDebounceMark.provider == provider,
            RefreshDebounceMark.last_enqueued_at < cutoff,
        )
        .values(last_enqueued_at=now)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount == 1:
        return True

    existing = await session.execute(
        select(RefreshDebounceMark.id).where(
            RefreshDebounceMark.user_id == user_id,
            RefreshDebounceMark.priority == priority,
            RefreshDebounceMark.provider == provider,
        )
    )
    if existing.scalar_one_or_none() is not None:
        return False

    session.add(
        RefreshDebounceMark(user_id=user_id, priority=priority, provider=provider, last_enqueued_at=now)
    )
    await session.flush()
    return True


async def _provider_sizes(
    session: AsyncSession,
    provider: str,
    items: Sequence[tuple[str, str]],
) -> dict[tuple[str, str], str]:
    """(sku, UK size) -> provider size, for committed mappings with a resolved size."""
    skus = {sku for sku, _ in items}
    if not skus:
        return {}
    result = await session.execute(
        select(SizeMapping.sku, SizeMapping.uk_size, SizeMapping.provider_size).where(
            SizeMapping.provider == provider,
            SizeMapping.sku.in_(skus),
            SizeMapping.mapping_status == MappingStatus.OK.value,
            SizeMapping.provider_size.is_not(None),
        )
    )
    return {(sku, uk_size): provider_size for sku, uk_size, provider_size in result.all()}


async def find_stale_items(
    session: AsyncSession,
    provider: str,
    items: Sequence[tuple[str, str]],
    now: datetime | None = None,
    threshold: timedelta | None = None,
) -> list[tuple[str, str]]:
    """Items (sku, UK size) whose newest stored price is older than the threshold.

    Stored prices are keyed by provider size, so freshness is looked up through
    the committed mapping. Items without one count as stale.
    """
    now = now or utcnow()
    threshold = threshold or timedelta(hours=get_settings().staleness_threshold_hours)
    sizes = await _provider_sizes(session, provider, items)
    resolved = {
        (sku, size): sizes.get((sku, canonical_size_label(size))) for sku, size in items
    }
    latest = await latest_snapshot_times(
        session, provider, [(sku, size) for (sku, _), size in resolved.items() if size is not None]
    )
    stale: list[tuple[str, str]] = []
    for sku, size in items:
        provider_size = resolved[(sku, size)]
        seen_at = latest.get((sku, canonical_size_label(provider_size))) if provider_size else None
        if seen_at is None or now - seen_at > threshold:
            stale.append((sku, size))
    return stale


async def enqueue_stale_items(
    session: AsyncSession,
    user_id: str,
    provider: str,
    items: Sequence[tuple[str, str]],
    now: datetime | None = None,
) -> EnqueueResult:
    """Background staleness refresh for one user's items, debounced to one batch per window."""
    now = now or utcnow()
    window = timedelta(minutes=get_settings().debounce_window_minutes)
    if not await claim_refresh_window(session, user_id, PRIORITY_BACKGROUND, provider, window, now):
        logger.info(f"Stale scan for user={user_id} provider={provider} debounced")
        return EnqueueResult(skipped_debounced=True)

    stale = await find_stale_items(session, provider, items, now)
    result = await enqueue_for_items(session, stale, provider, PRIORITY_BACKGROUND, user_id)
    result.stale_items = len(stale)
    logger.info(
        f"Stale scan for user={user_id} provider={provider}: {len(stale)}/{len(items)} stale, "
        f"created={result.created} bumped={result.bumped}"
    )
    return result


# ============================================================
# Dequeue and state transitions
# ============================================================


async def dequeue_next(session: AsyncSession, now: datetime | None = None) -> MarketJob | None:
    """Claim the next ready job: highest priority, then oldest, then lowest id."""
    now = now or utcnow()
    running = aliased(MarketJob)
    in_flight = (
        select(running.id)
        .where(
            running.status == JobStatus.PROCESSING.value,
            running.provider == MarketJob.provider,
            running.sku == MarketJob.sku,
            running.size == MarketJob.size,
        )
        .exists()
    )

    for _ in range(5):
        stmt = (
            select(MarketJob)
            .where(
                MarketJob.status == JobStatus.PENDING.value,
                or_(MarketJob.not_before.is_(None), MarketJob.not_before <= now),
                ~in_flight,
            )
            .order_by(MarketJob.priority.desc(), MarketJob.created_at.asc(), MarketJob.id.asc())
            .limit(1)
        )
        if is_postgres():
            stmt = stmt.with_for_update(skip_locked=True)
        job = (await session.execute(stmt)).scalar_one_or_none()
        if job is None:
            return None

        claimed = await session.execute(
            update(MarketJob)
            .where(and_(MarketJob.id == job.id, MarketJob.status == JobStatus.PENDING.value))
            .values(status=JobStatus.PROCESSING.value, started_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 1:
            job.status = JobStatus.PROCESSING.value
            job.started_at = now
            await session.flush()
            return job
        # Lost the race to another worker; pick again.
        session.expunge(job)
    return None


async def mark_done(session: AsyncSession, job_id: int) -> MarketJob | None:
    job = await session.get(MarketJob, job_id)
    if job is None:
        return None
    job.status = JobStatus.DONE.value
    job.completed_at = utcnow()
    job.last_error = None
    await session.flush()
    return job


def retry_backoff(attempts: int, base_seconds: float | None = None) -> timedelta:
    base = get_settings().job_retry_backoff_seconds if base_seconds is None else base_seconds
    seconds = min(base * (2 ** max(attempts - 1, 0)), MAX_RETRY_BACKOFF_SECONDS)
    return timedelta(seconds=seconds)


async def mark_retry(
    session: AsyncSession,
    job_id: int,
    error: str,
    *,
    retry_after: float | None = None,
) -> MarketJob | None:
    """Count a failed attempt: back to pending with a backoff, or failed at the bound."""
    job = await session.get(MarketJob, job_id)
    if job is None:
        return None
    job.attempts += 1
    job.last_error = error[:2000]
    now = utcnow()
    if job.attempts >= job.max_attempts:
        job.status = JobStatus.FAILED.value
        job.completed_at = now
        logger.warning(f"Job {job.id} failed after {job.attempts} attempts: {error}")
    elif await _pending_job(session, job.provider, job.sku, job.size, exclude_id=job.id) is not None:
        # A newer pending job already covers this key.
        job.status = JobStatus.FAILED.value
        job.completed_at = now
    else:
        delay = retry_backoff(job.attempts)
        if retry_after is not None:
            delay = max(delay, timedelta(seconds=retry_after))
        job.status = JobStatus.PENDING.value
        job.not_before = now + delay
        job.started_at = None
    await session.flush()
    return job


async def mark_failed(session: AsyncSession, job_id: int, error: str) -> MarketJob | None:
    """Terminal failure without retry (not found, validation, unresolved mapping)."""
    job = await session.get(MarketJob, job_id)
    if job is None:
        return None
    job.attempts += 1
    job.status = JobStatus.FAILED.value
    job.last_error = error[:2000]
    job.completed_at = utcnow()
    await session.flush()
    return job


async def release_job(session: AsyncSession, job_id: int) -> MarketJob | None:
    """Return a claimed job to pending without counting an attempt."""
    job = await session.get(MarketJob, job_id)
    if job is None:
        return None
    if await _pending_job(session, job.provider, job.sku, job.size, exclude_id=job.id) is not None:
        job.status = JobStatus.FAILED.value
        job.last_error = "superseded by a newer pending job"
        job.completed_at = utcnow()
    else:
        job.status = JobStatus.PENDING.value
        job.started_at = None
    await session.flush()
    return job


async def recover_abandoned_jobs(session: AsyncSession, older_than: timedelta) -> int:
    """Release processing jobs whose worker died mid-run."""
    cutoff = utcnow() - older_than
    result = await session.execute(
        select(MarketJob.id, MarketJob.started_at).where(MarketJob.status == JobStatus.PROCESSING.value)
    )
    recovered = 0
    for job_id, started_at in result.all():
        started = as_utc(started_at)
        if started is None or started < cutoff:
            await release_job(session, job_id)
            recovered += 1
    if recovered:
        logger.warning(f"Job queue: released {recovered} abandoned processing jobs")
    return recovered
