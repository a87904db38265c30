"""Market job queue models.

- market_jobs: priority queue of (provider, sku, size) fetches
- market_job_runs: audit row per worker invocation
- market_refresh_marks: persisted debounce marks per (user, priority tier, provider)
"""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import DateTime, Index, Integer, String, Text, UniqueConstraint, func, text
from sqlalchemy.orm import Mapped, mapped_column

from market_data.services.clock import utcnow
from market_data.stores.postgres import Base


class JobStatus(str, Enum):
    """Lifecycle of a market job."""

    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


class MarketJob(Base):
    """Scheduled fetch request for one (provider, sku, size)."""

    __tablename__ = "market_jobs"
    __table_args__ = (
        # At most one pending job per key; enqueue bumps priority instead.
        Index(
            "uq_market_jobs_pending_key",
            "provider",
            "sku",
            "size",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("ix_market_jobs_ready", "status", "priority", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    provider: Mapped[str] = mapped_column(String(20))
    sku: Mapped[str] = mapped_column(String(50))
    size: Mapped[str] = mapped_column(String(20))
    priority: Mapped[int] = mapped_column(Integer, default=100)
    user_id: Mapped[str | None] = mapped_column(String(100), index=True)

    status: Mapped[str] = mapped_column(String(20), default=JobStatus.PENDING.value)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5)
    not_before: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


def generate_run_id() -> str:
    return str(uuid4())


class MarketJobRun(Base):
    """Summary of one worker invocation."""

    __tablename__ = "market_job_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_id: Mapped[str] = mapped_column(String(36), unique=True, default=generate_run_id)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    jobs_selected: Mapped[int] = mapped_column(Integer, default=0)
    jobs_succeeded: Mapped[int] = mapped_column(Integer, default=0)
    jobs_failed: Mapped[int] = mapped_column(Integer, default=0)
    jobs_requeued: Mapped[int] = mapped_column(Integer, default=0)
    budget_exhausted: Mapped[bool] = mapped_column(default=False)


class RefreshDebounceMark(Base):
    """Last time a batch was enqueued for (user, priority tier, provider)."""

    __tablename__ = "market_refresh_marks"
    __table_args__ = (
        UniqueConstraint("user_id", "priority", "provider", name="uq_market_refresh_marks_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(100))
    priority: Mapped[int] = mapped_column(Integer)
    provider: Mapped[str] = mapped_column(String(20))
    last_enqueued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
