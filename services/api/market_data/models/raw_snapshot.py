"""RawSnapshot model.

RawSnapshot keeps the exact provider response (or failure) for every outbound
call so any canonical row can be traced back to what the marketplace reported.
Rows are write-once: the pipeline never updates or deletes them.
"""

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, DateTime, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from market_data.stores.postgres import Base

JsonType = JSON().with_variant(JSONB(), "postgresql")


def generate_snapshot_id() -> str:
    """Generate unique snapshot ID."""
    return str(uuid4())


class RawSnapshot(Base):
    """Audit row for one provider request."""

    __tablename__ = "market_raw_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    snapshot_id: Mapped[str] = mapped_column(
        String(36),
        unique=True,
        index=True,
        default=generate_snapshot_id,
    )

    provider: Mapped[str] = mapped_column(String(20), index=True)
    endpoint: Mapped[str] = mapped_column(String(100))
    request_params: Mapped[dict[str, Any] | None] = mapped_column(JsonType)

    http_status: Mapped[int | None] = mapped_column(Integer)
    raw_payload: Mapped[Any | None] = mapped_column(JsonType)
    error_message: Mapped[str | None] = mapped_column(Text)

    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
