"""SizeMapping model.

Caches how a user's item (sku + UK size) resolves to a provider catalog id and
size variant. Suggestions are stored separately from the committed mapping: only
an explicit approval copies a suggestion into provider_product_id and flips the
status to ok.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from market_data.stores.postgres import Base


class MappingStatus(str, Enum):
    OK = "ok"
    UNRESOLVED = "unresolved"
    INVALID = "invalid"


class SizeMapping(Base):
    """Resolved provider identifiers for one (provider, sku, uk_size)."""

    __tablename__ = "market_size_mappings"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        UniqueConstraint("provider", "sku", "uk_size", name="uq_market_size_mappings_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    provider: Mapped[str] = mapped_column(String(20))
    sku: Mapped[str] = mapped_column(String(50), index=True)
    uk_size: Mapped[str] = mapped_column(String(20))
    product_name: Mapped[str | None] = mapped_column(String(300))

    brand: Mapped[str | None] = mapped_column(String(30))
    gender: Mapped[str | None] = mapped_column(String(20))

    # Committed (usable) mapping
    provider_product_id: Mapped[str | None] = mapped_column(String(100))
    provider_variant_id: Mapped[str | None] = mapped_column(String(100))
    provider_size: Mapped[str | None] = mapped_column(String(20))
    match_confidence: Mapped[float | None] = mapped_column()
    match_method: Mapped[str | None] = mapped_column(String(30))
    mapping_status: Mapped[str] = mapped_column(String(20), default=MappingStatus.UNRESOLVED.value)
    approved_by: Mapped[str | None] = mapped_column(String(100))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Pending suggestion (never used for ingestion until committed)
    suggested_product_id: Mapped[str | None] = mapped_column(String(100))
    suggested_confidence: Mapped[float | None] = mapped_column()
    suggested_method: Mapped[str | None] = mapped_column(String(30))

    last_sync_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_sync_success_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_sync_error: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )
