"""Canonical market data models.

- master_market_data: append-only time series of normalized observations
- master_market_latest: periodically rebuilt "latest row per group" projection
- market_offer_histogram_bins: order-book bins, replaced as a complete set per key
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Index, Integer, Numeric, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from market_data.stores.postgres import Base

PRICE = Numeric(12, 2)


class MarketDataRecord(Base):
    """One normalized observation for a (product, size, currency, region, condition)."""

    __tablename__ = "master_market_data"
    __table_args__ = (
        UniqueConstraint(
            "provider",
            "provider_product_id",
            "size_key",
            "currency_code",
            "region_code",
            "product_condition",
            "is_consigned",
            "snapshot_at",
            name="uq_master_market_data_observation",
        ),
        Index("ix_master_market_data_sku_size", "sku", "size_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    provider: Mapped[str] = mapped_column(String(20))
    provider_source: Mapped[str] = mapped_column(String(50))
    provider_product_id: Mapped[str] = mapped_column(String(100))
    provider_variant_id: Mapped[str | None] = mapped_column(String(100))
    sku: Mapped[str | None] = mapped_column(String(50))

    size_key: Mapped[str] = mapped_column(String(20))
    size_numeric: Mapped[float | None] = mapped_column()
    size_system: Mapped[str] = mapped_column(String(10), default="US")

    currency_code: Mapped[str] = mapped_column(String(3))
    region_code: Mapped[str] = mapped_column(String(10))
    product_condition: Mapped[str] = mapped_column(String(20), default="new")
    packaging_condition: Mapped[str] = mapped_column(String(20), default="good")
    is_consigned: Mapped[bool] = mapped_column(Boolean, default=False)

    # Major units (e.g. 145.00), never cents
    lowest_ask: Mapped[Decimal | None] = mapped_column(PRICE)
    highest_bid: Mapped[Decimal | None] = mapped_column(PRICE)
    last_sale_price: Mapped[Decimal | None] = mapped_column(PRICE)

    sales_last_72h: Mapped[int | None] = mapped_column(Integer)
    sales_last_30d: Mapped[int | None] = mapped_column(Integer)
    ask_count: Mapped[int | None] = mapped_column(Integer)
    bid_count: Mapped[int | None] = mapped_column(Integer)

    snapshot_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    raw_snapshot_id: Mapped[str | None] = mapped_column(String(36))
    ingested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class LatestMarketPrice(Base):
    """Projection row: newest observation per (provider, product, size, currency, region)."""

    __tablename__ = "master_market_latest"
    __table_args__ = (
        UniqueConstraint(
            "provider",
            "provider_product_id",
            "size_key",
            "currency_code",
            "region_code",
            name="uq_master_market_latest_group",
        ),
        Index("ix_master_market_latest_sku_size", "sku", "size_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    record_id: Mapped[int] = mapped_column(Integer)

    provider: Mapped[str] = mapped_column(String(20))
    provider_source: Mapped[str] = mapped_column(String(50))
    provider_product_id: Mapped[str] = mapped_column(String(100))
    sku: Mapped[str | None] = mapped_column(String(50))
    size_key: Mapped[str] = mapped_column(String(20))
    currency_code: Mapped[str] = mapped_column(String(3))
    region_code: Mapped[str] = mapped_column(String(10))
    is_consigned: Mapped[bool] = mapped_column(Boolean, default=False)

    lowest_ask: Mapped[Decimal | None] = mapped_column(PRICE)
    highest_bid: Mapped[Decimal | None] = mapped_column(PRICE)
    last_sale_price: Mapped[Decimal | None] = mapped_column(PRICE)
    sales_last_72h: Mapped[int | None] = mapped_column(Integer)
    sales_last_30d: Mapped[int | None] = mapped_column(Integer)

    snapshot_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    refreshed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class OfferHistogramBin(Base):
    """One price level of a provider's offer book for a size."""

    __tablename__ = "market_offer_histogram_bins"
    __table_args__ = (
        Index(
            "ix_market_offer_histogram_key",
            "provider",
            "provider_product_id",
            "size_key",
            "region_code",
            "is_consigned",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    provider: Mapped[str] = mapped_column(String(20))
    provider_product_id: Mapped[str] = mapped_column(String(100))
    size_key: Mapped[str] = mapped_column(String(20))
    region_code: Mapped[str] = mapped_column(String(10))
    is_consigned: Mapped[bool] = mapped_column(Boolean, default=False)

    price: Mapped[Decimal] = mapped_column(PRICE)
    offer_count: Mapped[int] = mapped_column(Integer)

    snapshot_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    raw_snapshot_id: Mapped[str | None] = mapped_column(String(36))
