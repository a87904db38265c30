"""Shared types for ingestion mappers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from market_data.services.clock import utcnow
from market_data.services.snapshot_logger import SnapshotRef

CENT = Decimal("0.01")


def major_units(value: Decimal | int | float | str | None) -> Decimal | None:
    """Price already in major units (e.g. "145.00") -> Decimal('145.00')."""
    if value is None:
        return None
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def from_cents(value: int | str | None) -> Decimal | None:
    """Integer minor units (e.g. "14500") -> Decimal('145.00')."""
    if value is None:
        return None
    return (Decimal(int(value)) / 100).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class CanonicalRecord:
    """One normalized observation, ready for master_market_data."""

    provider: str
    provider_source: str
    provider_product_id: str
    size_key: str
    currency_code: str
    region_code: str
    snapshot_at: datetime
    provider_variant_id: str | None = None
    sku: str | None = None
    size_numeric: float | None = None
    size_system: str = "US"
    product_condition: str = "new"
    packaging_condition: str = "good"
    is_consigned: bool = False
    lowest_ask: Decimal | None = None
    highest_bid: Decimal | None = None
    last_sale_price: Decimal | None = None
    sales_last_72h: int | None = None
    sales_last_30d: int | None = None
    ask_count: int | None = None
    bid_count: int | None = None
    raw_snapshot_id: str | None = None

    def key(self) -> tuple[Any, ...]:
        """Uniqueness key of master_market_data."""
        return (
            self.provider,
            self.provider_product_id,
            self.size_key,
            self.currency_code,
            self.region_code,
            self.product_condition,
            self.is_consigned,
            self.snapshot_at,
        )

    def to_row(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SaleVolume:
    """Recent-sales summary for one (size, consigned)."""

    sales_last_72h: int = 0
    sales_last_30d: int = 0
    last_sale_price: Decimal | None = None
    last_sale_at: datetime | None = None


@dataclass(frozen=True)
class HistogramBin:
    price: Decimal
    offer_count: int


@dataclass
class IngestContext:
    """What a mapper needs besides the payload itself."""

    provider_product_id: str
    region_code: str
    currency_code: str
    sku: str | None = None
    snapshot_at: datetime | None = None
    # StockX market data carries variant ids only; labels come from the catalog.
    variant_sizes: dict[str, str] = field(default_factory=dict)
    # Alias: None ingests both, True/False keeps only consigned/non-consigned.
    consigned: bool | None = None
    allowed_conditions: frozenset[tuple[str, str]] | None = None
    sales_volume: dict[tuple[str, bool], SaleVolume] = field(default_factory=dict)

    def resolve_snapshot_at(self, snapshot: SnapshotRef | None) -> datetime:
        if self.snapshot_at is not None:
            return self.snapshot_at
        if snapshot is not None:
            return snapshot.requested_at
        return utcnow()
