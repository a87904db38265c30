"""Master market data store and latest-price view.

Write paths:
- insert_records: append-only. A duplicate key inside one batch is a mapper
  defect and raises ConflictError; keys already stored by an earlier ingestion
  of the same snapshot are skipped. Existing rows are never updated.
- replace_histogram: order-book bins are a full state snapshot, so the complete
  set for a key is deleted and the new set inserted, one writer per key.

Read paths:
- refresh_latest_prices: rebuilds master_market_latest (row_number window)
- get_latest_price: single "current price" with the valuation rule applied
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
import logging
from typing import Any

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from market_data.models import LatestMarketPrice, MarketDataRecord, OfferHistogramBin
from market_data.services.clock import as_utc, utcnow
from market_data.services.errors import ConflictError
from market_data.services.mappers.base import CanonicalRecord, HistogramBin
from market_data.services.size_matching import canonical_size_label
from market_data.stores.postgres import get_session
from market_data.stores.redis import TTL_LATEST_REFRESH_LOCK, acquire_lock, release_lock

logger = logging.getLogger("uvicorn.error")

LATEST_REFRESH_LOCK_KEY = "market:latest_refresh"


# ============================================================
# Valuation
# ============================================================


def select_market_price(lowest_ask: Decimal | None, highest_bid: Decimal | None) -> Decimal | None:
    """Valuation rule: lowest ask (cost to buy now), else highest bid, else none."""
    if lowest_ask is not None:
        return lowest_ask
    if highest_bid is not None:
        return highest_bid
    return None


@dataclass
class LatestPrice:
    provider: str
    provider_source: str
    sku: str | None
    size_key: str
    currency_code: str
    region_code: str
    is_consigned: bool
    lowest_ask: Decimal | None
    highest_bid: Decimal | None
    last_sold: Decimal | None
    as_of: datetime

    @property
    def market_price(self) -> Decimal | None:
        return select_market_price(self.lowest_ask, self.highest_bid)

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "providerSource": self.provider_source,
            "sku": self.sku,
            "size": self.size_key,
            "currency": self.currency_code,
            "region": self.region_code,
            "isConsigned": self.is_consigned,
            "lowestAsk": _money(self.lowest_ask),
            "highestBid": _money(self.highest_bid),
            "lastSold": _money(self.last_sold),
            "marketPrice": _money(self.market_price),
            "asOf": self.as_of.isoformat(),
        }


def _money(value: Decimal | None) -> str | None:
    return None if value is None else f"{value:.2f}"


# ============================================================
# Append-only inserts
# ============================================================


@dataclass
class InsertResult:
    inserted: int = 0
    skipped_existing: int = 0


def _stored_key(row: Any) -> tuple[Any, ...]:
    return (
        row.provider,
        row.provider_product_id,
        row.size_key,
        row.currency_code,
        row.region_code,
        row.product_condition,
        bool(row.is_consigned),
        as_utc(row.snapshot_at),
    )


async def _existing_keys(session: AsyncSession, records: Sequence[CanonicalRecord]) -> set[tuple[Any, ...]]:
    providers = {r.provider for r in records}
    product_ids = {r.provider_product_id for r in records}
    snapshot_times = {r.snapshot_at for r in records}
    stmt = select(
        MarketDataRecord.provider,
        MarketDataRecord.provider_product_id,
        MarketDataRecord.size_key,
        MarketDataRecord.currency_code,
        MarketDataRecord.region_code,
        MarketDataRecord.product_condition,
        MarketDataRecord.is_consigned,
        MarketDataRecord.snapshot_at,
    ).where(
        MarketDataRecord.provider.in_(list(providers)),
        MarketDataRecord.provider_product_id.in_(list(product_ids)),
        MarketDataRecord.snapshot_at.in_(list(snapshot_times)),
    )
    result = await session.execute(stmt)
    return {_stored_key(row) for row in result.all()}


async def insert_records(session: AsyncSession, records: Sequence[CanonicalRecord]) -> InsertResult:
    """Append canonical records.

    Raises:
        ConflictError: two records of the batch share a uniqueness key.
    """
    seen: set[tuple[Any, ...]] = set()
    for record in records:
        key = record.key()
        if key in seen:
            raise ConflictError(
                f"Duplicate canonical key in one batch: provider={record.provider} "
                f"product={record.provider_product_id} size={record.size_key} "
                f"region={record.region_code} consigned={record.is_consigned}"
            )
        seen.add(key)

    if not records:
        return InsertResult()

    existing = await _existing_keys(session, records)
    result = InsertResult()
    for record in records:
        key = record.key()
        if (*key[:-1], as_utc(key[-1])) in existing:
            result.skipped_existing += 1
            continue
        session.add(MarketDataRecord(**record.to_row()))
        result.inserted += 1

    await session.flush()
    if result.skipped_existing:
        logger.info(f"Market store: skipped {result.skipped_existing} already-ingested observations")
    return result


# ============================================================
# Replace path (order book / histogram)
# ============================================================


@dataclass(frozen=True)
class HistogramKey:
    provider: str
    provider_product_id: str
    size_key: str
    region_code: str
    is_consigned: bool = False

    def lock_name(self) -> str:
        consigned = "c" if self.is_consigned else "n"
        return f"histogram:{self.provider}:{self.provider_product_id}:{self.size_key}:{self.region_code}:{consigned}"


_key_locks: dict[str, asyncio.Lock] = {}


@asynccontextmanager
async def keyed_lock(name: str) -> AsyncGenerator[None, None]:
    """Serialize work on one key within this process."""
    lock = _key_locks.setdefault(name, asyncio.Lock())
    async with lock:
        yield


async def replace_histogram(
    session: AsyncSession,
    key: HistogramKey,
    bins: Sequence[HistogramBin],
    snapshot_at: datetime,
    raw_snapshot_id: str | None = None,
) -> int:
    """Delete the stored bins for `key`, then insert `bins`. Returns bins stored."""
    size_key = canonical_size_label(key.size_key)
    async with keyed_lock(key.lock_name()):
        await session.execute(
            delete(OfferHistogramBin).where(
                OfferHistogramBin.provider == key.provider,
                OfferHistogramBin.provider_product_id == key.provider_product_id,
                OfferHistogramBin.size_key == size_key,
                OfferHistogramBin.region_code == key.region_code,
                OfferHistogramBin.is_consigned == key.is_consigned,
            )
        )
        session.add_all(
            OfferHistogramBin(
                provider=key.provider,
                provider_product_id=key.provider_product_id,
                size_key=size_key,
                region_code=key.region_code,
                is_consigned=key.is_consigned,
                price=b.price,
                offer_count=b.offer_count,
                snapshot_at=snapshot_at,
                raw_snapshot_id=raw_snapshot_id,
            )
            for b in bins
        )
        await session.flush()
    return len(bins)


async def count_histogram_bins(session: AsyncSession, key: HistogramKey) -> int:
    result = await session.execute(
        select(func.count(OfferHistogramBin.id)).where(
            OfferHistogramBin.provider == key.provider,
            OfferHistogramBin.provider_product_id == key.provider_product_id,
            OfferHistogramBin.size_key == canonical_size_label(key.size_key),
            OfferHistogramBin.region_code == key.region_code,
            OfferHistogramBin.is_consigned == key.is_consigned,
        )
    )
    return int(result.scalar_one())


# ============================================================
# Latest-price view
# ============================================================


async def refresh_latest_prices(session: AsyncSession) -> int:
    """Rebuild master_market_latest. Returns the number of groups projected."""
    rn = func.row_number().over(
        partition_by=(
            MarketDataRecord.provider,
            MarketDataRecord.provider_product_id,
            MarketDataRecord.size_key,
            MarketDataRecord.currency_code,
            MarketDataRecord.region_code,
        ),
        order_by=(
            MarketDataRecord.snapshot_at.desc(),
            MarketDataRecord.is_consigned.asc(),
            MarketDataRecord.provider_source.asc(),
            MarketDataRecord.id.desc(),
        ),
    ).label("rn")
    ranked = select(MarketDataRecord, rn).subquery()
    latest = select(ranked).where(ranked.c.rn == 1)
    rows = (await session.execute(latest)).mappings().all()

    refreshed_at = utcnow()
    await session.execute(delete(LatestMarketPrice))
    session.add_all(
        LatestMarketPrice(
            record_id=row["id"],
            provider=row["provider"],
            provider_source=row["provider_source"],
            provider_product_id=row["provider_product_id"],
            sku=row["sku"],
            size_key=row["size_key"],
            currency_code=row["currency_code"],
            region_code=row["region_code"],
            is_consigned=row["is_consigned"],
            lowest_ask=row["lowest_ask"],
            highest_bid=row["highest_bid"],
            last_sale_price=row["last_sale_price"],
            sales_last_72h=row["sales_last_72h"],
            sales_last_30d=row["sales_last_30d"],
            snapshot_at=row["snapshot_at"],
            refreshed_at=refreshed_at,
        )
        for row in rows
    )
    await session.flush()
    logger.info(f"Latest-price view refreshed: {len(rows)} groups")
    return len(rows)


async def run_latest_refresh() -> int | None:
    """Refresh the view in its own session; skipped if another instance holds the lock."""
    locked = False
    try:
        locked = await acquire_lock(LATEST_REFRESH_LOCK_KEY, ttl=TTL_LATEST_REFRESH_LOCK)
        if not locked:
            logger.info("Latest-price refresh already running elsewhere, skipping")
            return None
    except RuntimeError:
        # Redis may be unavailable in tests/local minimal env.
        pass
    try:
        async with get_session() as session:
            return await refresh_latest_prices(session)
    finally:
        if locked:
            await release_lock(LATEST_REFRESH_LOCK_KEY)


async def get_latest_price(
    session: AsyncSession,
    sku: str,
    size: str,
    currency: str,
    region: str,
    provider: str | None = None,
) -> LatestPrice | None:
    """Current price for an item from the latest-price view.

    Non-consigned rows win over consigned ones, then the newest observation.
    """
    stmt = select(LatestMarketPrice).where(
        LatestMarketPrice.sku == sku,
        LatestMarketPrice.size_key == canonical_size_label(size),
        LatestMarketPrice.currency_code == currency.upper(),
        LatestMarketPrice.region_code == region.upper(),
    )
    if provider:
        stmt = stmt.where(LatestMarketPrice.provider == provider)
    stmt = stmt.order_by(
        LatestMarketPrice.is_consigned.asc(),
        LatestMarketPrice.snapshot_at.desc(),
        LatestMarketPrice.provider.asc(),
    ).limit(1)
    row = (await session.execute(stmt)).scalar_one_or_none()
    if row is None:
        return None
    return LatestPrice(
        provider=row.provider,
        provider_source=row.provider_source,
        sku=row.sku,
        size_key=row.size_key,
        currency_code=row.currency_code,
        region_code=row.region_code,
        is_consigned=row.is_consigned,
        lowest_ask=row.lowest_ask,
        highest_bid=row.highest_bid,
        last_sold=row.last_sale_price,
        as_of=as_utc(row.snapshot_at),
    )


async def latest_snapshot_times(
    session: AsyncSession,
    provider: str,
    items: Sequence[tuple[str, str]],
) -> dict[tuple[str, str], datetime]:
    """Newest snapshot_at per (sku, size) for a provider, any region."""
    if not items:
        return {}
    wanted = [(sku, canonical_size_label(size)) for sku, size in items]
    stmt = (
        select(
            MarketDataRecord.sku,
            MarketDataRecord.size_key,
            func.max(MarketDataRecord.snapshot_at),
        )
        .where(
            MarketDataRecord.provider == provider,
            or_(*(and_(MarketDataRecord.sku == s, MarketDataRecord.size_key == z) for s, z in wanted)),
        )
        .group_by(MarketDataRecord.sku, MarketDataRecord.size_key)
    )
    result = await session.execute(stmt)
    return {(sku, size_key): as_utc(latest) for sku, size_key, latest in result.all()}
