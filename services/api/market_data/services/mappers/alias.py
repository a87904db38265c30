"""Alias (GOAT) mappers.

Alias reports every price as integer cents encoded as strings ("14500"), which
must be divided by 100. Alias quotes all regions in USD.

- AliasAvailabilitiesMapper: availabilities -> canonical records
- summarize_recent_sales: recent_sales -> per-(size, consigned) volume
- parse_offer_histogram: offer_histogram.bins -> price levels
"""

from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import Any

from market_data.services.clock import as_utc, utcnow
from market_data.services.contracts import (
    AliasPricingVariant,
    parse_alias_availabilities,
    parse_alias_offer_histogram,
    parse_alias_recent_sales,
)
from market_data.services.mappers.base import (
    CanonicalRecord,
    HistogramBin,
    IngestContext,
    SaleVolume,
    from_cents,
)
from market_data.services.size_matching import canonical_size_label, size_numeric
from market_data.services.snapshot_logger import SnapshotRef

logger = logging.getLogger("uvicorn.error")

CONDITION_NEW = "PRODUCT_CONDITION_NEW"
PACKAGING_GOOD = "PACKAGING_CONDITION_GOOD_CONDITION"

DEFAULT_CONDITIONS: frozenset[tuple[str, str]] = frozenset({(CONDITION_NEW, PACKAGING_GOOD)})

# Lower rank wins when several conditions are reported for one size.
PRODUCT_CONDITION_RANK = {
    "PRODUCT_CONDITION_NEW": 0,
    "PRODUCT_CONDITION_NEW_WITH_DEFECTS": 1,
    "PRODUCT_CONDITION_USED": 2,
}
PACKAGING_CONDITION_RANK = {
    "PACKAGING_CONDITION_GOOD_CONDITION": 0,
}


def _short_condition(value: str, prefix: str) -> str:
    text = value.upper()
    if text.startswith(prefix):
        text = text[len(prefix):]
    return text.lower()


def _condition_rank(variant: AliasPricingVariant) -> tuple[int, int]:
    return (
        PRODUCT_CONDITION_RANK.get(variant.product_condition, 9),
        PACKAGING_CONDITION_RANK.get(variant.packaging_condition, 1),
    )


def collapse_conditions(variants: list[AliasPricingVariant]) -> dict[tuple[str, bool], AliasPricingVariant]:
    """Keep one entry per (size, consigned): new over used, good packaging over other."""
    best: dict[tuple[str, bool], AliasPricingVariant] = {}
    for variant in variants:
        key = (canonical_size_label(variant.size), variant.consigned)
        current = best.get(key)
        if current is None or _condition_rank(variant) < _condition_rank(current):
            best[key] = variant
    return best


class AliasAvailabilitiesMapper:
    provider = "alias"
    provider_source = "alias_availabilities"
    consigned_source = "alias_availabilities_consigned"

    def ingest(
        self,
        snapshot: SnapshotRef | None,
        payload: Any,
        context: IngestContext,
    ) -> list[CanonicalRecord]:
        snapshot_at = context.resolve_snapshot_at(snapshot)
        raw_snapshot_id = snapshot.snapshot_id if snapshot else None
        allowed = context.allowed_conditions or DEFAULT_CONDITIONS

        variants = parse_alias_availabilities(payload)
        kept = [
            v
            for v in variants
            if (v.product_condition, v.packaging_condition) in allowed
            and (context.consigned is None or v.consigned == context.consigned)
        ]

        records: list[CanonicalRecord] = []
        for (size_key, consigned), variant in collapse_conditions(kept).items():
            availability = variant.availability
            volume = context.sales_volume.get((size_key, consigned))

            last_sale = None
            if availability is not None:
                last_sale = from_cents(availability.last_sold_listing_price_cents)
            if last_sale is None and volume is not None:
                last_sale = volume.last_sale_price

            records.append(
                CanonicalRecord(
                    provider=self.provider,
                    provider_source=self.consigned_source if consigned else self.provider_source,
                    provider_product_id=context.provider_product_id,
                    provider_variant_id=None,
                    sku=context.sku,
                    size_key=size_key,
                    size_numeric=size_numeric(size_key),
                    size_system=(variant.size_unit or "US").upper().removeprefix("SIZE_UNIT_"),
                    currency_code=context.currency_code,
                    region_code=context.region_code,
                    product_condition=_short_condition(variant.product_condition, "PRODUCT_CONDITION_"),
                    packaging_condition=_short_condition(variant.packaging_condition, "PACKAGING_CONDITION_"),
                    is_consigned=consigned,
                    lowest_ask=from_cents(availability.lowest_listing_price_cents) if availability else None,
                    highest_bid=from_cents(availability.highest_offer_price_cents) if availability else None,
                    last_sale_price=last_sale,
                    sales_last_72h=volume.sales_last_72h if volume else None,
                    sales_last_30d=volume.sales_last_30d if volume else None,
                    ask_count=availability.number_of_listings if availability else None,
                    bid_count=availability.number_of_offers if availability else None,
                    snapshot_at=snapshot_at,
                    raw_snapshot_id=raw_snapshot_id,
                )
            )

        logger.info(
            f"Alias mapper: {len(records)} records for {context.provider_product_id} "
            f"[{context.region_code}], {len(variants)} raw variants, {len(kept)} after condition filter"
        )
        return records


def summarize_recent_sales(
    payload: Any,
    now: datetime | None = None,
) -> dict[tuple[str, bool], SaleVolume]:
    """Count sales in the last 72h / 30d per (size, consigned); prices /100."""
    now = now or utcnow()
    cutoff_72h = now - timedelta(hours=72)
    cutoff_30d = now - timedelta(days=30)

    volumes: dict[tuple[str, bool], SaleVolume] = {}
    for sale in parse_alias_recent_sales(payload):
        purchased_at = as_utc(sale.purchased_at)
        key = (canonical_size_label(sale.size), sale.consigned)
        volume = volumes.setdefault(key, SaleVolume())
        if purchased_at >= cutoff_72h:
            volume.sales_last_72h += 1
        if purchased_at >= cutoff_30d:
            volume.sales_last_30d += 1
        if volume.last_sale_at is None or purchased_at > volume.last_sale_at:
            volume.last_sale_at = purchased_at
            volume.last_sale_price = from_cents(sale.price_cents)
    return volumes


def parse_offer_histogram(payload: Any) -> list[HistogramBin]:
    """Offer book for one size as price levels (major units)."""
    return [
        HistogramBin(price=from_cents(b.offer_price_cents), offer_count=b.count)
        for b in parse_alias_offer_histogram(payload)
    ]
