"""StockX market-data mapper.

StockX reports prices in major units, either as numbers or decimal strings
("145.00"). They pass through unchanged (quantized to cents).

Per variant:
- standard row: lowestAskAmount / highestBidAmount, is_consigned=False
- direct row (when directMarketData has data): is_consigned=True

Flex data is not ingested: it shares the standard row's uniqueness key.
"""

from __future__ import annotations

import logging
from typing import Any

from market_data.services.contracts import StockXMarketVariant, parse_stockx_market_data
from market_data.services.mappers.base import CanonicalRecord, IngestContext, major_units
from market_data.services.size_matching import canonical_size_label, size_numeric
from market_data.services.snapshot_logger import SnapshotRef

logger = logging.getLogger("uvicorn.error")


class StockXMarketDataMapper:
    provider = "stockx"
    provider_source = "stockx_market_data"
    direct_source = "stockx_market_data_direct"

    def ingest(
        self,
        snapshot: SnapshotRef | None,
        payload: Any,
        context: IngestContext,
    ) -> list[CanonicalRecord]:
        snapshot_at = context.resolve_snapshot_at(snapshot)
        raw_snapshot_id = snapshot.snapshot_id if snapshot else None
        records: list[CanonicalRecord] = []
        skipped = 0

        for variant in parse_stockx_market_data(payload):
            label = context.variant_sizes.get(variant.variant_id) or variant.variant_value or variant.size
            if not label:
                skipped += 1
                logger.warning(
                    f"StockX mapper: no size label for variant {variant.variant_id} "
                    f"(product {context.provider_product_id}), skipping"
                )
                continue

            size_key = canonical_size_label(label)
            base = dict(
                provider=self.provider,
                provider_product_id=context.provider_product_id,
                provider_variant_id=variant.variant_id,
                sku=context.sku,
                size_key=size_key,
                size_numeric=size_numeric(size_key),
                size_system="US",
                currency_code=context.currency_code,
                region_code=context.region_code,
                snapshot_at=snapshot_at,
                raw_snapshot_id=raw_snapshot_id,
                last_sale_price=major_units(variant.last_sale),
            )

            lowest, highest = _standard_prices(variant)
            records.append(
                CanonicalRecord(
                    provider_source=self.provider_source,
                    is_consigned=False,
                    lowest_ask=major_units(lowest),
                    highest_bid=major_units(highest),
                    **base,
                )
            )

            direct = variant.direct
            if direct is not None and direct.has_data:
                records.append(
                    CanonicalRecord(
                        provider_source=self.direct_source,
                        is_consigned=True,
                        lowest_ask=major_units(direct.lowest_ask if direct.lowest_ask is not None else lowest),
                        highest_bid=major_units(
                            direct.highest_bid if direct.highest_bid is not None else highest
                        ),
                        **base,
                    )
                )

        logger.info(
            f"StockX mapper: {len(records)} records for {context.provider_product_id} "
            f"[{context.region_code}/{context.currency_code}], skipped={skipped}"
        )
        return records


def _standard_prices(variant: StockXMarketVariant) -> tuple[Any, Any]:
    lowest = variant.lowest_ask
    highest = variant.highest_bid
    if variant.standard is not None:
        if lowest is None:
            lowest = variant.standard.lowest_ask
        if highest is None:
            highest = variant.standard.highest_bid
    return lowest, highest
