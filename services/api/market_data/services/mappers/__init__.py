"""Ingestion mappers: raw provider payload -> canonical records.

One mapper per provider source. Mappers are pure: they validate the payload
against its contract, normalize units and conditions, and return records. The
store decides what gets written.
"""

from market_data.services.mappers.alias import (
    AliasAvailabilitiesMapper,
    parse_offer_histogram,
    summarize_recent_sales,
)
from market_data.services.mappers.base import (
    CanonicalRecord,
    HistogramBin,
    IngestContext,
    SaleVolume,
    from_cents,
    major_units,
)
from market_data.services.mappers.stockx import StockXMarketDataMapper

MAPPERS = {
    StockXMarketDataMapper.provider_source: StockXMarketDataMapper(),
    AliasAvailabilitiesMapper.provider_source: AliasAvailabilitiesMapper(),
}


def get_mapper(provider_source: str) -> StockXMarketDataMapper | AliasAvailabilitiesMapper:
    try:
        return MAPPERS[provider_source]
    except KeyError:
        raise ValueError(f"No mapper registered for provider source {provider_source!r}") from None


__all__ = [
    "AliasAvailabilitiesMapper",
    "CanonicalRecord",
    "HistogramBin",
    "IngestContext",
    "SaleVolume",
    "StockXMarketDataMapper",
    "from_cents",
    "get_mapper",
    "major_units",
    "parse_offer_histogram",
    "summarize_recent_sales",
]
