from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from market_data.services.contracts import parse_alias_availabilities, parse_stockx_market_data
from market_data.services.errors import ValidationError
from market_data.services.mappers import (
    AliasAvailabilitiesMapper,
    IngestContext,
    StockXMarketDataMapper,
    from_cents,
    get_mapper,
    major_units,
    parse_offer_histogram,
    summarize_recent_sales,
)
from market_data.services.snapshot_logger import SnapshotRef

REQUESTED_AT = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def _alias_variant(size, *, consigned=False, condition="PRODUCT_CONDITION_NEW", ask="14500", bid="12000"):
    return {
        "size": size,
        "size_unit": "SIZE_UNIT_US",
        "product_condition": condition,
        "packaging_condition": "PACKAGING_CONDITION_GOOD_CONDITION",
        "consigned": consigned,
        "availability": {
            "lowest_listing_price_cents": ask,
            "highest_offer_price_cents": bid,
            "last_sold_listing_price_cents": "13000",
            "number_of_listings": 4,
            "number_of_offers": 7,
        },
    }


def test_unit_helpers() -> None:
    assert major_units("145.00") == Decimal("145.00")
    assert major_units(145) == Decimal("145.00")
    assert from_cents("14500") == Decimal("145.00")
    assert from_cents(12999) == Decimal("129.99")
    assert from_cents(None) is None


def test_same_price_from_both_providers_is_equal() -> None:
    stockx = StockXMarketDataMapper().ingest(
        SnapshotRef("snap-sx", REQUESTED_AT),
        [{"variantId": "v-10", "variantValue": "10", "lowestAskAmount": "145.00"}],
        IngestContext(provider_product_id="p-1", region_code="US", currency_code="USD"),
    )
    alias = AliasAvailabilitiesMapper().ingest(
        SnapshotRef("snap-al", REQUESTED_AT),
        {"variants": [_alias_variant(10, ask="14500")]},
        IngestContext(provider_product_id="c-1", region_code="US", currency_code="USD"),
    )

    assert stockx[0].lowest_ask == Decimal("145.00")
    assert alias[0].lowest_ask == Decimal("145.00")


def test_stockx_standard_and_direct_rows() -> None:
    payload = [
        {
            "variantId": "v-10",
            "lowestAskAmount": "150",
            "highestBidAmount": "120.5",
            "lastSaleAmount": 140,
            "directMarketData": {"lowestAsk": "155.00", "sellFaster": "150"},
        },
        {
            "variantId": "v-11",
            "standardMarketData": {"lowestAsk": "160", "highestBidAmount": "130"},
            "directMarketData": {"highestBidAmount": "100"},
        },
    ]
    context = IngestContext(
        provider_product_id="p-1",
        region_code="UK",
        currency_code="GBP",
        sku="DD1391-100",
        variant_sizes={"v-10": "10", "v-11": "11.0"},
    )

    records = StockXMarketDataMapper().ingest(SnapshotRef("snap-1", REQUESTED_AT), payload, context)

    assert len(records) == 3
    standard, direct, second = records
    assert standard.provider_source == "stockx_market_data"
    assert standard.is_consigned is False
    assert standard.lowest_ask == Decimal("150.00")
    assert standard.highest_bid == Decimal("120.50")
    assert standard.last_sale_price == Decimal("140.00")
    assert standard.size_key == "10"
    assert standard.snapshot_at == REQUESTED_AT
    assert standard.raw_snapshot_id == "snap-1"

    assert direct.provider_source == "stockx_market_data_direct"
    assert direct.is_consigned is True
    assert direct.lowest_ask == Decimal("155.00")
    # Direct block without a bid falls back to the standard bid.
    assert direct.highest_bid == Decimal("120.50")

    # No direct row when the direct block has no ask or suggestion prices.
    assert second.size_key == "11"
    assert second.lowest_ask == Decimal("160.00")
    assert second.highest_bid == Decimal("130.00")
    assert second.provider_source == "stockx_market_data"


def test_stockx_variant_without_label_is_skipped() -> None:
    records = StockXMarketDataMapper().ingest(
        None,
        [{"variantId": "v-x", "lowestAskAmount": "100"}],
        IngestContext(provider_product_id="p-1", region_code="US", currency_code="USD"),
    )
    assert records == []


def test_stockx_accepts_legacy_envelope_and_drops_malformed_entries() -> None:
    variants = parse_stockx_market_data(
        {"variants": [{"variantId": "v-1", "lowestAskAmount": "99"}, {"lowestAskAmount": "1"}]}
    )
    assert [v.variant_id for v in variants] == ["v-1"]


def test_stockx_bad_envelope_raises() -> None:
    with pytest.raises(ValidationError):
        parse_stockx_market_data({"unexpected": True})


def test_blank_prices_become_none() -> None:
    (variant,) = parse_stockx_market_data([{"variantId": "v-1", "lowestAskAmount": ""}])
    assert variant.lowest_ask is None


def test_alias_condition_filter_and_consigned_split() -> None:
    payload = {
        "variants": [
            _alias_variant(10),
            _alias_variant(10, consigned=True, ask="15000"),
            _alias_variant(10, condition="PRODUCT_CONDITION_USED", ask="9000"),
            _alias_variant(10.5, ask="16000"),
        ]
    }
    context = IngestContext(provider_product_id="c-1", region_code="EU", currency_code="USD", sku="DD1391-100")

    records = AliasAvailabilitiesMapper().ingest(SnapshotRef("snap-1", REQUESTED_AT), payload, context)

    by_key = {(r.size_key, r.is_consigned): r for r in records}
    assert set(by_key) == {("10", False), ("10", True), ("10.5", False)}
    assert by_key[("10", False)].lowest_ask == Decimal("145.00")
    assert by_key[("10", False)].provider_source == "alias_availabilities"
    assert by_key[("10", True)].lowest_ask == Decimal("150.00")
    assert by_key[("10", True)].provider_source == "alias_availabilities_consigned"
    for record in records:
        assert record.product_condition == "new"
        assert record.packaging_condition == "good_condition"
        assert record.size_system == "US"
        assert record.ask_count == 4
        assert record.bid_count == 7


def test_alias_consigned_context_keeps_one_book() -> None:
    payload = {"variants": [_alias_variant(9), _alias_variant(9, consigned=True)]}
    context = IngestContext(provider_product_id="c-1", region_code="US", currency_code="USD", consigned=True)

    records = AliasAvailabilitiesMapper().ingest(None, payload, context)

    assert len(records) == 1
    assert records[0].is_consigned is True


def test_alias_malformed_entry_dropped_rest_ingested() -> None:
    payload = {"variants": [{"size": "ten"}, _alias_variant(11)]}
    assert len(parse_alias_availabilities(payload)) == 1


def test_alias_bad_envelope_raises() -> None:
    with pytest.raises(ValidationError):
        parse_alias_availabilities([])


def test_recent_sales_volume() -> None:
    now = datetime(2026, 10, 10, tzinfo=timezone.utc)
    payload = {
        "recent_sales": [
            {"purchased_at": (now - timedelta(hours=5)).isoformat(), "price_cents": "15000", "size": 10},
            {"purchased_at": (now - timedelta(days=2)).isoformat(), "price_cents": "14000", "size": 10},
            {"purchased_at": (now - timedelta(days=10)).isoformat(), "price_cents": "13000", "size": 10},
            {"purchased_at": (now - timedelta(days=60)).isoformat(), "price_cents": "12000", "size": 10},
            {"purchased_at": (now - timedelta(hours=1)).isoformat(), "price_cents": "17000", "size": 10, "consigned": True},
        ]
    }

    volumes = summarize_recent_sales(payload, now=now)

    regular = volumes[("10", False)]
    assert regular.sales_last_72h == 2
    assert regular.sales_last_30d == 3
    assert regular.last_sale_price == Decimal("150.00")
    assert volumes[("10", True)].sales_last_72h == 1


def test_alias_records_carry_sales_volume() -> None:
    now = datetime(2026, 10, 10, tzinfo=timezone.utc)
    volumes = summarize_recent_sales(
        {"recent_sales": [{"purchased_at": now.isoformat(), "price_cents": 15000, "size": 10}]},
        now=now,
    )
    context = IngestContext(
        provider_product_id="c-1", region_code="US", currency_code="USD", sales_volume=volumes
    )

    (record,) = AliasAvailabilitiesMapper().ingest(None, {"variants": [_alias_variant(10)]}, context)

    assert record.sales_last_72h == 1
    assert record.sales_last_30d == 1


def test_offer_histogram() -> None:
    bins = parse_offer_histogram(
        {"offer_histogram": {"bins": [{"offer_price_cents": "12000", "count": 3}, {"offer_price_cents": 11000, "count": 1}]}}
    )
    assert [(b.price, b.offer_count) for b in bins] == [(Decimal("120.00"), 3), (Decimal("110.00"), 1)]

    with pytest.raises(ValidationError):
        parse_offer_histogram({"bins": []})


def test_get_mapper() -> None:
    assert isinstance(get_mapper("stockx_market_data"), StockXMarketDataMapper)
    with pytest.raises(ValueError):
        get_mapper("unknown")
