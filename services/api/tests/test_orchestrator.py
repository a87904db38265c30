from decimal import Decimal

import pytest
from sqlalchemy import select

from market_data.models import MappingStatus, MarketDataRecord, MarketJob, SizeMapping
from market_data.services.alias_client import AliasClient
from market_data.services.errors import MappingUnresolved, NotFound, ProviderUnavailable
from market_data.services.mappers import get_mapper
from market_data.services.market_store import HistogramKey, count_histogram_bins
from market_data.services.orchestrator import (
    SUPPORTED_REGIONS,
    AliasRegionSync,
    MarketJobProcessor,
    MultiRegionOrchestrator,
    RegionResult,
    StockXRegionSync,
    SyncTarget,
    resolve_primary_region,
)
from market_data.services.provider_calls import RetryPolicy
from market_data.services.size_mappings import SizeMappingService
from market_data.services.sku_matching import CatalogCandidate
from market_data.services.stockx_client import StockXClient
from market_data.stores.postgres import get_session

POLICY = RetryPolicy(max_attempts=1, jitter=0.0, timeout=5.0)


class FakeRegionSync:
    provider = "stockx"
    regions = SUPPORTED_REGIONS

    def __init__(self, failures=None):
        self.failures = failures or {}
        self.calls = []

    async def sync_region(self, target, region):
        self.calls.append((region, target))
        error = self.failures.get(region)
        if error is not None:
            raise error
        return RegionResult(region, True, records_inserted=1)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class FakeMarketplace:
    """ProviderCall routing endpoints to canned (payload, status) handlers."""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    async def __call__(self, endpoint, params):
        self.calls.append((endpoint, dict(params)))
        for prefix, handler in self.routes.items():
            if endpoint.startswith(prefix):
                return handler(params)
        return {"message": "not found"}, 404


@pytest.mark.parametrize(
    "preference,expected",
    [
        ("GB", "UK"),
        ("uk", "UK"),
        ("GBP", "UK"),
        ("EUR", "EU"),
        ("DE", "EU"),
        ("US", "US"),
        ("JP", "US"),
        ("", "UK"),
        (None, "UK"),
    ],
)
def test_resolve_primary_region(preference, expected) -> None:
    assert resolve_primary_region(preference) == expected


async def test_primary_first_then_secondaries_spaced() -> None:
    syncer = FakeRegionSync()
    sleep = RecordingSleep()
    orchestrator = MultiRegionOrchestrator(
        {"stockx": syncer}, secondary_start_delay=2.0, inter_region_delay=1.0, sleep=sleep
    )

    result = await orchestrator.sync_product(SyncTarget("stockx", "DD1391-100", "p-1"), "GB", wait_for_secondary=True)

    assert [region for region, _ in syncer.calls] == ["UK", "EU", "US"]
    assert sleep.delays == [2.0, 1.0]
    assert result.primary_region == "UK"
    assert result.success is True
    assert set(result.regions) == {"UK", "EU", "US"}


async def test_sync_returns_after_primary() -> None:
    syncer = FakeRegionSync()
    orchestrator = MultiRegionOrchestrator({"stockx": syncer}, sleep=RecordingSleep())

    result = await orchestrator.sync_product(SyncTarget("stockx", "DD1391-100", "p-1"), "US")

    assert list(result.regions) == ["US"]
    await orchestrator.drain()
    assert set(result.regions) == {"US", "UK", "EU"}


async def test_secondary_failures_do_not_fail_sync() -> None:
    syncer = FakeRegionSync(failures={"EU": ProviderUnavailable("HTTP 503"), "US": RuntimeError("boom")})
    orchestrator = MultiRegionOrchestrator({"stockx": syncer}, sleep=RecordingSleep())

    result = await orchestrator.sync_product(SyncTarget("stockx", None, "p-1"), "UK", wait_for_secondary=True)

    assert result.success is True
    assert result.regions["EU"].success is False
    assert result.regions["EU"].error_code == "PROVIDER_UNAVAILABLE"
    assert result.regions["US"].error_code == "UNEXPECTED"
    assert result.to_dict()["regions"]["EU"]["errorCode"] == "PROVIDER_UNAVAILABLE"


async def test_primary_failure_raises_and_skips_secondaries() -> None:
    syncer = FakeRegionSync(failures={"UK": NotFound("HTTP 404", status=404)})
    orchestrator = MultiRegionOrchestrator({"stockx": syncer}, sleep=RecordingSleep())

    with pytest.raises(NotFound):
        await orchestrator.sync_product(SyncTarget("stockx", None, "p-1"), "UK")
    await orchestrator.drain()

    assert [region for region, _ in syncer.calls] == ["UK"]


async def test_unknown_provider() -> None:
    orchestrator = MultiRegionOrchestrator({}, sleep=RecordingSleep())
    with pytest.raises(ValueError):
        await orchestrator.sync_product(SyncTarget("goat", None, "p-1"), "UK")


async def test_stockx_region_sync_stores_records(db) -> None:
    def variants(params):
        return [{"variantId": "v-10", "variantValue": "10"}, {"variantId": "v-11", "variantValue": "11"}], 200

    def market_data(params):
        return [
            {"variantId": "v-10", "lowestAskAmount": "145.00", "highestBidAmount": "120.00"},
            {"variantId": "v-11", "lowestAskAmount": "150.00"},
        ], 200

    marketplace = FakeMarketplace(
        {
            "catalog/products/p-1/variants": variants,
            "catalog/products/p-1/market-data": market_data,
        }
    )
    syncer = StockXRegionSync(StockXClient(marketplace, policy=POLICY))
    assert syncer.mapper is get_mapper("stockx_market_data")
    target = SyncTarget("stockx", "DD1391-100", "p-1")

    uk = await syncer.sync_region(target, "UK")
    eu = await syncer.sync_region(target, "EU")

    assert (uk.records_inserted, eu.records_inserted) == (2, 2)
    variant_calls = [c for c in marketplace.calls if c[0].endswith("/variants")]
    assert len(variant_calls) == 1
    currencies = [c[1]["currencyCode"] for c in marketplace.calls if c[0].endswith("/market-data")]
    assert currencies == ["GBP", "EUR"]

    async with get_session() as session:
        rows = (await session.execute(select(MarketDataRecord).order_by(MarketDataRecord.id))).scalars().all()
    assert [(r.region_code, r.currency_code, r.size_key) for r in rows] == [
        ("UK", "GBP", "10"),
        ("UK", "GBP", "11"),
        ("EU", "EUR", "10"),
        ("EU", "EUR", "11"),
    ]
    assert rows[0].lowest_ask == Decimal("145.00")
    assert rows[0].raw_snapshot_id is not None


def _alias_variant(size, consigned, ask):
    return {
        "size": size,
        "size_unit": "SIZE_UNIT_US",
        "product_condition": "PRODUCT_CONDITION_NEW",
        "packaging_condition": "PACKAGING_CONDITION_GOOD_CONDITION",
        "consigned": consigned,
        "availability": {"lowest_listing_price_cents": ask, "highest_offer_price_cents": "11000"},
    }


async def test_alias_region_sync_with_extras(db) -> None:
    def availabilities(params):
        if params["consigned"]:
            return {"variants": [_alias_variant(10, True, "16000")]}, 200
        return {"variants": [_alias_variant(10.5, False, "15000"), _alias_variant(10, False, "14500")]}, 200

    def histogram(params):
        return {
            "offer_histogram": {
                "bins": [{"offer_price_cents": "11000", "count": 2}, {"offer_price_cents": "10500", "count": 5}]
            }
        }, 200

    marketplace = FakeMarketplace(
        {
            "pricing_insights/availabilities/c-1": availabilities,
            "pricing_insights/offer_histogram": histogram,
            # recent_sales is not routed and answers 404
        }
    )
    syncer = AliasRegionSync(
        AliasClient(marketplace, policy=POLICY), recent_sales_enabled=True, histograms_enabled=True
    )

    assert syncer.mapper is get_mapper("alias_availabilities")
    result = await syncer.sync_region(SyncTarget("alias", "DD1391-100", "c-1"), "EU")

    assert result.success is True
    assert result.records_inserted == 3
    assert result.histogram_bins == 4
    assert result.warnings == ["recent_sales 10: NOT_FOUND", "recent_sales 10.5: NOT_FOUND"]

    region_ids = {c[1]["region_id"] for c in marketplace.calls}
    assert region_ids == {"2"}

    async with get_session() as session:
        rows = (await session.execute(select(MarketDataRecord))).scalars().all()
        bins = await count_histogram_bins(session, HistogramKey("alias", "c-1", "10.5", "EU"))
    assert {(r.size_key, r.is_consigned) for r in rows} == {("10", False), ("10.5", False), ("10", True)}
    assert {r.currency_code for r in rows} == {"USD"}
    assert len({r.snapshot_at for r in rows}) == 1
    assert bins == 2


async def test_alias_region_sync_single_size(db) -> None:
    def availabilities(params):
        return {"variants": [_alias_variant(10, bool(params["consigned"]), "14500")]}, 200

    marketplace = FakeMarketplace({"pricing_insights/availabilities/c-1": availabilities})
    syncer = AliasRegionSync(
        AliasClient(marketplace, policy=POLICY), recent_sales_enabled=False, histograms_enabled=True
    )

    result = await syncer.sync_region(SyncTarget("alias", "DD1391-100", "c-1", provider_size="10.0"), "US")

    histogram_calls = [c for c in marketplace.calls if c[0] == "pricing_insights/offer_histogram"]
    assert [c[1]["size"] for c in histogram_calls] == ["10"]
    assert result.warnings == ["offer_histogram 10: NOT_FOUND"]
    assert result.records_inserted == 2


# ============================================================
# Job processor
# ============================================================


def _mapping_service() -> SizeMappingService:
    async def search(query):
        return [
            CatalogCandidate(
                catalog_id="p-1",
                sku="DD1391-100",
                name="Nike Dunk Low Retro White Black Panda",
                brand="Nike",
            )
        ]

    async def lookup(product_id):
        return [("v-95", "9.5"), ("v-10", "10"), ("v-105", "10.5")]

    return SizeMappingService({"stockx": search}, {"stockx": lookup})


def _job() -> MarketJob:
    return MarketJob(id=1, provider="stockx", sku="DD1391-100", size="9", priority=200, user_id="u1", attempts=0)


async def _mapping() -> SizeMapping:
    async with get_session() as session:
        return (await session.execute(select(SizeMapping))).scalar_one()


async def test_processor_without_committed_mapping_records_suggestion(db) -> None:
    syncer = FakeRegionSync()
    processor = MarketJobProcessor(MultiRegionOrchestrator({"stockx": syncer}, sleep=RecordingSleep()), _mapping_service())

    with pytest.raises(MappingUnresolved):
        await processor(_job())

    mapping = await _mapping()
    assert mapping.mapping_status == MappingStatus.UNRESOLVED.value
    assert mapping.suggested_product_id == "p-1"
    assert mapping.provider_product_id is None
    assert mapping.last_sync_error.startswith("No approved stockx mapping")
    assert syncer.calls == []


async def test_processor_resolves_size_and_syncs(db) -> None:
    mappings = _mapping_service()
    async with get_session() as session:
        await mappings.suggest(session, "stockx", "DD1391-100", "9")
    async with get_session() as session:
        await mappings.commit_mapping(session, "stockx", "DD1391-100", "9", approved_by="ops")

    async def user_region(user_id):
        return "EUR"

    syncer = FakeRegionSync()
    processor = MarketJobProcessor(
        MultiRegionOrchestrator({"stockx": syncer}, sleep=RecordingSleep()), mappings, user_region
    )

    result = await processor(_job())
    await processor.drain()

    assert result.primary_region == "EU"
    region, target = syncer.calls[0]
    assert region == "EU"
    assert target.provider_product_id == "p-1"
    assert target.provider_size == "10"

    mapping = await _mapping()
    assert mapping.provider_size == "10"
    assert mapping.provider_variant_id == "v-10"
    assert mapping.last_sync_success_at is not None
    assert mapping.last_sync_error is None


async def test_processor_not_found_invalidates_mapping(db) -> None:
    # No variant lookup: the UK size passes through as the provider size.
    mappings = SizeMappingService({"stockx": _mapping_service().searches["stockx"]})
    async with get_session() as session:
        await mappings.commit_mapping(session, "stockx", "DD1391-100", "9", approved_by="ops", product_id="p-9")

    syncer = FakeRegionSync(failures={"UK": NotFound("HTTP 404", status=404)})
    processor = MarketJobProcessor(MultiRegionOrchestrator({"stockx": syncer}, sleep=RecordingSleep()), mappings)

    with pytest.raises(NotFound):
        await processor(_job())

    mapping = await _mapping()
    assert mapping.mapping_status == MappingStatus.INVALID.value
    assert mapping.last_sync_error.startswith("NOT_FOUND")
