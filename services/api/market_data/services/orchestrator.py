"""Multi-region sync orchestrator.

A product sync fetches the user's primary region first and returns as soon as
it is stored. The remaining regions run in a background task, spaced out to
stay inside provider rate limits. A secondary failure is recorded on that
region's result and never fails the sync.

Primary region resolution (user region / country / currency code):
- GB, UK, GBP                        -> UK
- EU, EUR and euro-area countries     -> EU
- anything else                       -> US
- no preference                      -> settings.default_user_region
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
import logging
from typing import Protocol

from market_data.models import MappingStatus, MarketJob, SizeMapping
from market_data.services.alias_client import ALIAS_CURRENCY, ALIAS_REGION_IDS, AliasClient, get_alias_client
from market_data.services.clock import utcnow
from market_data.services.contracts import parse_alias_availabilities
from market_data.services.errors import MappingUnresolved, NotFound, PipelineError, SizeMatchError
from market_data.services.mappers import (
    AliasAvailabilitiesMapper,
    HistogramBin,
    IngestContext,
    SaleVolume,
    StockXMarketDataMapper,
    get_mapper,
    parse_offer_histogram,
    summarize_recent_sales,
)
from market_data.services.market_store import HistogramKey, insert_records, replace_histogram
from market_data.services.provider_calls import ProviderResponse
from market_data.services.size_mappings import (
    SizeMappingService,
    alias_catalog_search,
    stockx_catalog_search,
    stockx_variant_lookup,
)
from market_data.services.size_matching import canonical_size_label, size_numeric
from market_data.services.snapshot_logger import SnapshotRef
from market_data.services.stockx_client import STOCKX_REGION_CURRENCY, StockXClient, get_stockx_client
from market_data.settings import get_settings
from market_data.stores.postgres import get_session

logger = logging.getLogger("uvicorn.error")

SUPPORTED_REGIONS = ("UK", "EU", "US")

REGION_PREFERENCES: dict[str, str] = {
    "UK": "UK",
    "GB": "UK",
    "GBP": "UK",
    "EU": "EU",
    "EUR": "EU",
    "DE": "EU",
    "FR": "EU",
    "IT": "EU",
    "ES": "EU",
    "NL": "EU",
    "BE": "EU",
    "AT": "EU",
    "PT": "EU",
    "IE": "EU",
    "FI": "EU",
    "US": "US",
    "USD": "US",
}


def resolve_primary_region(user_region: str | None) -> str:
    """Map a user's region/country/currency preference to a provider region."""
    if not user_region or not user_region.strip():
        default = get_settings().default_user_region.strip().upper()
        return REGION_PREFERENCES.get(default, "UK")
    return REGION_PREFERENCES.get(user_region.strip().upper(), "US")


def _snapshot_ref(response: ProviderResponse) -> SnapshotRef:
    return SnapshotRef(snapshot_id=response.snapshot_id, requested_at=response.requested_at)


@dataclass(frozen=True)
class SyncTarget:
    """A provider product to sync, optionally narrowed to one provider size."""

    provider: str
    sku: str | None
    provider_product_id: str
    provider_size: str | None = None


@dataclass
class RegionResult:
    region: str
    success: bool
    records_inserted: int = 0
    records_skipped: int = 0
    histogram_bins: int = 0
    error: str | None = None
    error_code: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "region": self.region,
            "success": self.success,
            "recordsInserted": self.records_inserted,
            "recordsSkipped": self.records_skipped,
            "histogramBins": self.histogram_bins,
            "error": self.error,
            "errorCode": self.error_code,
            "warnings": self.warnings,
        }


@dataclass
class SyncResult:
    provider: str
    provider_product_id: str
    primary_region: str
    regions: dict[str, RegionResult] = field(default_factory=dict)
    secondary_task: asyncio.Task[None] | None = None

    @property
    def success(self) -> bool:
        """Depends on the primary region only."""
        primary = self.regions.get(self.primary_region)
        return primary is not None and primary.success

    def to_dict(self) -> dict[str, object]:
        return {
            "provider": self.provider,
            "providerProductId": self.provider_product_id,
            "primaryRegion": self.primary_region,
            "success": self.success,
            "regions": {code: r.to_dict() for code, r in self.regions.items()},
        }


class RegionSync(Protocol):
    provider: str
    regions: tuple[str, ...]

    async def sync_region(self, target: SyncTarget, region: str) -> RegionResult: ...


# ============================================================
# Provider region syncs
# ============================================================


class StockXRegionSync:
    """One market-data call per region; the currency selects the order book."""

    provider = "stockx"
    regions = SUPPORTED_REGIONS

    def __init__(self, client: StockXClient, mapper: StockXMarketDataMapper | None = None):
        self.client = client
        self.mapper = mapper or get_mapper(StockXMarketDataMapper.provider_source)
        self._variant_sizes: dict[str, dict[str, str]] = {}

    async def _sizes_for(self, product_id: str) -> dict[str, str]:
        sizes = self._variant_sizes.get(product_id)
        if sizes is None:
            variants = await self.client.get_variants(product_id)
            sizes = {v.variant_id: v.variant_value for v in variants if v.variant_value}
            self._variant_sizes[product_id] = sizes
        return sizes

    async def sync_region(self, target: SyncTarget, region: str) -> RegionResult:
        currency = STOCKX_REGION_CURRENCY[region]
        variant_sizes = await self._sizes_for(target.provider_product_id)
        response = await self.client.get_market_data(target.provider_product_id, currency)

        context = IngestContext(
            provider_product_id=target.provider_product_id,
            region_code=region,
            currency_code=currency,
            sku=target.sku,
            variant_sizes=variant_sizes,
        )
        records = self.mapper.ingest(_snapshot_ref(response), response.payload, context)
        async with get_session() as session:
            stored = await insert_records(session, records)

        return RegionResult(
            region=region,
            success=True,
            records_inserted=stored.inserted,
            records_skipped=stored.skipped_existing,
        )


class AliasRegionSync:
    """Availabilities (consigned and not) per region, plus optional extras.

    Recent sales fold 72h/30d volume into the records. Offer histograms replace
    the stored order book for the size. A failing extra is a warning.
    """

    provider = "alias"
    regions = SUPPORTED_REGIONS

    def __init__(
        self,
        client: AliasClient,
        mapper: AliasAvailabilitiesMapper | None = None,
        *,
        recent_sales_enabled: bool | None = None,
        histograms_enabled: bool | None = None,
    ):
        settings = get_settings()
        self.client = client
        self.mapper = mapper or get_mapper(AliasAvailabilitiesMapper.provider_source)
        self.recent_sales_enabled = (
            settings.alias_recent_sales_enabled if recent_sales_enabled is None else recent_sales_enabled
        )
        self.histograms_enabled = (
            settings.alias_histograms_enabled if histograms_enabled is None else histograms_enabled
        )

    async def _recent_volume(
        self,
        catalog_id: str,
        sizes: list[str],
        region_id: str,
        result: RegionResult,
    ) -> dict[tuple[str, bool], SaleVolume]:
        volume: dict[tuple[str, bool], SaleVolume] = {}
        for size in sizes:
            try:
                response = await self.client.get_recent_sales(catalog_id, size, region_id)
                volume.update(summarize_recent_sales(response.payload))
            except PipelineError as e:
                logger.warning(f"Alias recent sales failed for {catalog_id} size {size}: {e}")
                result.warnings.append(f"recent_sales {size}: {e.code}")
        return volume

    async def _histograms(
        self,
        catalog_id: str,
        sizes: list[str],
        region_id: str,
        result: RegionResult,
    ) -> list[tuple[str, list[HistogramBin], str | None]]:
        books: list[tuple[str, list[HistogramBin], str | None]] = []
        for size in sizes:
            try:
                response = await self.client.get_offer_histogram(catalog_id, size, region_id)
                books.append((size, parse_offer_histogram(response.payload), response.snapshot_id))
            except PipelineError as e:
                logger.warning(f"Alias offer histogram failed for {catalog_id} size {size}: {e}")
                result.warnings.append(f"offer_histogram {size}: {e.code}")
        return books

    async def sync_region(self, target: SyncTarget, region: str) -> RegionResult:
        catalog_id = target.provider_product_id
        region_id = ALIAS_REGION_IDS[region]
        result = RegionResult(region=region, success=True)

        standard = await self.client.list_availabilities(catalog_id, region_id, consigned=False)
        consigned = await self.client.list_availabilities(catalog_id, region_id, consigned=True)
        # Both books share one observation time so they rank together in the view.
        snapshot_at = standard.requested_at

        if target.provider_size:
            sizes = [canonical_size_label(target.provider_size)]
        else:
            sizes = sorted(
                {canonical_size_label(v.size) for v in parse_alias_availabilities(standard.payload)},
                key=lambda s: (size_numeric(s) is None, size_numeric(s) or 0.0, s),
            )

        volume: dict[tuple[str, bool], SaleVolume] = {}
        if self.recent_sales_enabled and sizes:
            volume = await self._recent_volume(catalog_id, sizes, region_id, result)
        books: list[tuple[str, list[HistogramBin], str | None]] = []
        if self.histograms_enabled and sizes:
            books = await self._histograms(catalog_id, sizes, region_id, result)

        records = []
        for response, is_consigned in ((standard, False), (consigned, True)):
            context = IngestContext(
                provider_product_id=catalog_id,
                region_code=region,
                currency_code=ALIAS_CURRENCY,
                sku=target.sku,
                snapshot_at=snapshot_at,
                consigned=is_consigned,
                sales_volume=volume,
            )
            records.extend(self.mapper.ingest(_snapshot_ref(response), response.payload, context))

        async with get_session() as session:
            stored = await insert_records(session, records)
            for size, bins, snapshot_id in books:
                key = HistogramKey(self.provider, catalog_id, size, region)
                result.histogram_bins += await replace_histogram(session, key, bins, snapshot_at, snapshot_id)

        result.records_inserted = stored.inserted
        result.records_skipped = stored.skipped_existing
        return result


# ============================================================
# Orchestrator
# ============================================================


class MultiRegionOrchestrator:
    def __init__(
        self,
        syncers: dict[str, RegionSync],
        *,
        secondary_start_delay: float | None = None,
        inter_region_delay: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        settings = get_settings()
        self.syncers = syncers
        self.secondary_start_delay = (
            settings.secondary_region_start_delay_seconds
            if secondary_start_delay is None
            else secondary_start_delay
        )
        self.inter_region_delay = (
            settings.inter_region_delay_seconds if inter_region_delay is None else inter_region_delay
        )
        self.sleep = sleep
        self._background: set[asyncio.Task[None]] = set()

    async def sync_product(
        self,
        target: SyncTarget,
        user_region: str | None,
        wait_for_secondary: bool = False,
    ) -> SyncResult:
        """Sync the primary region now and the others in the background.

        Raises:
            PipelineError: the primary region failed (its classification decides
                whether the job is retried).
        """
        syncer = self.syncers.get(target.provider)
        if syncer is None:
            raise ValueError(f"No region sync registered for provider {target.provider!r}")

        primary = resolve_primary_region(user_region)
        if primary not in syncer.regions:
            primary = syncer.regions[0]

        result = SyncResult(
            provider=target.provider,
            provider_product_id=target.provider_product_id,
            primary_region=primary,
        )
        logger.info(f"Sync {target.provider}/{target.provider_product_id}: primary region {primary}")
        result.regions[primary] = await syncer.sync_region(target, primary)

        secondaries = [r for r in syncer.regions if r != primary]
        if secondaries:
            task = asyncio.create_task(self._sync_secondaries(syncer, target, secondaries, result))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            result.secondary_task = task
            if wait_for_secondary:
                await task
        return result

    async def _sync_secondaries(
        self,
        syncer: RegionSync,
        target: SyncTarget,
        regions: list[str],
        result: SyncResult,
    ) -> None:
        await self.sleep(self.secondary_start_delay)
        for index, region in enumerate(regions):
            if index:
                await self.sleep(self.inter_region_delay)
            try:
                result.regions[region] = await syncer.sync_region(target, region)
            except PipelineError as e:
                logger.warning(
                    f"Secondary region {region} failed for {target.provider}/{target.provider_product_id}: {e}"
                )
                result.regions[region] = RegionResult(region, False, error=str(e), error_code=e.code)
            except Exception as e:
                logger.exception(
                    f"Secondary region {region} crashed for {target.provider}/{target.provider_product_id}"
                )
                result.regions[region] = RegionResult(region, False, error=str(e), error_code="UNEXPECTED")

    async def drain(self) -> None:
        """Wait for in-flight secondary syncs."""
        if self._background:
            await asyncio.gather(*list(self._background))


# ============================================================
# Job processor (worker entry point)
# ============================================================

UserRegionLookup = Callable[[str | None], Awaitable[str | None]]


async def no_region_preference(user_id: str | None) -> str | None:
    return None


async def _update_mapping(mapping_id: int, **values: object) -> None:
    async with get_session() as session:
        mapping = await session.get(SizeMapping, mapping_id)
        if mapping is None:
            return
        for name, value in values.items():
            setattr(mapping, name, value)


class MarketJobProcessor:
    """Runs one queued job: mapping lookup, size resolution, region sync."""

    def __init__(
        self,
        orchestrator: MultiRegionOrchestrator,
        mappings: SizeMappingService,
        user_region_lookup: UserRegionLookup = no_region_preference,
    ):
        self.orchestrator = orchestrator
        self.mappings = mappings
        self.user_region_lookup = user_region_lookup

    async def __call__(self, job: MarketJob) -> SyncResult:
        async with get_session() as session:
            mapping = await self.mappings.get_or_create(session, job.provider, job.sku, job.size)
            mapping.last_sync_attempt_at = utcnow()

        if mapping.mapping_status != MappingStatus.OK.value or not mapping.provider_product_id:
            if mapping.suggested_product_id is None and mapping.mapping_status == MappingStatus.UNRESOLVED.value:
                try:
                    async with get_session() as session:
                        await self.mappings.suggest(
                            session, job.provider, job.sku, job.size, mapping.product_name
                        )
                except PipelineError as e:
                    logger.warning(f"Catalog suggestion failed for {job.provider}/{job.sku}: {e}")
            message = f"No approved {job.provider} mapping for {job.sku} UK {job.size} ({mapping.mapping_status})"
            await _update_mapping(mapping.id, last_sync_error=message)
            raise MappingUnresolved(message)

        try:
            provider_size = mapping.provider_size
            if provider_size is None:
                resolved = await self.mappings.resolve_size(mapping)
                provider_size = resolved.provider_size
                await _update_mapping(
                    mapping.id,
                    provider_size=resolved.provider_size,
                    provider_variant_id=resolved.provider_variant_id,
                )

            target = SyncTarget(
                provider=job.provider,
                sku=job.sku,
                provider_product_id=mapping.provider_product_id,
                provider_size=provider_size,
            )
            user_region = await self.user_region_lookup(job.user_id)
            result = await self.orchestrator.sync_product(target, user_region)
        except (NotFound, SizeMatchError) as e:
            await _update_mapping(
                mapping.id,
                mapping_status=MappingStatus.INVALID.value,
                last_sync_error=f"{e.code}: {e}",
            )
            raise
        except PipelineError as e:
            await _update_mapping(mapping.id, last_sync_error=f"{e.code}: {e}")
            raise

        await _update_mapping(mapping.id, last_sync_success_at=utcnow(), last_sync_error=None)
        return result

    async def drain(self) -> None:
        await self.orchestrator.drain()


def build_mapping_service(
    stockx: StockXClient | None = None,
    alias: AliasClient | None = None,
) -> SizeMappingService:
    stockx = stockx or get_stockx_client()
    alias = alias or get_alias_client()
    return SizeMappingService(
        searches={
            StockXRegionSync.provider: stockx_catalog_search(stockx),
            AliasRegionSync.provider: alias_catalog_search(alias),
        },
        variant_lookups={StockXRegionSync.provider: stockx_variant_lookup(stockx)},
    )


def build_job_processor(user_region_lookup: UserRegionLookup = no_region_preference) -> MarketJobProcessor:
    """Processor wired to the configured provider clients."""
    stockx = get_stockx_client()
    alias = get_alias_client()
    orchestrator = MultiRegionOrchestrator(
        {
            StockXRegionSync.provider: StockXRegionSync(stockx),
            AliasRegionSync.provider: AliasRegionSync(alias),
        }
    )
    return MarketJobProcessor(orchestrator, build_mapping_service(stockx, alias), user_region_lookup)
