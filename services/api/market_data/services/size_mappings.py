"""Size mapping service: user item (sku + UK size) -> provider product and size.

Catalog matching produces suggestions only. A suggestion becomes usable for
ingestion after commit_mapping() records who approved it. Size resolution
(UK -> provider size, then variant id) runs lazily on the first sync after a
commit and is cached on the mapping row.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from market_data.models import MappingStatus, SizeMapping
from market_data.services.alias_client import AliasClient
from market_data.services.clock import utcnow
from market_data.services.errors import MappingUnresolved, NotFound, ValidationError
from market_data.services.size_matching import (
    Gender,
    canonical_size_label,
    convert_uk_size,
    detect_brand,
    detect_gender,
    resolve_variant,
)
from market_data.services.sku_matching import CatalogCandidate, CatalogSuggestion, suggest_catalog_match
from market_data.services.stockx_client import StockXClient

logger = logging.getLogger("uvicorn.error")

CatalogSearch = Callable[[str], Awaitable[list[CatalogCandidate]]]
VariantLookup = Callable[[str], Awaitable[list[tuple[str, str]]]]


def stockx_catalog_search(client: StockXClient) -> CatalogSearch:
    async def search(query: str) -> list[CatalogCandidate]:
        products = await client.search_catalog(query)
        return [
            CatalogCandidate(catalog_id=p.product_id, sku=p.style_id, name=p.title, brand=p.brand)
            for p in products
        ]

    return search


def alias_catalog_search(client: AliasClient) -> CatalogSearch:
    async def search(query: str) -> list[CatalogCandidate]:
        items = await client.search_catalog(query)
        return [
            CatalogCandidate(
                catalog_id=i.catalog_id, sku=i.sku, name=i.name, brand=i.brand, gender=i.gender
            )
            for i in items
        ]

    return search


def stockx_variant_lookup(client: StockXClient) -> VariantLookup:
    async def lookup(product_id: str) -> list[tuple[str, str]]:
        variants = await client.get_variants(product_id)
        return [(v.variant_id, v.variant_value) for v in variants if v.variant_value]

    return lookup


@dataclass(frozen=True)
class ResolvedSize:
    provider_size: str
    provider_variant_id: str | None
    confidence: float
    method: str


class SizeMappingService:
    """Suggest, commit and resolve provider mappings."""

    def __init__(
        self,
        searches: dict[str, CatalogSearch],
        variant_lookups: dict[str, VariantLookup] | None = None,
    ):
        self.searches = searches
        self.variant_lookups = variant_lookups or {}

    async def get_mapping(
        self,
        session: AsyncSession,
        provider: str,
        sku: str,
        uk_size: str,
    ) -> SizeMapping | None:
        result = await session.execute(
            select(SizeMapping).where(
                SizeMapping.provider == provider,
                SizeMapping.sku == sku,
                SizeMapping.uk_size == canonical_size_label(uk_size),
            )
        )
        return result.scalar_one_or_none()

    async def get_or_create(
        self,
        session: AsyncSession,
        provider: str,
        sku: str,
        uk_size: str,
        product_name: str | None = None,
        brand: str | None = None,
    ) -> SizeMapping:
        mapping = await self.get_mapping(session, provider, sku, uk_size)
        if mapping is None:
            mapping = SizeMapping(
                provider=provider,
                sku=sku,
                uk_size=canonical_size_label(uk_size),
                product_name=product_name,
                brand=brand,
                mapping_status=MappingStatus.UNRESOLVED.value,
            )
            session.add(mapping)
            await session.flush()
        else:
            if product_name and not mapping.product_name:
                mapping.product_name = product_name
            if brand and not mapping.brand:
                mapping.brand = brand
        return mapping

    def record_suggestion(self, mapping: SizeMapping, suggestion: CatalogSuggestion) -> SizeMapping:
        """Store a suggestion next to (never over) the committed mapping."""
        mapping.suggested_product_id = suggestion.catalog_id
        mapping.suggested_confidence = suggestion.confidence
        mapping.suggested_method = suggestion.method
        candidate = suggestion.candidate
        if candidate is not None:
            mapping.product_name = mapping.product_name or candidate.name
            mapping.brand = detect_brand(candidate.brand or mapping.brand, candidate.name).value
            mapping.gender = detect_gender(
                candidate.name or mapping.product_name,
                {"gender": candidate.gender} if candidate.gender else None,
            ).value
        return mapping

    async def suggest(
        self,
        session: AsyncSession,
        provider: str,
        sku: str,
        uk_size: str,
        product_name: str | None = None,
    ) -> tuple[SizeMapping, CatalogSuggestion]:
        """Search the provider catalog and record the best suggestion."""
        search = self.searches.get(provider)
        if search is None:
            raise ValidationError(f"No catalog search configured for provider {provider!r}")

        sku_results = await search(sku)
        suggestion = suggest_catalog_match(sku, product_name, sku_results)
        if not suggestion.resolved and product_name:
            name_results = await search(product_name)
            suggestion = suggest_catalog_match(sku, product_name, sku_results, name_results)

        mapping = await self.get_or_create(session, provider, sku, uk_size, product_name)
        self.record_suggestion(mapping, suggestion)
        await session.flush()
        logger.info(
            f"Mapping suggestion {provider}/{sku}/{mapping.uk_size}: "
            f"{suggestion.catalog_id} ({suggestion.method}, {suggestion.confidence})"
        )
        return mapping, suggestion

    async def commit_mapping(
        self,
        session: AsyncSession,
        provider: str,
        sku: str,
        uk_size: str,
        *,
        approved_by: str,
        product_id: str | None = None,
    ) -> SizeMapping:
        """Approve a mapping: the suggestion, or an explicit product id."""
        if not approved_by:
            raise ValidationError("approved_by is required to commit a mapping")

        mapping = await self.get_mapping(session, provider, sku, uk_size)
        if mapping is None:
            if product_id is None:
                raise NotFound(f"No mapping for {provider}/{sku}/{uk_size}")
            mapping = await self.get_or_create(session, provider, sku, uk_size)

        chosen = product_id or mapping.suggested_product_id
        if not chosen:
            raise MappingUnresolved(f"No suggestion to approve for {provider}/{sku}/{uk_size}")

        if chosen == mapping.suggested_product_id:
            mapping.match_confidence = mapping.suggested_confidence
            mapping.match_method = mapping.suggested_method
        else:
            mapping.match_confidence = 1.0
            mapping.match_method = "manual"

        if mapping.provider_product_id != chosen:
            mapping.provider_size = None
            mapping.provider_variant_id = None
        mapping.provider_product_id = chosen
        mapping.mapping_status = MappingStatus.OK.value
        mapping.approved_by = approved_by
        mapping.approved_at = utcnow()
        mapping.last_sync_error = None
        await session.flush()
        logger.info(f"Mapping committed {provider}/{sku}/{mapping.uk_size} -> {chosen} by {approved_by}")
        return mapping

    async def resolve_size(self, mapping: SizeMapping) -> ResolvedSize:
        """UK size -> provider size (and variant id where the provider has one).

        Raises:
            SizeMatchError: the size cannot be converted or matched to a variant.
        """
        brand = detect_brand(mapping.brand, mapping.product_name)
        try:
            gender = Gender(mapping.gender) if mapping.gender else detect_gender(mapping.product_name)
        except ValueError:
            gender = detect_gender(mapping.product_name)

        conversion = convert_uk_size(mapping.uk_size, brand, gender)
        variant_id = None
        lookup = self.variant_lookups.get(mapping.provider)
        if lookup is not None and mapping.provider_product_id:
            variants = await lookup(mapping.provider_product_id)
            variant_id = resolve_variant(variants, conversion.target_size).variant_id

        return ResolvedSize(
            provider_size=conversion.target_size,
            provider_variant_id=variant_id,
            confidence=conversion.confidence,
            method=conversion.method,
        )
