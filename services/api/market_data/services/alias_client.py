"""Alias (GOAT) catalog and pricing-insights client.

Alias quotes every region's order book in USD cents (as strings). The region
id selects the marketplace, not the currency:

    "1" -> US, "2" -> EU, "3" -> UK

Consigned and non-consigned availabilities are separate requests.
"""

from __future__ import annotations

import logging
from typing import Any

from market_data.services.contracts import AliasCatalogItem, parse_alias_catalog_search
from market_data.services.provider_calls import (
    HttpProviderTransport,
    ProviderCall,
    ProviderResponse,
    RetryPolicy,
    call_provider,
)
from market_data.services.size_matching import canonical_size_label
from market_data.settings import get_settings
from market_data.stores.redis import get_catalog_search_cache, set_catalog_search_cache

logger = logging.getLogger("uvicorn.error")

PROVIDER = "alias"

ALIAS_CURRENCY = "USD"

ALIAS_REGION_IDS: dict[str, str] = {
    "US": "1",
    "EU": "2",
    "UK": "3",
}

CONDITION_NEW = "PRODUCT_CONDITION_NEW"
PACKAGING_GOOD = "PACKAGING_CONDITION_GOOD_CONDITION"


class AliasClient:
    """Typed Alias calls on top of a ProviderCall."""

    def __init__(self, call: ProviderCall, policy: RetryPolicy | None = None):
        self.call = call
        self.policy = policy

    async def _get(self, endpoint: str, params: dict[str, Any]) -> ProviderResponse:
        return await call_provider(PROVIDER, endpoint, params, self.call, policy=self.policy)

    async def search_catalog(self, query: str, limit: int = 10, use_cache: bool = True) -> list[AliasCatalogItem]:
        """Search the Alias catalog (cached in Redis for 6 hours)."""
        if use_cache:
            try:
                cached = await get_catalog_search_cache(PROVIDER, query)
            except RuntimeError:
                cached = None
            if cached is not None:
                return [AliasCatalogItem.model_validate(item) for item in cached]

        response = await self._get("catalog", {"query": query, "limit": limit})
        items = parse_alias_catalog_search(response.payload)

        try:
            await set_catalog_search_cache(PROVIDER, query, [i.model_dump() for i in items])
        except RuntimeError:
            # Redis may be unavailable in tests/local minimal env.
            pass
        return items

    async def list_availabilities(
        self,
        catalog_id: str,
        region_id: str,
        consigned: bool = False,
    ) -> ProviderResponse:
        """Per-size availability for one region's order book."""
        return await self._get(
            f"pricing_insights/availabilities/{catalog_id}",
            {"region_id": region_id, "consigned": consigned},
        )

    async def get_recent_sales(
        self,
        catalog_id: str,
        size: Any,
        region_id: str,
        limit: int = 100,
    ) -> ProviderResponse:
        return await self._get(
            "pricing_insights/recent_sales",
            {
                "catalog_id": catalog_id,
                "size": canonical_size_label(size),
                "region_id": region_id,
                "limit": limit,
                "product_condition": CONDITION_NEW,
                "packaging_condition": PACKAGING_GOOD,
            },
        )

    async def get_offer_histogram(
        self,
        catalog_id: str,
        size: Any,
        region_id: str,
        consigned: bool = False,
    ) -> ProviderResponse:
        return await self._get(
            "pricing_insights/offer_histogram",
            {
                "catalog_id": catalog_id,
                "size": canonical_size_label(size),
                "region_id": region_id,
                "consigned": consigned,
                "product_condition": CONDITION_NEW,
                "packaging_condition": PACKAGING_GOOD,
            },
        )


_transport: HttpProviderTransport | None = None


def get_alias_client() -> AliasClient:
    """Client backed by the configured HTTP transport (PAT issued elsewhere)."""
    global _transport
    settings = get_settings()
    if _transport is None:
        headers = {"Accept": "application/json"}
        if settings.alias_pat:
            headers["Authorization"] = f"Bearer {settings.alias_pat}"
        _transport = HttpProviderTransport(
            settings.alias_api_base_url,
            headers=headers,
            timeout=settings.provider_timeout_seconds,
        )
    return AliasClient(_transport)


async def close_alias_client() -> None:
    global _transport
    if _transport is not None:
        await _transport.close()
        _transport = None
