"""StockX catalog and market-data client.

Endpoints (v2 API):
- catalog/search?query=...                  -> {"products": [...]}
- catalog/products/{id}/variants             -> [{variantId, variantValue}, ...]
- catalog/products/{id}/market-data?currencyCode=GBP -> [{variantId, lowestAskAmount, ...}, ...]

Market data is priced per currency; the currency also selects the regional
order book (GBP -> UK, EUR -> EU, USD -> US). Prices are major units.
"""

from __future__ import annotations

import logging
from typing import Any

from market_data.services.contracts import (
    StockXProduct,
    StockXVariant,
    parse_stockx_search,
    parse_stockx_variants,
)
from market_data.services.provider_calls import (
    HttpProviderTransport,
    ProviderCall,
    ProviderResponse,
    RetryPolicy,
    call_provider,
)
from market_data.settings import get_settings
from market_data.stores.redis import get_catalog_search_cache, set_catalog_search_cache

logger = logging.getLogger("uvicorn.error")

PROVIDER = "stockx"

# Region -> currency of that order book
STOCKX_REGION_CURRENCY: dict[str, str] = {
    "UK": "GBP",
    "EU": "EUR",
    "US": "USD",
}


class StockXClient:
    """Typed StockX calls on top of a ProviderCall."""

    def __init__(self, call: ProviderCall, policy: RetryPolicy | None = None):
        self.call = call
        self.policy = policy

    async def _get(self, endpoint: str, params: dict[str, Any]) -> ProviderResponse:
        return await call_provider(PROVIDER, endpoint, params, self.call, policy=self.policy)

    async def search_catalog(self, query: str, limit: int = 10, use_cache: bool = True) -> list[StockXProduct]:
        """Search the StockX catalog (cached in Redis for 6 hours)."""
        if use_cache:
            try:
                cached = await get_catalog_search_cache(PROVIDER, query)
            except RuntimeError:
                cached = None
            if cached is not None:
                return [StockXProduct.model_validate(item) for item in cached]

        response = await self._get("catalog/search", {"query": query, "pageSize": limit})
        products = parse_stockx_search(response.payload)

        try:
            await set_catalog_search_cache(
                PROVIDER, query, [p.model_dump(by_alias=True) for p in products]
            )
        except RuntimeError:
            # Redis may be unavailable in tests/local minimal env.
            pass
        return products

    async def get_variants(self, product_id: str) -> list[StockXVariant]:
        response = await self._get(f"catalog/products/{product_id}/variants", {})
        return parse_stockx_variants(response.payload)

    async def get_market_data(self, product_id: str, currency_code: str) -> ProviderResponse:
        """Raw market data for every variant of a product in one currency."""
        return await self._get(
            f"catalog/products/{product_id}/market-data",
            {"currencyCode": currency_code.upper()},
        )


_transport: HttpProviderTransport | None = None


def get_stockx_client() -> StockXClient:
    """Client backed by the configured HTTP transport (token issued elsewhere)."""
    global _transport
    settings = get_settings()
    if _transport is None:
        headers = {"Accept": "application/json"}
        if settings.stockx_api_key:
            headers["x-api-key"] = settings.stockx_api_key
        if settings.stockx_access_token:
            headers["Authorization"] = f"Bearer {settings.stockx_access_token}"
        _transport = HttpProviderTransport(
            settings.stockx_api_base_url,
            headers=headers,
            timeout=settings.provider_timeout_seconds,
        )
    return StockXClient(_transport)


async def close_stockx_client() -> None:
    global _transport
    if _transport is not None:
        await _transport.close()
        _transport = None
