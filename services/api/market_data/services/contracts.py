"""Typed raw-payload contracts for provider responses.

Every provider payload is parsed into these models before any mapper logic
runs. Two levels of failure:

- Envelope: the payload is not the expected container (e.g. not a list, or
  no `variants` array). Raises pipeline ValidationError; nothing is ingested.
- Entry: a single variant/sale/bin is malformed. The entry is dropped and
  logged; the rest of the batch still ingests.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
import logging
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from market_data.services.errors import ValidationError

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T", bound=BaseModel)


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class _Contract(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# ============================================================
# StockX
# ============================================================


class StockXChannelData(_Contract):
    """Per-channel (standard / flex / direct) market block. Major units."""

    lowest_ask: Decimal | None = Field(default=None, alias="lowestAsk")
    highest_bid: Decimal | None = Field(default=None, alias="highestBidAmount")
    sell_faster: Decimal | None = Field(default=None, alias="sellFaster")
    earn_more: Decimal | None = Field(default=None, alias="earnMore")

    blank_as_none = field_validator("lowest_ask", "highest_bid", "sell_faster", "earn_more", mode="before")(
        _blank_to_none
    )

    @property
    def has_data(self) -> bool:
        return any(v is not None for v in (self.lowest_ask, self.sell_faster, self.earn_more))


class StockXMarketVariant(_Contract):
    """One entry of GET /catalog/products/{id}/market-data."""

    variant_id: str = Field(alias="variantId", min_length=1)
    variant_value: str | None = Field(default=None, alias="variantValue")
    size: str | None = None
    lowest_ask: Decimal | None = Field(default=None, alias="lowestAskAmount")
    highest_bid: Decimal | None = Field(default=None, alias="highestBidAmount")
    last_sale: Decimal | None = Field(default=None, alias="lastSaleAmount")
    standard: StockXChannelData | None = Field(default=None, alias="standardMarketData")
    flex: StockXChannelData | None = Field(default=None, alias="flexMarketData")
    direct: StockXChannelData | None = Field(default=None, alias="directMarketData")

    blank_as_none = field_validator("lowest_ask", "highest_bid", "last_sale", mode="before")(_blank_to_none)

    @field_validator("size", "variant_value", mode="before")
    @classmethod
    def _size_to_str(cls, v: Any) -> Any:
        if isinstance(v, (int, float)):
            return str(v)
        return _blank_to_none(v)


class StockXVariant(_Contract):
    """One entry of GET /catalog/products/{id}/variants."""

    variant_id: str = Field(alias="variantId", min_length=1)
    variant_value: str | None = Field(default=None, alias="variantValue")

    @field_validator("variant_value", mode="before")
    @classmethod
    def _value_to_str(cls, v: Any) -> Any:
        if isinstance(v, (int, float)):
            return str(v)
        return _blank_to_none(v)


class StockXProduct(_Contract):
    product_id: str = Field(alias="productId", min_length=1)
    style_id: str | None = Field(default=None, alias="styleId")
    title: str | None = None
    brand: str | None = None


# ============================================================
# Alias
# ============================================================


class AliasAvailability(_Contract):
    """Availability block. All prices are integer cents encoded as strings."""

    lowest_listing_price_cents: int | None = None
    highest_offer_price_cents: int | None = None
    last_sold_listing_price_cents: int | None = None
    global_indicator_price_cents: int | None = None
    number_of_listings: int | None = None
    number_of_offers: int | None = None

    blank_as_none = field_validator(
        "lowest_listing_price_cents",
        "highest_offer_price_cents",
        "last_sold_listing_price_cents",
        "global_indicator_price_cents",
        mode="before",
    )(_blank_to_none)


class AliasPricingVariant(_Contract):
    size: float
    size_unit: str | None = None
    product_condition: str
    packaging_condition: str
    consigned: bool = False
    availability: AliasAvailability | None = None


class AliasRecentSale(_Contract):
    purchased_at: datetime
    price_cents: int
    size: float
    consigned: bool = False
    catalog_id: str | None = None


class AliasHistogramBin(_Contract):
    offer_price_cents: int
    count: int


class AliasCatalogItem(_Contract):
    catalog_id: str = Field(min_length=1)
    name: str | None = None
    sku: str | None = None
    brand: str | None = None
    gender: str | None = None


# ============================================================
# Parsing helpers
# ============================================================


def _parse_entries(entries: list[Any], model: type[T], label: str) -> list[T]:
    parsed: list[T] = []
    for index, entry in enumerate(entries):
        try:
            parsed.append(model.model_validate(entry))
        except PydanticValidationError as e:
            logger.warning(f"{label}: dropping malformed entry #{index}: {e.errors()[:3]}")
    return parsed


def _require_list(payload: Any, key: str | None, label: str) -> list[Any]:
    container = payload
    if key is not None:
        if not isinstance(payload, dict):
            raise ValidationError(f"{label}: expected object with '{key}', got {type(payload).__name__}")
        container = payload.get(key)
    if not isinstance(container, list):
        raise ValidationError(f"{label}: expected list, got {type(container).__name__}")
    return container


def parse_stockx_market_data(payload: Any) -> list[StockXMarketVariant]:
    """Market-data endpoint returns a bare list (older shape: {"variants": [...]})."""
    if isinstance(payload, dict) and "variants" in payload:
        payload = payload["variants"]
    entries = _require_list(payload, None, "stockx market_data")
    return _parse_entries(entries, StockXMarketVariant, "stockx market_data")


def parse_stockx_variants(payload: Any) -> list[StockXVariant]:
    if isinstance(payload, dict) and "variants" in payload:
        payload = payload["variants"]
    entries = _require_list(payload, None, "stockx variants")
    return _parse_entries(entries, StockXVariant, "stockx variants")


def parse_stockx_search(payload: Any) -> list[StockXProduct]:
    entries = _require_list(payload, "products", "stockx search")
    return _parse_entries(entries, StockXProduct, "stockx search")


def parse_alias_availabilities(payload: Any) -> list[AliasPricingVariant]:
    entries = _require_list(payload, "variants", "alias availabilities")
    return _parse_entries(entries, AliasPricingVariant, "alias availabilities")


def parse_alias_recent_sales(payload: Any) -> list[AliasRecentSale]:
    entries = _require_list(payload, "recent_sales", "alias recent_sales")
    return _parse_entries(entries, AliasRecentSale, "alias recent_sales")


def parse_alias_offer_histogram(payload: Any) -> list[AliasHistogramBin]:
    if not isinstance(payload, dict) or not isinstance(payload.get("offer_histogram"), dict):
        raise ValidationError("alias offer_histogram: expected object with 'offer_histogram'")
    entries = _require_list(payload["offer_histogram"], "bins", "alias offer_histogram")
    return _parse_entries(entries, AliasHistogramBin, "alias offer_histogram")


def parse_alias_catalog_search(payload: Any) -> list[AliasCatalogItem]:
    entries = _require_list(payload, "catalog_items", "alias catalog")
    return _parse_entries(entries, AliasCatalogItem, "alias catalog")
