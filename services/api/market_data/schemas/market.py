"""Schemas for the market data endpoints (/v1/market/*)."""

from datetime import datetime

from pydantic import BaseModel, Field


class LatestPriceResponse(BaseModel):
    """Current price of one item in one region and currency."""

    provider: str
    provider_source: str = Field(alias="providerSource")
    sku: str | None
    size: str
    currency: str
    region: str
    is_consigned: bool = Field(alias="isConsigned")
    lowest_ask: str | None = Field(alias="lowestAsk", default=None)
    highest_bid: str | None = Field(alias="highestBid", default=None)
    last_sold: str | None = Field(alias="lastSold", default=None)
    market_price: str | None = Field(alias="marketPrice", default=None)
    as_of: datetime = Field(alias="asOf")

    model_config = {"populate_by_name": True}


class ItemRef(BaseModel):
    """A user's item: style code plus size."""

    sku: str = Field(min_length=1, max_length=50)
    size: str = Field(min_length=1, max_length=20)


class EnqueueJobRequest(BaseModel):
    provider: str = Field(pattern="^(stockx|alias)$")
    items: list[ItemRef] = Field(min_length=1, max_length=500)
    priority: int = Field(default=150, ge=0, le=1000)
    user_id: str | None = Field(alias="userId", default=None)

    model_config = {"populate_by_name": True}


class StaleScanRequest(BaseModel):
    provider: str = Field(pattern="^(stockx|alias)$")
    user_id: str = Field(alias="userId", min_length=1)
    items: list[ItemRef] = Field(default_factory=list, max_length=2000)

    model_config = {"populate_by_name": True}


class EnqueueResponse(BaseModel):
    created: int = 0
    bumped: int = 0
    unchanged: int = 0
    job_ids: list[int] = Field(alias="jobIds", default_factory=list)
    skipped_debounced: bool = Field(alias="skippedDebounced", default=False)

    model_config = {"populate_by_name": True}


class StaleScanResponse(BaseModel):
    accepted: bool
    items: int
