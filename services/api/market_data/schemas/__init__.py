"""Pydantic schemas for API request/response validation."""

from market_data.schemas.common import ErrorDetail, ErrorResponse
from market_data.schemas.market import (
    EnqueueJobRequest,
    EnqueueResponse,
    ItemRef,
    LatestPriceResponse,
    StaleScanRequest,
    StaleScanResponse,
)

__all__ = [
    "ErrorDetail",
    "ErrorResponse",
    "EnqueueJobRequest",
    "EnqueueResponse",
    "ItemRef",
    "LatestPriceResponse",
    "StaleScanRequest",
    "StaleScanResponse",
]
