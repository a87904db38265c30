"""Market data endpoints.

GET  /v1/market/latest            - current price for one item
POST /v1/market/jobs              - enqueue fetches (dedupe + priority bump)
POST /v1/market/jobs/stale-scan   - background staleness refresh for a user

Routers are thin: call services for business logic.
"""

import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query

from market_data.schemas import (
    EnqueueJobRequest,
    EnqueueResponse,
    LatestPriceResponse,
    StaleScanRequest,
    StaleScanResponse,
)
from market_data.services.job_queue import enqueue_for_items, enqueue_stale_items
from market_data.services.market_store import get_latest_price
from market_data.stores.postgres import get_session

router = APIRouter()
logger = logging.getLogger("uvicorn.error")


@router.get("/latest", response_model=LatestPriceResponse)
async def latest_price(
    sku: str = Query(description="Style code", examples=["DD1391-100"]),
    size: str = Query(description="Size in the provider's size system", examples=["10"]),
    currency: str = Query(min_length=3, max_length=3, examples=["GBP", "USD"]),
    region: str = Query(min_length=2, max_length=2, examples=["UK", "EU", "US"]),
    provider: str | None = Query(default=None, examples=["stockx", "alias"]),
) -> LatestPriceResponse:
    """Latest price with the valuation rule applied (lowest ask, else highest bid)."""
    async with get_session() as session:
        price = await get_latest_price(session, sku, size, currency, region, provider)
    if price is None:
        raise HTTPException(
            status_code=404,
            detail=f"No market price for {sku} size {size} in {region.upper()}/{currency.upper()}",
        )
    return LatestPriceResponse.model_validate(price.to_dict())


@router.post("/jobs", response_model=EnqueueResponse)
async def enqueue_jobs(request: EnqueueJobRequest) -> EnqueueResponse:
    """Enqueue fetch jobs. A pending job for the same item is reused, never duplicated."""
    async with get_session() as session:
        result = await enqueue_for_items(
            session,
            [(item.sku, item.size) for item in request.items],
            request.provider,
            request.priority,
            request.user_id,
        )
    return EnqueueResponse(
        created=result.created,
        bumped=result.bumped,
        unchanged=result.unchanged,
        job_ids=result.job_ids,
    )


async def run_stale_scan(user_id: str, provider: str, items: list[tuple[str, str]]) -> None:
    try:
        async with get_session() as session:
            await enqueue_stale_items(session, user_id, provider, items)
    except Exception:
        logger.exception(f"Stale scan failed for user={user_id} provider={provider}")


@router.post("/jobs/stale-scan", response_model=StaleScanResponse, status_code=202)
async def stale_scan(request: StaleScanRequest, background_tasks: BackgroundTasks) -> StaleScanResponse:
    """Queue stale items for background refresh (debounced per user). Does not block."""
    items = [(item.sku, item.size) for item in request.items]
    background_tasks.add_task(run_stale_scan, request.user_id, request.provider, items)
    return StaleScanResponse(accepted=True, items=len(items))
