"""Admin endpoints for the job worker, latest-price view and mappings.

These endpoints are intended for cron triggers and admin operations.
In production, put them behind authentication (API key or admin token).
"""

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select

from market_data.models import MarketJob, SizeMapping
from market_data.schemas import ErrorDetail
from market_data.services.errors import (
    ConflictError,
    MappingUnresolved,
    NotFound,
    PipelineError,
    RateLimited,
    ValidationError,
)
from market_data.services.market_store import run_latest_refresh
from market_data.services.orchestrator import build_job_processor, build_mapping_service
from market_data.services.worker import run_worker
from market_data.stores.postgres import get_session

router = APIRouter()
logger = logging.getLogger("uvicorn.error")


def _http_error(e: PipelineError) -> HTTPException:
    if isinstance(e, NotFound):
        status = 404
    elif isinstance(e, (ConflictError, MappingUnresolved)):
        status = 409
    elif isinstance(e, ValidationError):
        status = 422
    elif isinstance(e, RateLimited):
        status = 429
    else:
        status = 502
    return HTTPException(
        status_code=status,
        detail=ErrorDetail.from_pipeline_error(e).model_dump(exclude_none=True),
    )


def _mapping_dict(mapping: SizeMapping) -> dict[str, Any]:
    return {
        "provider": mapping.provider,
        "sku": mapping.sku,
        "ukSize": mapping.uk_size,
        "productName": mapping.product_name,
        "brand": mapping.brand,
        "gender": mapping.gender,
        "status": mapping.mapping_status,
        "providerProductId": mapping.provider_product_id,
        "providerVariantId": mapping.provider_variant_id,
        "providerSize": mapping.provider_size,
        "matchConfidence": mapping.match_confidence,
        "matchMethod": mapping.match_method,
        "approvedBy": mapping.approved_by,
        "approvedAt": mapping.approved_at.isoformat() if mapping.approved_at else None,
        "suggestedProductId": mapping.suggested_product_id,
        "suggestedConfidence": mapping.suggested_confidence,
        "suggestedMethod": mapping.suggested_method,
        "lastSyncSuccessAt": mapping.last_sync_success_at.isoformat() if mapping.last_sync_success_at else None,
        "lastSyncError": mapping.last_sync_error,
    }


# ============================================================
# Worker / view
# ============================================================


class WorkerRunRequest(BaseModel):
    budget_seconds: float | None = Field(alias="budgetSeconds", default=None, gt=0, le=900)
    max_jobs: int | None = Field(alias="maxJobs", default=None, ge=1, le=500)

    model_config = {"populate_by_name": True}


@router.post("/worker/run")
async def trigger_worker(request: WorkerRunRequest | None = None) -> dict[str, Any]:
    """Drain the queue once within the time budget (cron entry point)."""
    request = request or WorkerRunRequest()
    stats = await run_worker(
        build_job_processor(),
        budget_seconds=request.budget_seconds,
        max_jobs=request.max_jobs,
    )
    return {"success": True, "stats": stats.to_dict()}


@router.post("/latest/refresh")
async def trigger_latest_refresh() -> dict[str, Any]:
    """Rebuild the latest-price view now."""
    groups = await run_latest_refresh()
    return {"refreshed": groups is not None, "groups": groups}


@router.get("/jobs")
async def list_jobs(
    status: str | None = Query(default=None, pattern="^(pending|processing|done|failed)$"),
    limit: int = Query(default=50, ge=1, le=500),
) -> dict[str, Any]:
    stmt = select(MarketJob).order_by(MarketJob.id.desc()).limit(limit)
    if status:
        stmt = stmt.where(MarketJob.status == status)
    async with get_session() as session:
        jobs = (await session.execute(stmt)).scalars().all()
    return {
        "jobs": [
            {
                "id": j.id,
                "provider": j.provider,
                "sku": j.sku,
                "size": j.size,
                "priority": j.priority,
                "status": j.status,
                "attempts": j.attempts,
                "lastError": j.last_error,
            }
            for j in jobs
        ]
    }


# ============================================================
# Mappings (suggest -> commit)
# ============================================================


class MappingSuggestRequest(BaseModel):
    provider: str = Field(pattern="^(stockx|alias)$")
    sku: str = Field(min_length=1)
    uk_size: str = Field(alias="ukSize", min_length=1)
    product_name: str | None = Field(alias="productName", default=None)

    model_config = {"populate_by_name": True}


class MappingCommitRequest(BaseModel):
    provider: str = Field(pattern="^(stockx|alias)$")
    sku: str = Field(min_length=1)
    uk_size: str = Field(alias="ukSize", min_length=1)
    approved_by: str = Field(alias="approvedBy", min_length=1)
    product_id: str | None = Field(alias="productId", default=None)

    model_config = {"populate_by_name": True}


@router.post("/mappings/suggest")
async def suggest_mapping(request: MappingSuggestRequest) -> dict[str, Any]:
    """Search the provider catalog and store a suggestion (not usable until committed)."""
    service = build_mapping_service()
    try:
        async with get_session() as session:
            mapping, suggestion = await service.suggest(
                session, request.provider, request.sku, request.uk_size, request.product_name
            )
    except PipelineError as e:
        raise _http_error(e) from e
    return {
        "suggestion": {
            "productId": suggestion.catalog_id,
            "confidence": suggestion.confidence,
            "method": suggestion.method,
        },
        "mapping": _mapping_dict(mapping),
    }


@router.post("/mappings/commit")
async def commit_mapping(request: MappingCommitRequest) -> dict[str, Any]:
    """Approve a suggestion (or an explicit product id) for ingestion."""
    service = build_mapping_service()
    try:
        async with get_session() as session:
            mapping = await service.commit_mapping(
                session,
                request.provider,
                request.sku,
                request.uk_size,
                approved_by=request.approved_by,
                product_id=request.product_id,
            )
    except PipelineError as e:
        raise _http_error(e) from e
    return {"mapping": _mapping_dict(mapping)}


@router.get("/mappings")
async def list_mappings(
    provider: str | None = Query(default=None),
    sku: str | None = Query(default=None),
    status: str | None = Query(default=None, pattern="^(ok|unresolved|invalid)$"),
    limit: int = Query(default=100, ge=1, le=1000),
) -> dict[str, Any]:
    """Mappings, broken ones included, so failing items stay visible."""
    stmt = select(SizeMapping).order_by(SizeMapping.id.desc()).limit(limit)
    if provider:
        stmt = stmt.where(SizeMapping.provider == provider)
    if sku:
        stmt = stmt.where(SizeMapping.sku == sku)
    if status:
        stmt = stmt.where(SizeMapping.mapping_status == status)
    async with get_session() as session:
        mappings = (await session.execute(stmt)).scalars().all()
    return {"mappings": [_mapping_dict(m) for m in mappings]}
