"""API routes."""

from fastapi import APIRouter

from market_data.routes import admin, market

api_router = APIRouter()

# Market data read path and job intake
api_router.include_router(market.router, prefix="/v1/market", tags=["market"])

# Admin endpoints (worker, latest view, mappings)
api_router.include_router(admin.router, prefix="/v1/admin", tags=["admin"])
