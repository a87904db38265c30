"""FastAPI application entry point.

Market Data API - multi-provider resale price ingestion.
"""

import asyncio
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from market_data.routes import api_router
from market_data.schemas import ErrorDetail, ErrorResponse
from market_data.services.alias_client import close_alias_client
from market_data.services.market_store import run_latest_refresh
from market_data.services.snapshot_logger import flush_snapshot_writes
from market_data.services.stockx_client import close_stockx_client
from market_data.settings import get_settings
from market_data.stores.postgres import init_db, close_db, ping_db
from market_data.stores.redis import init_redis, close_redis

logger = logging.getLogger("uvicorn.error")


async def latest_refresh_loop(interval: int) -> None:
    """Rebuild the latest-price view on a fixed cadence."""
    while True:
        await asyncio.sleep(interval)
        try:
            await run_latest_refresh()
        except Exception:
            logger.exception("Periodic latest-price refresh failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    settings = get_settings()

    # Initialize database (skip in tests if no DB available)
    try:
        await init_db()
        await ping_db()
        logger.info("Postgres connected")
    except Exception:
        logger.exception("Postgres init failed")

    # Initialize Redis (skip in tests if no Redis available)
    try:
        await init_redis()
    except Exception:
        logger.exception("Redis init failed")

    refresher: asyncio.Task[None] | None = None
    if settings.latest_refresh_interval_seconds > 0:
        refresher = asyncio.create_task(latest_refresh_loop(settings.latest_refresh_interval_seconds))

    yield

    # Shutdown
    if refresher is not None:
        refresher.cancel()
        try:
            await refresher
        except asyncio.CancelledError:
            pass
    await flush_snapshot_writes()
    await close_stockx_client()
    await close_alias_client()
    await close_redis()
    await close_db()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Multi-provider resale market data API",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handler for structured error format
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler returning structured error format."""
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        body = ErrorResponse(
            error=ErrorDetail(
                code="INTERNAL_ERROR",
                message=str(exc) if settings.debug else "Internal server error",
            )
        )
        return JSONResponse(status_code=500, content=body.model_dump())

    # Health check endpoint
    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, bool]:
        """Health check endpoint."""
        return {"ok": True}

    # Include API routes
    app.include_router(api_router)

    return app


# Application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "market_data.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
