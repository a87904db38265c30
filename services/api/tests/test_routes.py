"""Tests for /v1/market and /v1/admin endpoints against a SQLite database."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient

from market_data.main import app
from market_data.schemas import ErrorDetail, ErrorResponse
from market_data.services.errors import MappingUnresolved, RateLimited
from market_data.services.mappers import CanonicalRecord
from market_data.services.market_store import insert_records, refresh_latest_prices
from market_data.services.size_mappings import SizeMappingService
from market_data.services.sku_matching import CatalogCandidate
from market_data.stores.postgres import get_session


@pytest.fixture
async def client(db):
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


async def _seed_price() -> None:
    async with get_session() as session:
        await insert_records(
            session,
            [
                CanonicalRecord(
                    provider="stockx",
                    provider_source="stockx_market_data",
                    provider_product_id="p-1",
                    sku="DD1391-100",
                    size_key="10",
                    currency_code="GBP",
                    region_code="UK",
                    snapshot_at=datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc),
                    lowest_ask=None,
                    highest_bid=Decimal("97.00"),
                    last_sale_price=Decimal("110.00"),
                )
            ],
        )
        await refresh_latest_prices(session)


async def test_latest_price(client: AsyncClient) -> None:
    await _seed_price()

    response = await client.get(
        "/v1/market/latest",
        params={"sku": "DD1391-100", "size": "10.0", "currency": "gbp", "region": "uk"},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["provider"] == "stockx"
    assert data["lowestAsk"] is None
    assert data["highestBid"] == "97.00"
    assert data["marketPrice"] == "97.00"
    assert data["lastSold"] == "110.00"
    assert data["isConsigned"] is False


async def test_latest_price_not_found(client: AsyncClient) -> None:
    response = await client.get(
        "/v1/market/latest",
        params={"sku": "DD1391-100", "size": "10", "currency": "USD", "region": "US"},
    )
    assert response.status_code == 404


async def test_enqueue_jobs(client: AsyncClient) -> None:
    body = {
        "provider": "stockx",
        "items": [{"sku": "DD1391-100", "size": "9"}, {"sku": "DD1391-100", "size": "9.0"}],
        "priority": 200,
        "userId": "u1",
    }

    response = await client.post("/v1/market/jobs", json=body)

    assert response.status_code == 200
    data = response.json()
    assert data["created"] == 1
    assert data["unchanged"] == 1
    assert len(set(data["jobIds"])) == 1

    listing = await client.get("/v1/admin/jobs", params={"status": "pending"})
    (job,) = listing.json()["jobs"]
    assert job["priority"] == 200
    assert job["size"] == "9"


async def test_enqueue_rejects_unknown_provider(client: AsyncClient) -> None:
    response = await client.post(
        "/v1/market/jobs", json={"provider": "goat", "items": [{"sku": "A", "size": "9"}]}
    )
    assert response.status_code == 422


async def test_stale_scan_accepted(client: AsyncClient) -> None:
    response = await client.post(
        "/v1/market/jobs/stale-scan",
        json={"provider": "alias", "userId": "u1", "items": [{"sku": "A", "size": "9"}]},
    )
    assert response.status_code == 202
    assert response.json() == {"accepted": True, "items": 1}

    listing = await client.get("/v1/admin/jobs")
    (job,) = listing.json()["jobs"]
    assert job["provider"] == "alias"
    assert job["priority"] == 100


async def test_mapping_suggest_and_commit(client: AsyncClient, monkeypatch: pytest.MonkeyPatch) -> None:
    from market_data.routes import admin as admin_routes

    async def search(query: str) -> list[CatalogCandidate]:
        return [CatalogCandidate(catalog_id="c-1", sku="DD1391-100", name="Nike Dunk Low Panda", brand="Nike")]

    monkeypatch.setattr(admin_routes, "build_mapping_service", lambda: SizeMappingService({"alias": search}))

    suggested = await client.post(
        "/v1/admin/mappings/suggest", json={"provider": "alias", "sku": "DD1391-100", "ukSize": "9"}
    )
    assert suggested.status_code == 200
    assert suggested.json()["suggestion"] == {"productId": "c-1", "confidence": 1.0, "method": "exact_sku"}
    assert suggested.json()["mapping"]["status"] == "unresolved"

    committed = await client.post(
        "/v1/admin/mappings/commit",
        json={"provider": "alias", "sku": "DD1391-100", "ukSize": "9", "approvedBy": "ops"},
    )
    assert committed.status_code == 200
    mapping = committed.json()["mapping"]
    assert mapping["status"] == "ok"
    assert mapping["providerProductId"] == "c-1"

    listing = await client.get("/v1/admin/mappings", params={"status": "ok"})
    assert len(listing.json()["mappings"]) == 1


async def test_mapping_commit_without_suggestion(client: AsyncClient, monkeypatch: pytest.MonkeyPatch) -> None:
    from market_data.routes import admin as admin_routes

    monkeypatch.setattr(admin_routes, "build_mapping_service", lambda: SizeMappingService({}))

    response = await client.post(
        "/v1/admin/mappings/commit",
        json={"provider": "stockx", "sku": "DD1391-100", "ukSize": "9", "approvedBy": "ops"},
    )
    assert response.status_code == 404
    detail = response.json()["detail"]
    assert detail["code"] == "NOT_FOUND"
    assert detail["retryable"] is False


async def test_worker_run(client: AsyncClient, monkeypatch: pytest.MonkeyPatch) -> None:
    from market_data.routes import admin as admin_routes

    processed = []

    async def processor(job):
        processed.append((job.provider, job.sku, job.size))

    monkeypatch.setattr(admin_routes, "build_job_processor", lambda: processor)
    await client.post(
        "/v1/market/jobs", json={"provider": "stockx", "items": [{"sku": "DD1391-100", "size": "9"}]}
    )

    response = await client.post("/v1/admin/worker/run", json={"budgetSeconds": 30, "maxJobs": 5})

    assert response.status_code == 200
    stats = response.json()["stats"]
    assert stats["jobs_selected"] == 1
    assert stats["jobs_succeeded"] == 1
    assert processed == [("stockx", "DD1391-100", "9")]


async def test_latest_refresh(client: AsyncClient) -> None:
    await _seed_price()
    response = await client.post("/v1/admin/latest/refresh")
    assert response.json() == {"refreshed": True, "groups": 1}


def test_error_detail_from_pipeline_error() -> None:
    detail = ErrorDetail.from_pipeline_error(RateLimited("slow down", retry_after=30))
    assert detail.model_dump(exclude_none=True) == {
        "code": "RATE_LIMITED",
        "message": "slow down",
        "retryable": True,
        "detail": {"status": 429, "retryAfter": 30},
    }

    response = ErrorResponse(error=ErrorDetail.from_pipeline_error(MappingUnresolved("no suggestion")))
    assert response.model_dump()["error"] == {
        "code": "MAPPING_UNRESOLVED",
        "message": "no suggestion",
        "retryable": False,
        "detail": None,
    }
