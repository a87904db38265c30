import pytest
from sqlalchemy import select

from market_data.models import RawSnapshot
from market_data.services.snapshot_logger import (
    flush_snapshot_writes,
    log_snapshot,
    schedule_snapshot,
    with_snapshot,
)
from market_data.stores.postgres import get_session


async def _snapshots() -> list[RawSnapshot]:
    async with get_session() as session:
        result = await session.execute(select(RawSnapshot).order_by(RawSnapshot.id))
        return list(result.scalars().all())


async def test_log_snapshot_writes_row(db) -> None:
    snapshot_id = await log_snapshot(
        "alias",
        "pricing_insights/availabilities",
        {"catalog_id": "c-1"},
        200,
        {"variants": []},
        duration_ms=42,
    )

    (row,) = await _snapshots()
    assert row.snapshot_id == snapshot_id
    assert row.provider == "alias"
    assert row.request_params == {"catalog_id": "c-1"}
    assert row.raw_payload == {"variants": []}
    assert row.http_status == 200
    assert row.duration_ms == 42
    assert row.error_message is None


async def test_log_snapshot_without_database_returns_none() -> None:
    assert await log_snapshot("stockx", "catalog/search", None, 200, {}) is None


async def test_with_snapshot_records_failure_and_reraises(db) -> None:
    async def failing():
        raise ConnectionError("reset by peer")

    with pytest.raises(ConnectionError):
        await with_snapshot("stockx", "catalog/products/p/market-data", failing, {"currencyCode": "GBP"})

    (row,) = await _snapshots()
    assert row.http_status is None
    assert row.raw_payload is None
    assert row.error_message == "ConnectionError: reset by peer"


async def test_with_snapshot_marks_non_2xx(db) -> None:
    async def not_found():
        return {"message": "no such product"}, 404

    (payload, status), ref = await with_snapshot("stockx", "catalog/products/p", not_found)

    assert status == 404
    (row,) = await _snapshots()
    assert row.snapshot_id == ref.snapshot_id
    assert row.error_message == "HTTP 404"


async def test_scheduled_writes_are_flushed(db) -> None:
    ids = [schedule_snapshot("alias", "catalog/search", None, 200, {"catalog_items": []}) for _ in range(3)]

    assert await flush_snapshot_writes() == 3

    rows = await _snapshots()
    assert sorted(r.snapshot_id for r in rows) == sorted(ids)
