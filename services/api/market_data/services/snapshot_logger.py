"""Raw snapshot logger.

Every outbound provider call (each retry attempt included) is recorded in
market_raw_snapshots together with its timing and outcome. The logger writes in
its own session and never raises: a failing audit write must not poison the
caller's transaction or abort ingestion.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
import logging
import time
from typing import Any

from market_data.models.raw_snapshot import RawSnapshot, generate_snapshot_id
from market_data.services.clock import utcnow
from market_data.settings import get_settings
from market_data.stores.postgres import get_session

logger = logging.getLogger("uvicorn.error")

_pending_writes: set[asyncio.Task[str | None]] = set()


@dataclass(frozen=True)
class SnapshotRef:
    """Handle to a logged snapshot (snapshot_id is None if the write failed)."""

    snapshot_id: str | None
    requested_at: datetime


async def log_snapshot(
    provider: str,
    endpoint: str,
    params: dict[str, Any] | None,
    http_status: int | None,
    raw_payload: Any,
    error_text: str | None = None,
    duration_ms: int = 0,
    *,
    snapshot_id: str | None = None,
    requested_at: datetime | None = None,
) -> str | None:
    """Persist one raw snapshot. Returns its id, or None when the write failed."""
    snapshot_id = snapshot_id or generate_snapshot_id()
    try:
        async with get_session() as session:
            session.add(
                RawSnapshot(
                    snapshot_id=snapshot_id,
                    provider=provider,
                    endpoint=endpoint,
                    request_params=params,
                    http_status=http_status,
                    raw_payload=raw_payload,
                    error_message=error_text,
                    requested_at=requested_at or utcnow(),
                    duration_ms=duration_ms,
                )
            )
    except Exception:
        logger.exception(f"Raw snapshot write failed: provider={provider} endpoint={endpoint}")
        return None
    return snapshot_id


def schedule_snapshot(*args: Any, **kwargs: Any) -> str:
    """Fire-and-forget variant of log_snapshot. Returns the pre-generated id."""
    snapshot_id = kwargs.pop("snapshot_id", None) or generate_snapshot_id()
    task = asyncio.create_task(log_snapshot(*args, snapshot_id=snapshot_id, **kwargs))
    _pending_writes.add(task)
    task.add_done_callback(_pending_writes.discard)
    return snapshot_id


async def flush_snapshot_writes() -> int:
    """Wait for background snapshot writes. Returns how many were pending."""
    pending = list(_pending_writes)
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
    return len(pending)


async def _record(
    background: bool,
    provider: str,
    endpoint: str,
    params: dict[str, Any] | None,
    http_status: int | None,
    raw_payload: Any,
    error_text: str | None,
    duration_ms: int,
    requested_at: datetime,
) -> str | None:
    if background:
        return schedule_snapshot(
            provider,
            endpoint,
            params,
            http_status,
            raw_payload,
            error_text,
            duration_ms,
            requested_at=requested_at,
        )
    return await log_snapshot(
        provider,
        endpoint,
        params,
        http_status,
        raw_payload,
        error_text,
        duration_ms,
        requested_at=requested_at,
    )


async def with_snapshot(
    provider: str,
    endpoint: str,
    call: Callable[[], Awaitable[tuple[Any, int]]],
    context: dict[str, Any] | None = None,
) -> tuple[tuple[Any, int], SnapshotRef]:
    """Run a provider call and log its outcome.

    `call` returns (raw_payload, http_status). Failures are logged with the
    error text and then re-raised unchanged.
    """
    background = get_settings().snapshot_logging_background
    requested_at = utcnow()
    started = time.perf_counter()
    try:
        payload, status = await call()
    except Exception as e:
        duration_ms = int((time.perf_counter() - started) * 1000)
        error_text = f"{type(e).__name__}: {e}"
        await _record(
            background,
            provider,
            endpoint,
            context,
            getattr(e, "status", None),
            None,
            error_text,
            duration_ms,
            requested_at,
        )
        raise

    duration_ms = int((time.perf_counter() - started) * 1000)
    error_text = None if 200 <= status < 300 else f"HTTP {status}"
    snapshot_id = await _record(
        background,
        provider,
        endpoint,
        context,
        status,
        payload,
        error_text,
        duration_ms,
        requested_at,
    )
    return (payload, status), SnapshotRef(snapshot_id=snapshot_id, requested_at=requested_at)
