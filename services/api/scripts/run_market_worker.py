#!/usr/bin/env python3
"""Market job worker for Railway Cron.

Schedule:
- Run every few minutes in Railway Cron Jobs.

Behavior:
- Optionally enqueue a background staleness scan for the items listed in
  STALE_SCAN_ITEMS (debounced per user, so frequent runs are cheap).
- Drain the market job queue within WORKER_BUDGET_SECONDS, highest priority first.
- Rebuild the latest-price view when at least one job succeeded.

Run (local / Railway):
  cd services/api
  python -m scripts.run_market_worker

Optional env vars:
  WORKER_BUDGET_SECONDS=240
  WORKER_MAX_JOBS=50
  STALE_SCAN_USER="cron"
  STALE_SCAN_PROVIDER="stockx"
  STALE_SCAN_ITEMS="DD1391-100:9,CW2288-111:8.5"
"""

import asyncio
import os
import sys


# Ensure imports work when executed as a script/module
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from market_data.services.alias_client import close_alias_client  # noqa: E402
from market_data.services.job_queue import enqueue_stale_items  # noqa: E402
from market_data.services.orchestrator import build_job_processor  # noqa: E402
from market_data.services.stockx_client import close_stockx_client  # noqa: E402
from market_data.services.worker import run_worker  # noqa: E402
from market_data.stores.postgres import close_db, get_session, init_db, ping_db  # noqa: E402
from market_data.stores.redis import close_redis, init_redis  # noqa: E402


def _parse_items_env(name: str) -> list[tuple[str, str]]:
    raw = os.getenv(name, "")
    items: list[tuple[str, str]] = []
    for part in raw.split(","):
        sku, _, size = part.strip().partition(":")
        if sku and size:
            items.append((sku.strip(), size.strip()))
    return items


def _optional_float_env(name: str) -> float | None:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else None


def _optional_int_env(name: str) -> int | None:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else None


async def main() -> None:
    # Initialize shared connections (same as API lifespan, but for a one-off cron run)
    await init_db()
    await ping_db()
    try:
        await init_redis()
    except Exception:
        # Cron can still run without Redis (no catalog cache, no cross-instance refresh lock).
        pass

    try:
        scan_items = _parse_items_env("STALE_SCAN_ITEMS")
        scan = None
        if scan_items:
            async with get_session() as session:
                result = await enqueue_stale_items(
                    session,
                    os.getenv("STALE_SCAN_USER", "cron"),
                    os.getenv("STALE_SCAN_PROVIDER", "stockx"),
                    scan_items,
                )
            scan = {
                "debounced": result.skipped_debounced,
                "stale": result.stale_items,
                "created": result.created,
                "bumped": result.bumped,
            }

        stats = await run_worker(
            build_job_processor(),
            budget_seconds=_optional_float_env("WORKER_BUDGET_SECONDS"),
            max_jobs=_optional_int_env("WORKER_MAX_JOBS"),
        )

        # Final output for Railway logs (single JSON-ish blob)
        print({"ok": True, "stale_scan": scan, "worker": stats.to_dict()})
    finally:
        await close_stockx_client()
        await close_alias_client()
        await close_redis()
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())
