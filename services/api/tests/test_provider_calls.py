import asyncio

import httpx
import pytest
from sqlalchemy import func, select

from market_data.models import RawSnapshot
from market_data.services.errors import NotFound, ProviderError, ProviderUnavailable, RateLimited
from market_data.services.provider_calls import RetryPolicy, call_provider, classify_status
from market_data.stores.postgres import get_session

POLICY = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=16.0, jitter=0.0, timeout=5.0)


class ScriptedCall:
    """Provider call returning (payload, status) pairs or raising, in order."""

    def __init__(self, *steps):
        self.steps = list(steps)
        self.calls = 0

    async def __call__(self, endpoint, params):
        step = self.steps[min(self.calls, len(self.steps) - 1)]
        self.calls += 1
        if isinstance(step, BaseException):
            raise step
        return step


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


async def _snapshot_count() -> int:
    async with get_session() as session:
        return (await session.execute(select(func.count()).select_from(RawSnapshot))).scalar_one()


def test_backoff_doubles_and_caps() -> None:
    policy = RetryPolicy(base_delay=1.0, max_delay=16.0, jitter=0.0)
    assert [policy.backoff(n) for n in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 16.0, 16.0]


def test_backoff_jitter_stays_in_band() -> None:
    policy = RetryPolicy(base_delay=4.0, jitter=0.2)
    for _ in range(50):
        assert 3.2 <= policy.backoff(1) <= 4.8


def test_classify_status() -> None:
    assert isinstance(classify_status("stockx", "x", 503, None), ProviderUnavailable)
    assert isinstance(classify_status("stockx", "x", 404, None), NotFound)
    limited = classify_status("stockx", "x", 429, {"retry_after": "7"})
    assert isinstance(limited, RateLimited)
    assert limited.retry_after == 7.0
    other = classify_status("stockx", "x", 400, None)
    assert type(other) is ProviderError
    assert other.retryable is False


async def test_retries_5xx_then_succeeds(db) -> None:
    call = ScriptedCall(({"error": "boom"}, 503), ({"error": "boom"}, 502), ([{"variantId": "v"}], 200))
    sleep = RecordingSleep()

    response = await call_provider("stockx", "catalog/products/p/market-data", {}, call, policy=POLICY, sleep=sleep)

    assert response.status == 200
    assert response.attempts == 3
    assert response.payload == [{"variantId": "v"}]
    assert response.snapshot_id is not None
    assert sleep.delays == [1.0, 2.0]
    # Every attempt is audited, failures included.
    assert await _snapshot_count() == 3


async def test_rate_limit_honors_retry_after(db) -> None:
    call = ScriptedCall(({"retry_after": 12}, 429), ({"ok": True}, 200))
    sleep = RecordingSleep()

    response = await call_provider("alias", "pricing_insights/availabilities", {}, call, policy=POLICY, sleep=sleep)

    assert response.attempts == 2
    assert sleep.delays == [12.0]


async def test_not_found_is_not_retried(db) -> None:
    call = ScriptedCall(({"message": "missing"}, 404))
    sleep = RecordingSleep()

    with pytest.raises(NotFound):
        await call_provider("stockx", "catalog/products/p", {}, call, policy=POLICY, sleep=sleep)

    assert call.calls == 1
    assert sleep.delays == []
    assert await _snapshot_count() == 1


async def test_gives_up_after_max_attempts(db) -> None:
    call = ScriptedCall(httpx.ConnectError("connection refused"))
    sleep = RecordingSleep()

    with pytest.raises(ProviderUnavailable):
        await call_provider("stockx", "catalog/search", {"query": "DD1391"}, call, policy=POLICY, sleep=sleep)

    assert call.calls == 3
    assert len(sleep.delays) == 2
    assert await _snapshot_count() == 3


async def test_timeout_is_retryable(db) -> None:
    async def slow(endpoint, params):
        await asyncio.sleep(1)
        return {}, 200

    policy = RetryPolicy(max_attempts=2, base_delay=0.0, jitter=0.0, timeout=0.01)

    with pytest.raises(ProviderUnavailable, match="timed out"):
        await call_provider("alias", "catalog/search", {}, slow, policy=policy, sleep=RecordingSleep())


async def test_snapshot_failure_does_not_break_the_call() -> None:
    # No database initialized: the audit write fails, the call still succeeds.
    response = await call_provider(
        "stockx", "catalog/search", {}, ScriptedCall(({"products": []}, 200)), policy=POLICY
    )
    assert response.status == 200
    assert response.snapshot_id is None
