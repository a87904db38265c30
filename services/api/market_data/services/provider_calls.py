"""Resilient provider calls.

The pipeline talks to marketplaces through one uniform shape:

    call(endpoint, params) -> (raw_payload, http_status)

`call_provider` wraps such a function with:
- a per-call timeout (asyncio.wait_for)
- a raw snapshot for every attempt
- status classification into the error taxonomy
- a bounded retry loop: 429 honors the provider's retry-after hint, 5xx /
  network errors / timeouts back off exponentially (base 1s, cap 16s, +/-20% jitter)

`HttpProviderTransport` is the shipped httpx adapter producing such a call from
a base URL and an already-issued token.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
import logging
import random
from typing import Any

import httpx

from market_data.services.errors import (
    NotFound,
    ProviderError,
    ProviderUnavailable,
    RateLimited,
)
from market_data.services.snapshot_logger import with_snapshot
from market_data.settings import get_settings

logger = logging.getLogger("uvicorn.error")

ProviderCall = Callable[[str, dict[str, Any]], Awaitable[tuple[Any, int]]]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 16.0
    jitter: float = 0.2
    timeout: float = 30.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        settings = get_settings()
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            jitter=settings.retry_jitter,
            timeout=settings.provider_timeout_seconds,
        )

    def backoff(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= 1 + random.uniform(-self.jitter, self.jitter)
        return max(delay, 0.0)


@dataclass(frozen=True)
class ProviderResponse:
    """Successful provider response plus its audit trail."""

    payload: Any
    status: int
    snapshot_id: str | None
    requested_at: datetime
    attempts: int


def _retry_after_hint(payload: Any) -> float | None:
    if not isinstance(payload, dict):
        return None
    for key in ("retry_after", "retryAfter", "Retry-After"):
        value = payload.get(key)
        if value is None:
            continue
        try:
            seconds = float(value)
        except (TypeError, ValueError):
            continue
        if seconds >= 0:
            return seconds
    return None


def classify_status(provider: str, endpoint: str, status: int, payload: Any) -> ProviderError:
    """Map a non-2xx status to the error taxonomy."""
    label = f"{provider} {endpoint} returned HTTP {status}"
    if status == 429:
        return RateLimited(label, retry_after=_retry_after_hint(payload))
    if status == 404:
        return NotFound(label, status=status)
    if status >= 500 or status == 408:
        return ProviderUnavailable(label, status=status)
    return ProviderError(label, status=status)


async def call_provider(
    provider: str,
    endpoint: str,
    params: dict[str, Any],
    call: ProviderCall,
    *,
    policy: RetryPolicy | None = None,
    sleep: Sleep = asyncio.sleep,
) -> ProviderResponse:
    """Execute a provider call with timeout, snapshot logging and bounded retries.

    Raises:
        RateLimited / ProviderUnavailable: retryable failure after max_attempts.
        NotFound / ProviderError: non-retryable failure (first occurrence).
    """
    policy = policy or RetryPolicy.from_settings()
    attempt = 0
    while True:
        attempt += 1
        error: ProviderError
        try:
            (payload, status), ref = await with_snapshot(
                provider,
                endpoint,
                lambda: asyncio.wait_for(call(endpoint, params), timeout=policy.timeout),
                params,
            )
        except asyncio.TimeoutError:
            error = ProviderUnavailable(f"{provider} {endpoint} timed out after {policy.timeout}s")
        except httpx.TransportError as e:
            error = ProviderUnavailable(f"{provider} {endpoint} network error: {e}")
        except ProviderError as e:
            error = e
        else:
            if 200 <= status < 300:
                return ProviderResponse(
                    payload=payload,
                    status=status,
                    snapshot_id=ref.snapshot_id,
                    requested_at=ref.requested_at,
                    attempts=attempt,
                )
            error = classify_status(provider, endpoint, status, payload)

        if not error.retryable or attempt >= policy.max_attempts:
            if error.retryable:
                logger.error(f"{provider} {endpoint}: giving up after {attempt} attempts: {error}")
            raise error

        if isinstance(error, RateLimited) and error.retry_after is not None:
            delay = error.retry_after
        else:
            delay = policy.backoff(attempt)
        logger.warning(
            f"{provider} {endpoint}: attempt {attempt}/{policy.max_attempts} failed ({error}), "
            f"retrying in {delay:.2f}s"
        )
        await sleep(delay)


class HttpProviderTransport:
    """httpx-backed ProviderCall for a marketplace REST API.

    Authentication is supplied by the caller as ready-made headers; this class
    never refreshes tokens.
    """

    def __init__(self, base_url: str, headers: dict[str, str] | None = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.headers = headers or {}
        self.timeout = timeout
        self._http_client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=self.timeout,
            )
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def __call__(self, endpoint: str, params: dict[str, Any]) -> tuple[Any, int]:
        client = await self._get_client()
        query = {k: _query_value(v) for k, v in params.items() if v is not None}
        response = await client.get(f"/{endpoint.lstrip('/')}", params=query)
        try:
            payload: Any = response.json()
        except ValueError:
            payload = {"text": response.text[:2000]}
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            if retry_after is not None:
                if not isinstance(payload, dict):
                    payload = {"body": payload}
                payload.setdefault("retry_after", retry_after)
        return payload, response.status_code


def _query_value(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    return value
