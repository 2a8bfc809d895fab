"""
Card Catalog Sync — Rate Gateway

Every outbound request to an upstream feed goes through RateGateway.fetch():

- Token bucket: `burst` capacity refilled at `rps` tokens/sec.
- Adaptive concurrency (AIMD): +1 permit every 20 consecutive successes,
  halved on any 429/5xx. Advisory: the worker pool reads it to size itself.
- Circuit breaker: opens after N consecutive failures and fails fast for a
  fixed cool-down window.
- Retry: full-jitter exponential backoff, Retry-After honored, non-429 4xx
  returned immediately.

All mutable throttle state lives in a ThrottleContext that is passed in
explicitly, so tests can build isolated instances.
"""

from __future__ import annotations

import asyncio
import random
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable

import httpx
import structlog
from pydantic import BaseModel, ConfigDict

from cardsync.config import settings

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]

CIRCUIT_OPEN = "CIRCUIT_OPEN"
NETWORK_ERROR = "NETWORK_ERROR"


# ---------------------------------------------------------------------------
# Token bucket
# ---------------------------------------------------------------------------


class TokenBucket:
    """Continuously refilled token bucket. Starts full."""

    def __init__(
        self,
        rate: float,
        burst: int,
        clock: Clock = time.monotonic,
        poll_interval: float = 0.05,
    ):
        self.rate = rate
        self.burst = burst
        self._clock = clock
        self._poll_interval = poll_interval
        self._tokens = float(burst)
        self._last = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
        self._last = now

    def available(self) -> float:
        """Current token level, without consuming."""
        elapsed = max(0.0, self._clock() - self._last)
        return min(float(self.burst), self._tokens + elapsed * self.rate)

    def try_take(self) -> bool:
        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            return True
        return False

    async def take(self) -> None:
        """Block (polling, not spinning) until one token is available."""
        while not self.try_take():
            await asyncio.sleep(self._poll_interval)


# ---------------------------------------------------------------------------
# Adaptive concurrency (AIMD)
# ---------------------------------------------------------------------------


class AdaptiveConcurrency:
    """Integer permit count bounded by [minimum, maximum]."""

    def __init__(
        self,
        minimum: int,
        maximum: int,
        start: int | None = None,
        success_step: int = 20,
    ):
        self.minimum = minimum
        self.maximum = maximum
        self.success_step = success_step
        initial = maximum if start is None else start
        self.current = max(minimum, min(maximum, initial))
        self.successes = 0

    def on_success(self) -> None:
        self.successes += 1
        if self.successes >= self.success_step:
            self.current = min(self.maximum, self.current + 1)
            self.successes = 0

    def on_rate_limit(self) -> None:
        self.current = max(self.minimum, self.current // 2)
        self.successes = 0

    def on_error(self) -> None:
        self.successes = 0


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------


class CircuitBreaker:
    """
    Opens after `threshold` consecutive failures and stays open for
    `open_seconds` measured from the last qualifying failure.
    """

    def __init__(
        self,
        threshold: int = 5,
        open_seconds: float = 60.0,
        clock: Clock = time.monotonic,
    ):
        self.threshold = threshold
        self.open_seconds = open_seconds
        self._clock = clock
        self._opened_at: float | None = None
        self.failures = 0

    def is_open(self) -> bool:
        if self._opened_at is None:
            return False
        return self._clock() - self._opened_at < self.open_seconds

    def record(self, ok: bool) -> None:
        if ok:
            self.failures = 0
            return
        self.failures += 1
        if self.failures >= self.threshold:
            self._opened_at = self._clock()
            logger.warning(
                "circuit_opened",
                failures=self.failures,
                open_seconds=self.open_seconds,
            )

    def time_until_close(self) -> float:
        if not self.is_open() or self._opened_at is None:
            return 0.0
        return max(0.0, self.open_seconds - (self._clock() - self._opened_at))


# ---------------------------------------------------------------------------
# Throttle context
# ---------------------------------------------------------------------------


class ThrottleContext:
    """Bucket + concurrency + breaker shared by all fetches to one upstream."""

    def __init__(
        self,
        bucket: TokenBucket,
        concurrency: AdaptiveConcurrency,
        circuit: CircuitBreaker,
    ):
        self.bucket = bucket
        self.concurrency = concurrency
        self.circuit = circuit

    @classmethod
    def from_settings(
        cls,
        rps: float | None = None,
        burst: int | None = None,
        clock: Clock = time.monotonic,
    ) -> ThrottleContext:
        return cls(
            bucket=TokenBucket(
                rps if rps is not None else settings.TCGCSV_TARGET_RPS,
                burst if burst is not None else settings.TCGCSV_BURST_TOKENS,
                clock=clock,
            ),
            concurrency=AdaptiveConcurrency(
                settings.TCGCSV_MIN_CONCURRENCY,
                settings.TCGCSV_MAX_CONCURRENCY,
                success_step=settings.AIMD_SUCCESS_STEP,
            ),
            circuit=CircuitBreaker(
                settings.TCGCSV_CIRCUIT_THRESHOLD,
                settings.TCGCSV_CIRCUIT_OPEN_SECONDS,
                clock=clock,
            ),
        )

    def stats(self) -> dict[str, Any]:
        return {
            "concurrency": self.concurrency.current,
            "successes": self.concurrency.successes,
            "tokens": round(self.bucket.available(), 3),
            "max_tokens": self.bucket.burst,
            "target_rps": self.bucket.rate,
            "circuit_open": self.circuit.is_open(),
            "circuit_failures": self.circuit.failures,
            "circuit_time_until_close": round(self.circuit.time_until_close(), 3),
        }


# ---------------------------------------------------------------------------
# Retry helpers
# ---------------------------------------------------------------------------


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """
    Parse a Retry-After header into seconds.

    Accepts delta-seconds ("120") or an HTTP-date. Returns None when absent
    or unparseable; never negative.
    """
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    reference = now if now is not None else datetime.now(timezone.utc)
    return max(0.0, (when - reference).total_seconds())


def backoff_delay(attempt: int, base: float, cap: float = 30.0) -> float:
    """Full jitter: uniform(0, min(cap, base * 2^(attempt-1)))."""
    ceiling = min(cap, base * (2 ** (attempt - 1)))
    return random.uniform(0, ceiling)


def _synthetic_response(url: str, status_code: int, reason: str) -> httpx.Response:
    return httpx.Response(
        status_code,
        request=httpx.Request("GET", url),
        extensions={"reason_phrase": reason.encode()},
    )


class FetchResult(BaseModel):
    """Outcome of one gateway fetch (possibly several attempts)."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    response: httpx.Response
    attempt: int
    waited: float | None = None
    retry_after: float | None = None
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.response.is_success

    @property
    def status_code(self) -> int:
        return self.response.status_code


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


def default_headers() -> dict[str, str]:
    return {
        "Accept": "text/csv, */*",
        "Cache-Control": "no-cache",
        "User-Agent": settings.TCGCSV_USER_AGENT,
        "Referer": settings.TCGCSV_REFERER,
    }


class RateGateway:
    """
    Rate-limited, circuit-broken GET wrapper around httpx.

    Usage:
        async with RateGateway(throttle) as gateway:
            result = await gateway.fetch(url)
    """

    def __init__(
        self,
        throttle: ThrottleContext,
        client: httpx.AsyncClient | None = None,
        max_attempts: int | None = None,
        backoff_base: float | None = None,
        backoff_cap: float | None = None,
        timeout: float | None = None,
        headers: dict[str, str] | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.throttle = throttle
        self._client = client
        self._owns_client = client is None
        self._max_attempts = max_attempts or settings.TCGCSV_RETRY_MAX
        self._backoff_base = (
            backoff_base if backoff_base is not None else settings.TCGCSV_BACKOFF_BASE_SECONDS
        )
        self._backoff_cap = (
            backoff_cap if backoff_cap is not None else settings.TCGCSV_BACKOFF_CAP_SECONDS
        )
        self._timeout = httpx.Timeout(timeout or settings.HTTP_TIMEOUT_SECONDS)
        self._headers = headers if headers is not None else default_headers()
        self._sleep = sleep

    async def __aenter__(self) -> RateGateway:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch(self, url: str, headers: dict[str, str] | None = None) -> FetchResult:
        """
        GET `url` under the shared throttle.

        Never raises for HTTP or transport failures: an open circuit yields a
        synthetic 503 CIRCUIT_OPEN, exhausted network retries a synthetic 599
        NETWORK_ERROR, and other failures the last upstream response.
        """
        assert self._client is not None, "Gateway not initialized. Use 'async with'."

        circuit = self.throttle.circuit
        concurrency = self.throttle.concurrency

        if circuit.is_open():
            logger.warning(
                "gateway_circuit_open",
                url=url,
                seconds_until_close=round(circuit.time_until_close(), 2),
            )
            return FetchResult(
                response=_synthetic_response(url, 503, CIRCUIT_OPEN),
                attempt=0,
                waited=circuit.open_seconds,
                reason=CIRCUIT_OPEN,
            )

        merged = {**self._headers, **(headers or {})}
        attempt = 0

        while True:
            attempt += 1
            await self.throttle.bucket.take()

            try:
                response = await self._client.get(url, headers=merged, timeout=self._timeout)
            except httpx.RequestError as e:
                logger.warning(
                    "gateway_request_error",
                    url=url,
                    attempt=attempt,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if attempt >= self._max_attempts:
                    circuit.record(False)
                    concurrency.on_error()
                    return FetchResult(
                        response=_synthetic_response(url, 599, NETWORK_ERROR),
                        attempt=attempt,
                        reason=NETWORK_ERROR,
                    )
                await self._sleep(backoff_delay(attempt, self._backoff_base, self._backoff_cap))
                continue

            if response.is_success:
                circuit.record(True)
                concurrency.on_success()
                return FetchResult(response=response, attempt=attempt)

            status = response.status_code
            if status == 429 or 500 <= status <= 599:
                concurrency.on_rate_limit()
                circuit.record(False)

                retry_after = parse_retry_after(response.headers.get("Retry-After"))
                delay = (
                    retry_after
                    if retry_after is not None
                    else backoff_delay(attempt, self._backoff_base, self._backoff_cap)
                )
                logger.warning(
                    "gateway_throttled",
                    url=url,
                    status_code=status,
                    attempt=attempt,
                    delay_seconds=round(delay, 3),
                    concurrency=concurrency.current,
                )

                if attempt >= self._max_attempts or circuit.is_open():
                    return FetchResult(
                        response=response,
                        attempt=attempt,
                        waited=delay,
                        retry_after=retry_after,
                    )
                if delay:
                    await self._sleep(delay)
                continue

            # 403/404 and friends: the upstream answered, no point retrying.
            concurrency.on_error()
            logger.info("gateway_client_error", url=url, status_code=status, attempt=attempt)
            return FetchResult(response=response, attempt=attempt)
