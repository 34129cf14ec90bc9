"""
Rate Limiter Module
===================

Per-target request pacing with adaptive exponential backoff.

A RateLimiter enforces a minimum delay between requests, bounds the
number of in-flight requests with a FIFO wait queue, adds random jitter,
and stretches the delay after consecutive failures. State lives in
memory and is scoped to one run.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from collections.abc import Awaitable, Callable
from types import TracebackType

from listing_hub.core.errors import THROTTLE_STATUS_CODES, ItemNotFoundError, NetworkError
from listing_hub.ingestion.registry import RateLimitConfig

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT = RateLimitConfig(
    base_delay=2.0,
    jitter_min=0.0,
    jitter_max=1.0,
    max_backoff=60.0,
    backoff_multiplier=2.0,
    throttle_multiplier=3.0,
    max_concurrency=1,
)

# Static per-target profiles. Targets not listed use DEFAULT_RATE_LIMIT.
RATE_LIMIT_PROFILES: dict[str, RateLimitConfig] = {
    # Official JSON APIs tolerate faster pacing
    "api": RateLimitConfig(base_delay=0.5, jitter_max=0.2, max_backoff=30.0, max_concurrency=2),
    # HTML storefronts behind bot protection
    "storefront": RateLimitConfig(base_delay=3.0, jitter_min=0.5, jitter_max=2.0, max_backoff=120.0),
    # Headless browser sessions are expensive; one at a time
    "browser": RateLimitConfig(base_delay=5.0, jitter_min=1.0, jitter_max=3.0, max_backoff=180.0),
    # Synthetic fixtures never hit the network
    "fixture": RateLimitConfig(base_delay=0.0, jitter_max=0.0, max_backoff=0.0, max_concurrency=4),
}


def get_rate_limit_config(target: str) -> RateLimitConfig:
    """
    Look up the static rate limit profile for a target.

    Args:
        target: Target name (source name or profile name)

    Returns:
        A copy of the matching profile, or of the default profile
    """
    profile = RATE_LIMIT_PROFILES.get(target, DEFAULT_RATE_LIMIT)
    return RateLimitConfig(**vars(profile))


class RateLimiter:
    """
    Adaptive rate limiter for one target.

    Usage:
        await limiter.wait()
        try:
            response = await fetch()
        except NetworkError as e:
            limiter.on_error(e.status_code)
            raise
        limiter.done()

    or, equivalently, ``async with limiter: ...``.
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        *,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or RateLimitConfig(**vars(DEFAULT_RATE_LIMIT))
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

        self._active = 0
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._pace_lock = asyncio.Lock()
        self._last_request: float | None = None
        self._consecutive_errors = 0
        self._backoff = 0.0

    @property
    def backoff(self) -> float:
        """Current adaptive delay added on top of the base delay."""
        return self._backoff

    @property
    def consecutive_errors(self) -> int:
        return self._consecutive_errors

    @property
    def active(self) -> int:
        """Number of requests currently holding a slot."""
        return self._active

    @property
    def waiting(self) -> int:
        """Number of callers queued for a slot."""
        return sum(1 for f in self._waiters if not f.done())

    def compute_backoff(self, errors: int, status_code: int | None = None) -> float:
        """
        Backoff for a given number of consecutive errors.

        Args:
            errors: Consecutive error count (1 for the first failure)
            status_code: HTTP status of the latest failure, if any

        Returns:
            Delay in seconds, capped at max_backoff
        """
        if errors <= 0:
            return 0.0
        multiplier = self.config.backoff_multiplier
        if status_code in THROTTLE_STATUS_CODES:
            multiplier = self.config.throttle_multiplier
        delay = self.config.base_delay * (multiplier ** (errors - 1))
        return min(delay, self.config.max_backoff)

    def _jitter(self) -> float:
        low, high = self.config.jitter_min, self.config.jitter_max
        if high <= 0 or high < low:
            return 0.0
        return self._rng.uniform(low, high)

    async def _acquire_slot(self) -> None:
        if self._active < self.config.max_concurrency and not self._waiters:
            self._active += 1
            return

        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(future)
        try:
            await future
        except asyncio.CancelledError:
            if future.done() and not future.cancelled():
                # The slot was handed over just before cancellation
                self._release_slot()
            else:
                self._waiters.remove(future)
            raise

    def _release_slot(self) -> None:
        while self._waiters:
            future = self._waiters.popleft()
            if not future.done():
                # Slot passes straight to the next waiter; active is unchanged
                future.set_result(None)
                return
        if self._active > 0:
            self._active -= 1

    async def wait(self) -> None:
        """
        Suspend until it is safe to issue the next request.

        Acquires a concurrency slot in FIFO order, then sleeps so that at
        least base_delay + jitter + backoff has passed since the previous
        request started.
        """
        await self._acquire_slot()
        try:
            async with self._pace_lock:
                required = self.config.base_delay + self._jitter() + self._backoff
                if self._last_request is not None:
                    remaining = required - (self._clock() - self._last_request)
                    if remaining > 0:
                        logger.debug(f"[{self.name}] waiting {remaining:.2f}s before next request")
                        await self._sleep(remaining)
                self._last_request = self._clock()
        except BaseException:
            self._release_slot()
            raise

    def done(self) -> None:
        """Mark the current request as successful and reset backoff."""
        self._consecutive_errors = 0
        self._backoff = 0.0
        self._release_slot()

    def on_error(self, status_code: int | None = None) -> float:
        """
        Mark the current request as failed and grow the backoff.

        Args:
            status_code: HTTP status of the failure; 429 and 503 back off harder

        Returns:
            The new backoff in seconds
        """
        self._consecutive_errors += 1
        self._backoff = self.compute_backoff(self._consecutive_errors, status_code)
        self._release_slot()
        logger.warning(
            f"[{self.name}] request failed (status={status_code}, "
            f"consecutive={self._consecutive_errors}), backoff now {self._backoff:.2f}s"
        )
        return self._backoff

    async def __aenter__(self) -> RateLimiter:
        await self.wait()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc is None or isinstance(exc, ItemNotFoundError):
            # a missing item is a valid answer from the target
            self.done()
        elif isinstance(exc, NetworkError):
            self.on_error(exc.status_code)
        else:
            self.on_error(None)


def create_rate_limiter(
    target: str, overrides: RateLimitConfig | None = None, **kwargs
) -> RateLimiter:
    """
    Create a rate limiter for a target.

    Args:
        target: Target name used for the static profile lookup
        overrides: Explicit configuration that replaces the static profile
        **kwargs: Passed through to RateLimiter (clock, sleep, rng)

    Returns:
        A fresh RateLimiter
    """
    config = overrides if overrides is not None else get_rate_limit_config(target)
    return RateLimiter(config, name=target, **kwargs)
