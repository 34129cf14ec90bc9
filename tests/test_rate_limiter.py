"""Tests for the adaptive rate limiter."""

import asyncio
import random

import pytest

from listing_hub.core.errors import ItemNotFoundError, NetworkError
from listing_hub.ingestion.rate_limiter import (
    DEFAULT_RATE_LIMIT,
    RATE_LIMIT_PROFILES,
    RateLimiter,
    create_rate_limiter,
    get_rate_limit_config,
)
from listing_hub.ingestion.registry import RateLimitConfig


class FakeClock:
    """Monotonic clock that only moves when sleep() is awaited."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_limiter(clock: FakeClock, **overrides) -> RateLimiter:
    values = {
        "base_delay": 2.0,
        "jitter_min": 0.0,
        "jitter_max": 0.0,
        "max_backoff": 30.0,
        "backoff_multiplier": 2.0,
        "throttle_multiplier": 3.0,
        "max_concurrency": 1,
    }
    values.update(overrides)
    return RateLimiter(RateLimitConfig(**values), clock=clock, sleep=clock.sleep)


class TestBackoff:
    """Tests for backoff computation."""

    def test_backoff_grows_exponentially(self) -> None:
        limiter = make_limiter(FakeClock(), base_delay=1.0, max_backoff=10.0)
        assert limiter.compute_backoff(0) == 0.0
        assert limiter.compute_backoff(1) == 1.0
        assert limiter.compute_backoff(2) == 2.0
        assert limiter.compute_backoff(3) == 4.0

    def test_backoff_is_capped(self) -> None:
        limiter = make_limiter(FakeClock(), base_delay=1.0, max_backoff=10.0)
        assert limiter.compute_backoff(5) == 10.0
        assert limiter.compute_backoff(50) == 10.0

    def test_throttle_status_backs_off_harder(self) -> None:
        limiter = make_limiter(FakeClock(), base_delay=1.0, max_backoff=100.0)
        assert limiter.compute_backoff(3, status_code=500) == 4.0
        assert limiter.compute_backoff(3, status_code=429) == 9.0
        assert limiter.compute_backoff(3, status_code=503) == 9.0

    def test_on_error_and_done(self) -> None:
        limiter = make_limiter(FakeClock(), base_delay=1.0)

        assert limiter.on_error(500) == 1.0
        assert limiter.on_error(500) == 2.0
        assert limiter.consecutive_errors == 2

        limiter.done()
        assert limiter.consecutive_errors == 0
        assert limiter.backoff == 0.0


class TestPacing:
    """Tests for request spacing."""

    @pytest.mark.asyncio
    async def test_first_request_is_not_delayed(self) -> None:
        clock = FakeClock()
        limiter = make_limiter(clock)

        await limiter.wait()

        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_base_delay_between_requests(self) -> None:
        clock = FakeClock()
        limiter = make_limiter(clock)

        await limiter.wait()
        limiter.done()
        await limiter.wait()
        limiter.done()

        assert clock.sleeps == [2.0]

    @pytest.mark.asyncio
    async def test_elapsed_time_counts_toward_delay(self) -> None:
        clock = FakeClock()
        limiter = make_limiter(clock)

        await limiter.wait()
        limiter.done()
        clock.now += 1.5
        await limiter.wait()
        limiter.done()

        assert clock.sleeps == [pytest.approx(0.5)]

    @pytest.mark.asyncio
    async def test_backoff_adds_to_delay(self) -> None:
        clock = FakeClock()
        limiter = make_limiter(clock)

        await limiter.wait()
        limiter.done()
        await limiter.wait()
        limiter.on_error(500)
        await limiter.wait()
        limiter.done()

        assert clock.sleeps == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_jitter_stays_in_range(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(
            RateLimitConfig(base_delay=1.0, jitter_min=0.5, jitter_max=1.0),
            clock=clock,
            sleep=clock.sleep,
            rng=random.Random(7),
        )

        for _ in range(5):
            await limiter.wait()
            limiter.done()

        assert len(clock.sleeps) == 4
        assert all(1.5 <= s <= 2.0 for s in clock.sleeps)


class TestConcurrency:
    """Tests for the FIFO concurrency bound."""

    @pytest.mark.asyncio
    async def test_waiters_are_served_in_order(self) -> None:
        limiter = RateLimiter(RateLimitConfig(base_delay=0.0, jitter_max=0.0, max_concurrency=1))
        order: list[str] = []

        async def worker(name: str) -> None:
            async with limiter:
                order.append(name)
                await asyncio.sleep(0)

        await limiter.wait()
        tasks = [asyncio.create_task(worker(name)) for name in ("b", "c", "d")]
        await asyncio.sleep(0)

        assert limiter.active == 1
        assert limiter.waiting == 3

        limiter.done()
        await asyncio.gather(*tasks)

        assert order == ["b", "c", "d"]
        assert limiter.active == 0
        assert limiter.waiting == 0

    @pytest.mark.asyncio
    async def test_concurrency_bound_is_respected(self) -> None:
        limiter = RateLimiter(RateLimitConfig(base_delay=0.0, jitter_max=0.0, max_concurrency=2))
        in_flight = 0
        peak = 0

        async def worker() -> None:
            nonlocal in_flight, peak
            async with limiter:
                in_flight += 1
                peak = max(peak, in_flight)
                await asyncio.sleep(0)
                await asyncio.sleep(0)
                in_flight -= 1

        await asyncio.gather(*(worker() for _ in range(6)))

        assert peak == 2
        assert limiter.active == 0

    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_queue(self) -> None:
        limiter = RateLimiter(RateLimitConfig(base_delay=0.0, jitter_max=0.0, max_concurrency=1))

        await limiter.wait()
        task = asyncio.create_task(limiter.wait())
        await asyncio.sleep(0)
        assert limiter.waiting == 1

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert limiter.waiting == 0
        limiter.done()
        assert limiter.active == 0


class TestContextManager:
    """Tests for async with usage."""

    @pytest.mark.asyncio
    async def test_not_found_counts_as_success(self) -> None:
        clock = FakeClock()
        limiter = make_limiter(clock, base_delay=1.0)
        limiter.on_error(500)

        with pytest.raises(ItemNotFoundError):
            async with limiter:
                raise ItemNotFoundError("abc001")

        assert limiter.consecutive_errors == 0
        assert limiter.backoff == 0.0

    @pytest.mark.asyncio
    async def test_network_error_backs_off(self) -> None:
        clock = FakeClock()
        limiter = make_limiter(clock, base_delay=1.0, max_backoff=100.0)

        for _ in range(2):
            with pytest.raises(NetworkError):
                async with limiter:
                    raise NetworkError("slow down", status_code=429)

        assert limiter.consecutive_errors == 2
        assert limiter.backoff == 3.0
        assert limiter.active == 0

    @pytest.mark.asyncio
    async def test_success_resets(self) -> None:
        clock = FakeClock()
        limiter = make_limiter(clock, base_delay=1.0)
        limiter.on_error(None)

        async with limiter:
            pass

        assert limiter.consecutive_errors == 0


class TestProfiles:
    """Tests for static rate limit profiles."""

    def test_known_profile(self) -> None:
        config = get_rate_limit_config("fixture")
        assert config.base_delay == 0.0
        assert config.max_concurrency == 4

    def test_unknown_target_uses_default(self) -> None:
        config = get_rate_limit_config("some-new-shop")
        assert config.base_delay == DEFAULT_RATE_LIMIT.base_delay
        assert config.max_backoff == DEFAULT_RATE_LIMIT.max_backoff

    def test_profiles_are_copied(self) -> None:
        config = get_rate_limit_config("api")
        config.base_delay = 99.0
        assert RATE_LIMIT_PROFILES["api"].base_delay != 99.0

    def test_create_with_override(self) -> None:
        override = RateLimitConfig(base_delay=7.0)
        limiter = create_rate_limiter("fixture", override)
        assert limiter.config.base_delay == 7.0
        assert limiter.name == "fixture"

    def test_create_from_profile(self) -> None:
        limiter = create_rate_limiter("browser")
        assert limiter.config.base_delay == RATE_LIMIT_PROFILES["browser"].base_delay
