"""Tests for the sliding-window rate limiter."""

import pytest

from oracle_monitor.resilience import RateLimitExceededError, SlidingWindowRateLimiter


class TestLocalRateLimiter:
    """Tests for the in-process limiter."""

    @pytest.mark.asyncio
    async def test_allows_up_to_limit(self, clock) -> None:
        """max_requests calls are allowed, the next is denied."""
        limiter = SlidingWindowRateLimiter(3, 10.0, clock=clock)

        results = [await limiter.check("pyth:ethereum") for _ in range(4)]

        assert [r.allowed for r in results] == [True, True, True, False]
        assert results[0].remaining == 2
        assert results[3].retry_after == pytest.approx(10.0)

    @pytest.mark.asyncio
    async def test_window_slides(self, clock) -> None:
        """Old requests leave the window as time passes."""
        limiter = SlidingWindowRateLimiter(2, 10.0, clock=clock)
        await limiter.check("k")
        clock.advance(5)
        await limiter.check("k")
        assert not (await limiter.check("k")).allowed

        clock.advance(5)
        assert (await limiter.check("k")).allowed

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, clock) -> None:
        """Each caller key has its own window."""
        limiter = SlidingWindowRateLimiter(1, 60.0, clock=clock)
        assert (await limiter.check("a")).allowed
        assert (await limiter.check("b")).allowed
        assert not (await limiter.check("a")).allowed

    @pytest.mark.asyncio
    async def test_acquire_raises_when_full(self, clock) -> None:
        """acquire() raises RateLimitExceededError with retry_after."""
        limiter = SlidingWindowRateLimiter(1, 30.0, clock=clock)
        await limiter.acquire("uma:ethereum")

        with pytest.raises(RateLimitExceededError) as exc_info:
            await limiter.acquire("uma:ethereum")
        assert exc_info.value.key == "uma:ethereum"
        assert exc_info.value.retry_after == pytest.approx(30.0)

    @pytest.mark.asyncio
    async def test_reset_clears_key(self, clock) -> None:
        """reset() empties a key's window."""
        limiter = SlidingWindowRateLimiter(1, 30.0, clock=clock)
        await limiter.check("k")
        await limiter.reset("k")
        assert (await limiter.check("k")).allowed

    @pytest.mark.asyncio
    async def test_release_returns_slot(self, clock) -> None:
        """release() removes the request its token identifies."""
        limiter = SlidingWindowRateLimiter(1, 60.0, clock=clock)
        first = await limiter.check("rule:x")
        assert first.token is not None
        assert not (await limiter.check("rule:x")).allowed

        await limiter.release("rule:x", first.token)
        clock.advance(1)
        assert (await limiter.check("rule:x")).allowed

        # A token already gone from the window is ignored.
        await limiter.release("rule:x", first.token)
        assert not (await limiter.check("rule:x")).allowed

    @pytest.mark.asyncio
    async def test_key_map_is_bounded(self, clock) -> None:
        """The least recently used key is dropped beyond max_keys."""
        limiter = SlidingWindowRateLimiter(1, 60.0, max_keys=2, clock=clock)
        await limiter.check("a")
        await limiter.check("b")
        await limiter.check("c")

        assert len(limiter) == 2
        # "a" was evicted, so its window starts fresh.
        assert (await limiter.check("a")).allowed

    def test_rejects_invalid_limits(self) -> None:
        """Non-positive limits are rejected."""
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(0, 1.0)
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(1, 0)
