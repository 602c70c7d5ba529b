"""Sliding-window rate limiter.

With a Redis client the window is a sorted set per key, updated in one
MULTI/EXEC transaction so all processes share the same counts. Without
Redis each process keeps its own bounded map of timestamps; counts are
then per-process only.
"""

from __future__ import annotations

import logging
import uuid
from collections import OrderedDict, deque
from dataclasses import dataclass

from redis.asyncio import Redis

from oracle_monitor.resilience.errors import RateLimitExceededError
from oracle_monitor.scheduler import SYSTEM_CLOCK, Clock

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "oracle_monitor:ratelimit:"
DEFAULT_MAX_KEYS = 10_000


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a rate-limit check."""

    allowed: bool
    limit: int
    remaining: int
    retry_after: float = 0.0
    # Identifies the recorded request so it can be released again.
    token: str | None = None


class SlidingWindowRateLimiter:
    """Allow at most ``max_requests`` per ``window_seconds`` per key.

    Example:
        ```python
        limiter = SlidingWindowRateLimiter(25, 1.0, redis=redis)
        result = await limiter.check("chainlink:ethereum")
        if not result.allowed:
            await asyncio.sleep(result.retry_after)
        ```
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        *,
        redis: Redis | None = None,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        max_keys: int = DEFAULT_MAX_KEYS,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._redis = redis
        self._key_prefix = key_prefix
        self._max_keys = max_keys
        self._clock = clock
        # key -> request timestamps (monotonic), LRU ordered
        self._windows: OrderedDict[str, deque[float]] = OrderedDict()

    @property
    def is_shared(self) -> bool:
        return self._redis is not None

    async def check(self, key: str) -> RateLimitResult:
        """Record a request for ``key`` if the window has room."""
        if self._redis is not None:
            return await self._check_redis(key)
        return self._check_local(key)

    async def acquire(self, key: str) -> RateLimitResult:
        """Like :meth:`check` but raises when the request is denied.

        Raises:
            RateLimitExceededError: If the window is full.
        """
        result = await self.check(key)
        if not result.allowed:
            raise RateLimitExceededError(key, retry_after=result.retry_after)
        return result

    async def release(self, key: str, token: str) -> None:
        """Give back a request recorded by an allowed check, e.g. after a failed send."""
        if self._redis is not None:
            await self._redis.zrem(self._key_prefix + key, token)
            return
        window = self._windows.get(key)
        if window is None:
            return
        try:
            window.remove(float(token))
        except ValueError:
            logger.debug("Rate limit token for %s already left the window", key)

    async def reset(self, key: str) -> None:
        if self._redis is not None:
            await self._redis.delete(self._key_prefix + key)
        self._windows.pop(key, None)

    def _check_local(self, key: str) -> RateLimitResult:
        now = self._clock.monotonic()
        window_start = now - self.window_seconds

        window = self._windows.get(key)
        if window is None:
            if len(self._windows) >= self._max_keys:
                self._windows.popitem(last=False)
            window = deque()
            self._windows[key] = window
        else:
            self._windows.move_to_end(key)

        while window and window[0] <= window_start:
            window.popleft()

        if len(window) >= self.max_requests:
            retry_after = window[0] + self.window_seconds - now
            return RateLimitResult(
                allowed=False,
                limit=self.max_requests,
                remaining=0,
                retry_after=retry_after,
            )

        window.append(now)
        return RateLimitResult(
            allowed=True,
            limit=self.max_requests,
            remaining=self.max_requests - len(window),
            token=repr(now),
        )

    async def _check_redis(self, key: str) -> RateLimitResult:
        assert self._redis is not None
        redis_key = self._key_prefix + key
        now = self._clock.now().timestamp()
        window_start = now - self.window_seconds
        member = f"{now:.6f}:{uuid.uuid4().hex}"

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(redis_key, "-inf", window_start)
            pipe.zcard(redis_key)
            pipe.zadd(redis_key, {member: now})
            pipe.pexpire(redis_key, int(self.window_seconds * 1000) + 1)
            _, count, _, _ = await pipe.execute()

        if int(count) < self.max_requests:
            return RateLimitResult(
                allowed=True,
                limit=self.max_requests,
                remaining=self.max_requests - int(count) - 1,
                token=member,
            )

        # Denied requests do not consume the window.
        await self._redis.zrem(redis_key, member)
        oldest = await self._redis.zrange(redis_key, 0, 0, withscores=True)
        retry_after = self.window_seconds
        if oldest:
            retry_after = max(float(oldest[0][1]) + self.window_seconds - now, 0.001)
        return RateLimitResult(
            allowed=False,
            limit=self.max_requests,
            remaining=0,
            retry_after=retry_after,
        )

    def __len__(self) -> int:
        return len(self._windows)
