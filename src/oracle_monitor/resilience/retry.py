"""Retry with exponential backoff and jitter."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from oracle_monitor.resilience.errors import DegradedError, InvalidRequestError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_JITTER_RATIO = 0.25

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryConfig:
    """Retry policy.

    Attributes:
        max_retries: Retries after the first attempt.
        base_delay_seconds: Delay before the first retry.
        max_delay_seconds: Cap applied before jitter.
        multiplier: Growth factor per attempt.
        retryable: If set, only these exception types are retried.
    """

    max_retries: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 10.0
    multiplier: float = 2.0
    retryable: tuple[type[BaseException], ...] | None = None


def compute_delay(config: RetryConfig, attempt: int, *, rng: random.Random | None = None) -> float:
    """Delay before retry number ``attempt`` (0-based).

    ``base * multiplier^attempt`` capped at ``max_delay``, plus up to 25%
    jitter.
    """
    delay = min(
        config.base_delay_seconds * (config.multiplier**attempt),
        config.max_delay_seconds,
    )
    jitter = (rng or random).uniform(0.0, MAX_JITTER_RATIO) * delay
    return delay + jitter


def is_retryable(error: BaseException, config: RetryConfig) -> bool:
    # Degraded rejections are already fail-fast signals.
    if isinstance(error, (DegradedError, InvalidRequestError)):
        return False
    if config.retryable is None:
        return True
    return isinstance(error, config.retryable)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    *,
    sleep: Sleep = asyncio.sleep,
    description: str = "operation",
) -> T:
    """Invoke ``operation`` until it succeeds or retries are exhausted.

    Raises:
        Exception: The last error raised by ``operation``.
    """
    config = config or RetryConfig()
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as e:
            if attempt >= config.max_retries or not is_retryable(e, config):
                raise
            delay = compute_delay(config, attempt)
            attempt += 1
            logger.debug(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                description,
                attempt,
                config.max_retries + 1,
                delay,
                e,
            )
            await sleep(delay)
