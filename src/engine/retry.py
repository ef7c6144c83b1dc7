"""Bounded retries with exponential backoff and jitter for async operations."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from engine.errors import classify_error
from utils.logging_config import TradeEvent

LOGGER = logging.getLogger("amm_volume_bot.engine.retry")

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("initial_delay and max_delay must be non-negative")
        if self.backoff_factor < 1:
            raise ValueError(
                f"backoff_factor must be >= 1, got {self.backoff_factor}"
            )
        if not 0 <= self.jitter_factor <= 1:
            raise ValueError(
                f"jitter_factor must be between 0 and 1, got {self.jitter_factor}"
            )


class RetryExecutor:
    """Run an async operation up to ``max_attempts`` times.

    Failures whose kind is not retryable (insufficient funds) are re-raised
    immediately. Delays are cooperative ``asyncio`` suspensions.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        sleep: SleepFunc | None = None,
        rng: random.Random | None = None,
        name: str = "operation",
    ) -> None:
        self.config = config or RetryConfig()
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()
        self.name = name

    def calculate_delay(self, attempt: int) -> float:
        base_delay = min(
            self.config.initial_delay * (self.config.backoff_factor**attempt),
            self.config.max_delay,
        )
        if self.config.jitter_factor == 0:
            return base_delay
        jitter = base_delay * self.config.jitter_factor * self._rng.uniform(-1, 1)
        return max(0.0, base_delay + jitter)

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        max_attempts = self.config.max_attempts
        last_error: Exception | None = None
        for attempt in range(max_attempts):
            try:
                result = await operation()
            except Exception as exc:
                last_error = exc
                kind = classify_error(exc)
                if not kind.retryable:
                    LOGGER.error(
                        "Fatal error in %s, stopping retries: %s",
                        self.name,
                        exc,
                        extra={
                            "event": TradeEvent.RETRY_ATTEMPT.value,
                            "attempt": attempt,
                            "outcome": kind.label,
                        },
                    )
                    raise
                if attempt < max_attempts - 1:
                    next_delay = self.calculate_delay(attempt)
                    LOGGER.warning(
                        "%s failed (attempt %s/%s), retrying in %.2fs: %s",
                        self.name,
                        attempt + 1,
                        max_attempts,
                        next_delay,
                        exc,
                        extra={
                            "event": TradeEvent.RETRY_ATTEMPT.value,
                            "attempt": attempt,
                            "outcome": "failed",
                            "next_delay": next_delay,
                        },
                    )
                    await self._sleep(next_delay)
                continue
            LOGGER.info(
                "%s succeeded on attempt %s/%s",
                self.name,
                attempt + 1,
                max_attempts,
                extra={
                    "event": TradeEvent.RETRY_ATTEMPT.value,
                    "attempt": attempt,
                    "outcome": "succeeded",
                },
            )
            return result

        LOGGER.error(
            "%s failed after %s attempts: %s",
            self.name,
            max_attempts,
            last_error,
            extra={"event": TradeEvent.RETRY_ATTEMPT.value, "outcome": "exhausted"},
        )
        assert last_error is not None
        raise last_error


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    **kwargs,
) -> T:
    """Build a one-off executor and run ``operation`` through it."""
    return await RetryExecutor(config, **kwargs).execute(operation)
