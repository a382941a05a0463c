"""Retry with exponential backoff, shared by every backend call."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from config.config_loader import RetryConfig
from snapsolve.models import ErrorKind
from snapsolve.providers.base import classify_exception

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    return classify_exception(exc) is ErrorKind.RETRYABLE_TRANSIENT


class RetryPolicy:
    """Run an async call up to ``max_attempts`` times.

    Only errors accepted by ``is_retryable`` are retried; anything else is
    re-raised immediately. The delay before attempt n+1 is
    ``min(base_delay * 2 ** (n - 1), max_delay)`` seconds. Attempts are
    strictly sequential, and asyncio.CancelledError always propagates.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 5.0,
        is_retryable: Callable[[BaseException], bool] = is_transient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.is_retryable = is_retryable
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: RetryConfig, **kwargs) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay_sec,
            max_delay=config.max_delay_sec,
            **kwargs,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff after the given 1-indexed failed attempt."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    async def run(self, call: Callable[[], Awaitable[T]], label: str = "call") -> T:
        attempt = 1
        while True:
            try:
                return await call()
            except Exception as exc:
                if attempt >= self.max_attempts or not self.is_retryable(exc):
                    if attempt > 1:
                        logger.warning("%s failed after %d attempt(s): %s", label, attempt, exc)
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "%s attempt %d/%d failed (%s), retrying in %.1fs",
                    label, attempt, self.max_attempts, exc, delay,
                )
                await self._sleep(delay)
                attempt += 1
