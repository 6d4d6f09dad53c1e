"""Exponential backoff for network-facing CLI calls."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_PATTERNS = (
    "timeout",
    "i/o timeout",
    "connection timeout",
    "dial tcp",
    "context deadline exceeded",
    "connection reset",
    "tls handshake timeout",
)


def is_transient_error(exc: BaseException) -> bool:
    """True when the error text looks like a network hiccup worth retrying."""

    output = getattr(exc, "output", None)
    lowered = (output or str(exc)).lower()
    return any(pattern in lowered for pattern in TRANSIENT_PATTERNS)


@dataclass(slots=True)
class RetryPolicy:
    """Retry an idempotent attempt while failures are transient.

    Delays grow from ``initial`` by ``multiplier`` up to ``max_interval``;
    no retry is started once ``max_elapsed`` seconds have passed.
    """

    initial: float = 2.0
    multiplier: float = 2.0
    max_interval: float = 30.0
    max_elapsed: float = 120.0
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""

        delay = self.initial * (self.multiplier ** max(attempt - 1, 0))
        return min(delay, self.max_interval)

    async def run(
        self,
        attempt: Callable[[], Awaitable[T]],
        *,
        classify: Callable[[BaseException], bool] = is_transient_error,
        operation: str = "operation",
    ) -> T:
        started = self.clock()
        retries = 0
        while True:
            try:
                return await attempt()
            except Exception as exc:
                if not classify(exc):
                    raise
                retries += 1
                delay = self.delay_for(retries)
                elapsed = self.clock() - started
                if elapsed + delay > self.max_elapsed:
                    logger.warning(
                        "Retry budget exhausted",
                        extra={"operation": operation, "attempts": retries, "elapsed": elapsed},
                    )
                    raise
                logger.info(
                    "Transient failure, retrying",
                    extra={"operation": operation, "attempt": retries, "delay": delay},
                )
                await self.sleep(delay)


__all__ = ["RetryPolicy", "TRANSIENT_PATTERNS", "is_transient_error"]
