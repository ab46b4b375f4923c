from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.retry import retry_base

from sdx_telemetry.errors import ConfigError


@dataclass(frozen=True)
class RetryBackoffPolicy:
    """Attempt count and backoff ceiling for one delivery.

    The wait before retry ``n`` (0-based) is ``min(max_seconds, 2 ** n)``.
    """

    attempts: int
    max_seconds: float = 2.0

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ConfigError("attempts must be >= 1")
        if self.max_seconds < 0:
            raise ConfigError("max_seconds must be >= 0")

    @classmethod
    def from_retry_attempts(cls, retry_attempts: int) -> RetryBackoffPolicy:
        """Build a policy allowing ``retry_attempts`` retries after the first try."""
        return cls(attempts=retry_attempts + 1)


def build_interruptible_sleep(
    stop_event: asyncio.Event,
) -> Callable[[float], Awaitable[None]]:
    """Build an async sleep that exits early when shutdown is requested."""

    async def _interruptible_sleep(delay: float) -> None:
        if stop_event.is_set():
            return

        bounded_delay = max(delay, 0.0)
        with suppress(TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=bounded_delay)

    return _interruptible_sleep


def build_exponential_retrying(
    *,
    retry: retry_base,
    policy: RetryBackoffPolicy,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    before_sleep: Callable[[RetryCallState], None] | None = None,
    reraise: bool = True,
) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` with capped exponential backoff."""
    options: dict[str, object] = {}
    if sleep is not None:
        options["sleep"] = sleep
    if before_sleep is not None:
        options["before_sleep"] = before_sleep
    return AsyncRetrying(
        retry=retry,
        wait=wait_exponential(multiplier=1, exp_base=2, max=policy.max_seconds),
        stop=stop_after_attempt(policy.attempts),
        reraise=reraise,
        **options,  # type: ignore[arg-type]
    )
