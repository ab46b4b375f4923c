"""Core circuit breaker implementation."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime

from sdx_telemetry.circuit_breaker.state import BreakerSnapshot, CircuitState
from sdx_telemetry.circuit_breaker.storage import (
    AbstractStateStore,
    InMemoryStateStore,
)
from sdx_telemetry.errors import ConfigError
from sdx_telemetry.logging import TelemetryLogger, get_logger, log_debug

DEFAULT_STATE_KEY = "sdx_telemetry.circuit_breaker"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        enabled: When false the breaker never opens and never touches storage.
        failure_threshold: Consecutive failures while ``CLOSED`` before opening.
        timeout: Seconds to stay ``OPEN`` before letting trial calls through.
        max_half_open_attempts: Trial calls permitted per ``HALF_OPEN`` window.
        store_timeout: Seconds one state store read or write may take before
            it is treated as a store failure.
    """

    enabled: bool = True
    failure_threshold: int = 5
    timeout: float = 60.0
    max_half_open_attempts: int = 1
    store_timeout: float = 1.0

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ConfigError("failure_threshold must be >= 1")
        if self.timeout < 10:
            raise ConfigError("timeout must be >= 10 seconds")
        if self.max_half_open_attempts < 1:
            raise ConfigError("max_half_open_attempts must be >= 1")
        if self.store_timeout <= 0:
            raise ConfigError("store_timeout must be > 0")

    @property
    def state_ttl(self) -> float:
        """Storage TTL; outlives the open window so state persists across calls."""
        return self.timeout * 2


class CircuitBreaker:
    """Shared, persisted failure-tracking gate in front of the ingestion API."""

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        *,
        store: AbstractStateStore | None = None,
        key: str = DEFAULT_STATE_KEY,
        clock: Callable[[], datetime] | None = None,
        logger: TelemetryLogger | None = None,
        debug: bool = False,
    ) -> None:
        """Build a circuit breaker over a shared state store.

        Args:
            config: Breaker behavior configuration. Defaults to
                ``CircuitBreakerConfig()``.
            store: Shared state backend. Defaults to a private in-memory store.
            key: Stable storage key; breakers sharing a store and key share state.
            clock: Returns the current aware UTC time.
            logger: Structured logger for store failures.
            debug: Log store failures when true.
        """
        self.config = CircuitBreakerConfig() if config is None else config
        self.key = key
        self._store = InMemoryStateStore() if store is None else store
        self._clock = _utcnow if clock is None else clock
        self._logger = get_logger(__name__) if logger is None else logger
        self._debug = debug
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    async def is_open(self) -> bool:
        """Return true when calls must be rejected.

        Promotes ``OPEN`` to ``HALF_OPEN`` once the timeout has elapsed and
        counts every permitted ``HALF_OPEN`` call as a trial.
        """
        if not self.enabled:
            return False

        async with self._lock:
            snapshot = await self._load()
            now = self._clock()

            if snapshot.state == CircuitState.OPEN:
                if not self._window_elapsed(snapshot, now):
                    return True
                snapshot = self._half_open(now)

            if snapshot.state != CircuitState.HALF_OPEN:
                return False

            if snapshot.half_open_attempts >= self.config.max_half_open_attempts:
                if not self._window_elapsed(snapshot, now):
                    return True
                # No outcome arrived for the spent trials; start a new window.
                snapshot = self._half_open(now)

            await self._save(
                replace(snapshot, half_open_attempts=snapshot.half_open_attempts + 1)
            )
            return False

    async def is_half_open(self) -> bool:
        if not self.enabled:
            return False
        snapshot = await self._load()
        return snapshot.state == CircuitState.HALF_OPEN

    async def record_success(self) -> None:
        """Close the circuit and clear failure counters."""
        if not self.enabled:
            return
        async with self._lock:
            snapshot = await self._load()
            if snapshot.is_clean:
                return
            await self._save(BreakerSnapshot())

    async def record_failure(self) -> None:
        """Count a failure; open on threshold, re-open on a failed trial."""
        if not self.enabled:
            return
        async with self._lock:
            snapshot = await self._load()
            now = self._clock()

            if snapshot.state == CircuitState.HALF_OPEN:
                await self._save(self._opened(snapshot, now))
            elif snapshot.state == CircuitState.CLOSED:
                failed = replace(snapshot, failure_count=snapshot.failure_count + 1)
                if failed.failure_count >= self.config.failure_threshold:
                    failed = self._opened(failed, now)
                await self._save(failed)

    async def reset(self) -> None:
        """Force a clean ``CLOSED`` state."""
        if not self.enabled:
            return
        async with self._lock:
            await self._save(BreakerSnapshot())

    async def get_state(self) -> BreakerSnapshot:
        """Return the current shared snapshot for monitoring."""
        if not self.enabled:
            return BreakerSnapshot()
        return await self._load()

    def _window_elapsed(self, snapshot: BreakerSnapshot, now: datetime) -> bool:
        if snapshot.opened_at is None:
            return True
        elapsed = (now - snapshot.opened_at).total_seconds()
        return elapsed >= self.config.timeout

    @staticmethod
    def _opened(snapshot: BreakerSnapshot, now: datetime) -> BreakerSnapshot:
        return replace(
            snapshot,
            state=CircuitState.OPEN,
            opened_at=now,
            half_open_attempts=0,
        )

    @staticmethod
    def _half_open(now: datetime) -> BreakerSnapshot:
        return BreakerSnapshot(
            state=CircuitState.HALF_OPEN,
            failure_count=0,
            opened_at=now,
            half_open_attempts=0,
        )

    async def _load(self) -> BreakerSnapshot:
        try:
            data = await asyncio.wait_for(
                self._store.get(self.key), timeout=self.config.store_timeout
            )
            if data is None:
                return BreakerSnapshot()
            return BreakerSnapshot.from_mapping(data)
        except Exception as exc:
            if self._debug:
                log_debug(
                    self._logger,
                    "circuit_breaker.store_read_failed",
                    key=self.key,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            return BreakerSnapshot()

    async def _save(self, snapshot: BreakerSnapshot) -> None:
        try:
            await asyncio.wait_for(
                self._store.set(
                    self.key, snapshot.to_mapping(), self.config.state_ttl
                ),
                timeout=self.config.store_timeout,
            )
        except Exception as exc:
            if self._debug:
                log_debug(
                    self._logger,
                    "circuit_breaker.store_write_failed",
                    key=self.key,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
