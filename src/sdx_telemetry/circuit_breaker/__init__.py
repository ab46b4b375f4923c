"""Shared circuit breaker guarding the ingestion API.

Key behavior notes:
  - State lives in an injected store keyed by a stable name, so independent
    client instances (threads, workers, hosts) converge on one view.
  - ``HALF_OPEN`` is persisted: the number of trial calls let through is
    shared across instances.
  - Store failures never propagate; the breaker assumes a fresh ``CLOSED``
    state instead.
"""

from sdx_telemetry.circuit_breaker.breaker import (
    DEFAULT_STATE_KEY,
    CircuitBreaker,
    CircuitBreakerConfig,
)
from sdx_telemetry.circuit_breaker.state import BreakerSnapshot, CircuitState
from sdx_telemetry.circuit_breaker.storage import (
    AbstractStateStore,
    InMemoryStateStore,
    RedisStateStore,
)

__all__ = [
    "DEFAULT_STATE_KEY",
    "AbstractStateStore",
    "BreakerSnapshot",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "InMemoryStateStore",
    "RedisStateStore",
]
