"""Resilient error and session telemetry for Python services."""

from sdx_telemetry.breadcrumbs import Breadcrumb, BreadcrumbRing
from sdx_telemetry.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    InMemoryStateStore,
    RedisStateStore,
)
from sdx_telemetry.client import CLIENT_VERSION, DispatchOutcome, TelemetryClient
from sdx_telemetry.context import ContextCollector, RequestContext, bind_request
from sdx_telemetry.dsn import Dsn, generate_dsn, parse_dsn
from sdx_telemetry.errors import (
    ConfigError,
    EncodingError,
    StoreError,
    TelemetryError,
    TransportError,
)
from sdx_telemetry.payload import EventKind
from sdx_telemetry.sessions import SessionTracker
from sdx_telemetry.settings import TelemetrySettings

__version__ = CLIENT_VERSION

__all__ = [
    "Breadcrumb",
    "BreadcrumbRing",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "ConfigError",
    "ContextCollector",
    "DispatchOutcome",
    "Dsn",
    "EncodingError",
    "EventKind",
    "InMemoryStateStore",
    "RedisStateStore",
    "RequestContext",
    "SessionTracker",
    "StoreError",
    "TelemetryClient",
    "TelemetryError",
    "TelemetrySettings",
    "TransportError",
    "__version__",
    "bind_request",
    "generate_dsn",
    "parse_dsn",
]
