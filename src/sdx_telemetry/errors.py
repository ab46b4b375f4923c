"""Shared error types for sdx_telemetry."""


class TelemetryError(Exception):
    """Base exception for the telemetry client."""


class ConfigError(TelemetryError, ValueError):
    """Raised at construction time for invalid client configuration."""


class TransportError(TelemetryError):
    """Network failure or per-attempt timeout while delivering a payload."""


class EncodingError(TelemetryError):
    """Raised when a payload cannot be serialized to JSON."""


class StoreError(TelemetryError):
    """Raised when the circuit breaker state store is unreachable or corrupt."""
