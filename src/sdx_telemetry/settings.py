from __future__ import annotations

from typing import Annotated, Literal

from pydantic import ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from sdx_telemetry.breadcrumbs import (
    DEFAULT_MAX_BREADCRUMBS,
    MAX_BREADCRUMBS,
    MIN_BREADCRUMBS,
)
from sdx_telemetry.circuit_breaker import (
    AbstractStateStore,
    CircuitBreakerConfig,
    InMemoryStateStore,
    RedisStateStore,
)
from sdx_telemetry.context import DEFAULT_SCRUB_FIELDS
from sdx_telemetry.dsn import parse_dsn
from sdx_telemetry.errors import ConfigError
from sdx_telemetry.logging import configure_structlog
from sdx_telemetry.sessions import (
    DEFAULT_IDLE_TIMEOUT_SECONDS,
    DEFAULT_IGNORED_PATHS,
    MAX_IDLE_TIMEOUT_SECONDS,
    MIN_IDLE_TIMEOUT_SECONDS,
)

LogLevel = Literal["debug", "info", "warning", "error", "critical"]
ENV_PREFIX = "SDX_TELEMETRY_"

StringList = Annotated[tuple[str, ...], NoDecode]


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class TelemetrySettings(BaseSettings):
    """Telemetry client settings read from ``SDX_TELEMETRY_*`` variables."""

    model_config = prefixed_settings_config(ENV_PREFIX)

    dsn: str
    api_key: str
    enabled: bool = True
    environment: str = "production"
    release: str | None = None
    timeout: float = 2.0
    retry_attempts: int = 0
    async_dispatch: bool = True
    debug: bool = False
    log_level: LogLevel = "info"

    circuit_breaker_enabled: bool = True
    circuit_breaker_failure_threshold: int = 5
    circuit_breaker_timeout: float = 60.0
    circuit_breaker_half_open_attempts: int = 1
    circuit_breaker_store_timeout: float = 1.0

    scrub_fields: StringList = DEFAULT_SCRUB_FIELDS
    max_breadcrumbs: int = DEFAULT_MAX_BREADCRUMBS

    session_tracking_enabled: bool = True
    track_page_views: bool = True
    session_idle_timeout: int = DEFAULT_IDLE_TIMEOUT_SECONDS
    session_ignored_routes: StringList = ()
    session_ignored_paths: StringList = DEFAULT_IGNORED_PATHS

    redis_url: str | None = None

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("dsn", "api_key", mode="before")
    @classmethod
    def _validate_required_string(
        cls, value: object, info: ValidationInfo
    ) -> object:
        if not isinstance(value, str):
            return value
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be non-empty")
        return normalized

    @field_validator(
        "scrub_fields",
        "session_ignored_routes",
        "session_ignored_paths",
        mode="before",
    )
    @classmethod
    def _split_comma_separated(cls, value: object) -> object:
        if isinstance(value, str):
            return tuple(item.strip() for item in value.split(",") if item.strip())
        return value

    @field_validator("release", "redis_url", mode="before")
    @classmethod
    def _blank_as_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _validate_telemetry_settings(self) -> TelemetrySettings:
        try:
            parse_dsn(self.dsn)
        except ConfigError as exc:
            raise ValueError(f"dsn is invalid: {exc}") from exc

        if not 0.5 <= self.timeout <= 5.0:
            raise ValueError("timeout must be between 0.5 and 5.0 seconds")
        if not 0 <= self.retry_attempts <= 3:
            raise ValueError("retry_attempts must be between 0 and 3")
        if self.circuit_breaker_failure_threshold < 1:
            raise ValueError("circuit_breaker_failure_threshold must be >= 1")
        if self.circuit_breaker_timeout < 10:
            raise ValueError("circuit_breaker_timeout must be >= 10 seconds")
        if self.circuit_breaker_half_open_attempts < 1:
            raise ValueError("circuit_breaker_half_open_attempts must be >= 1")
        if self.circuit_breaker_store_timeout <= 0:
            raise ValueError("circuit_breaker_store_timeout must be > 0")
        if not MIN_BREADCRUMBS <= self.max_breadcrumbs <= MAX_BREADCRUMBS:
            raise ValueError(
                f"max_breadcrumbs must be between {MIN_BREADCRUMBS} "
                f"and {MAX_BREADCRUMBS}"
            )
        if not (
            MIN_IDLE_TIMEOUT_SECONDS
            <= self.session_idle_timeout
            <= MAX_IDLE_TIMEOUT_SECONDS
        ):
            raise ValueError(
                f"session_idle_timeout must be between {MIN_IDLE_TIMEOUT_SECONDS} "
                f"and {MAX_IDLE_TIMEOUT_SECONDS} seconds"
            )
        return self

    def breaker_config(self) -> CircuitBreakerConfig:
        """Build the circuit breaker configuration."""
        return CircuitBreakerConfig(
            enabled=self.circuit_breaker_enabled,
            failure_threshold=self.circuit_breaker_failure_threshold,
            timeout=self.circuit_breaker_timeout,
            max_half_open_attempts=self.circuit_breaker_half_open_attempts,
            store_timeout=self.circuit_breaker_store_timeout,
        )

    def build_state_store(self) -> AbstractStateStore:
        """Build the shared breaker store; Redis when ``redis_url`` is set."""
        if self.redis_url:
            return RedisStateStore.from_url(
                self.redis_url, socket_timeout=self.circuit_breaker_store_timeout
            )
        return InMemoryStateStore()

    def configure_logging(self) -> None:
        """Configure structlog output at ``log_level``."""
        configure_structlog(log_level=self.log_level)
