"""Circuit breaker state primitives."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class CircuitState(StrEnum):
    """Circuit breaker state values."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class BreakerSnapshot:
    """Point-in-time view of the shared breaker state.

    Attributes:
        state: Persisted breaker state.
        failure_count: Count of consecutive failures while ``CLOSED``.
        opened_at: When the breaker entered ``OPEN``, or when the current
            ``HALF_OPEN`` trial window started.
        half_open_attempts: Trial calls let through in the current
            ``HALF_OPEN`` window.
    """

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    opened_at: datetime | None = None
    half_open_attempts: int = 0

    @property
    def is_clean(self) -> bool:
        return (
            self.state == CircuitState.CLOSED
            and self.failure_count == 0
            and self.opened_at is None
            and self.half_open_attempts == 0
        )

    def to_mapping(self) -> dict[str, object]:
        """Serialize to a plain, JSON-safe mapping for storage and monitoring."""
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "opened_at": None if self.opened_at is None else self.opened_at.isoformat(),
            "half_open_attempts": self.half_open_attempts,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> BreakerSnapshot:
        """Rebuild a snapshot from :meth:`to_mapping` output.

        Raises:
            ValueError: When the mapping holds an unknown state or bad values.
        """
        opened_at = data.get("opened_at")
        failure_count = data.get("failure_count", 0)
        half_open_attempts = data.get("half_open_attempts", 0)
        if not isinstance(failure_count, int) or not isinstance(
            half_open_attempts, int
        ):
            raise ValueError("breaker counters must be integers")
        if opened_at is not None and not isinstance(opened_at, str):
            raise ValueError("opened_at must be an ISO-8601 string")
        return cls(
            state=CircuitState(str(data.get("state", CircuitState.CLOSED))),
            failure_count=failure_count,
            opened_at=None if opened_at is None else datetime.fromisoformat(opened_at),
            half_open_attempts=half_open_attempts,
        )
