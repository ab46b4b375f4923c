"""Bounded trail of activity leading up to an error."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sdx_telemetry.errors import ConfigError

DEFAULT_MAX_BREADCRUMBS = 50
MIN_BREADCRUMBS = 10
MAX_BREADCRUMBS = 100
SLOW_OPERATION_SECONDS = 1.0


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class Breadcrumb:
    """One recorded activity."""

    timestamp: str
    level: str = "info"
    type: str = "default"
    category: str = "manual"
    message: str = ""
    data: Mapping[str, object] = field(default_factory=dict)

    def to_payload(self) -> dict[str, object]:
        return {
            "timestamp": self.timestamp,
            "level": self.level,
            "type": self.type,
            "category": self.category,
            "message": self.message,
            "data": dict(self.data),
        }


class BreadcrumbRing:
    """Insertion-ordered breadcrumbs; the oldest entry is evicted past capacity."""

    def __init__(self, max_breadcrumbs: int = DEFAULT_MAX_BREADCRUMBS) -> None:
        if not MIN_BREADCRUMBS <= max_breadcrumbs <= MAX_BREADCRUMBS:
            raise ConfigError(
                f"max_breadcrumbs must be between {MIN_BREADCRUMBS} "
                f"and {MAX_BREADCRUMBS}"
            )
        self.max_breadcrumbs = max_breadcrumbs
        self._entries: deque[Breadcrumb] = deque(maxlen=max_breadcrumbs)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Breadcrumb]:
        return iter(self.get())

    def add(self, entry: Mapping[str, object] | None = None) -> None:
        """Append a breadcrumb, filling any missing field with its default."""
        entry = {} if entry is None else entry
        try:
            timestamp = entry.get("timestamp")
            if isinstance(timestamp, datetime):
                timestamp = timestamp.isoformat()
            data = entry.get("data")
            breadcrumb = Breadcrumb(
                timestamp=str(timestamp) if timestamp else _now_iso(),
                level=str(entry.get("level") or "info"),
                type=str(entry.get("type") or "default"),
                category=str(entry.get("category") or "manual"),
                message=str(entry.get("message") or ""),
                data=dict(data) if isinstance(data, Mapping) else {},
            )
        except Exception:
            return
        self._entries.append(breadcrumb)

    def get(self) -> list[Breadcrumb]:
        """Return a snapshot, oldest first."""
        return list(self._entries)

    def as_payload(self) -> list[dict[str, object]]:
        return [breadcrumb.to_payload() for breadcrumb in self._entries]

    def clear(self) -> None:
        self._entries.clear()

    def add_http_request(
        self, method: str, url: str, status_code: int, duration: float
    ) -> None:
        slow_or_failed = status_code >= 400 or duration > SLOW_OPERATION_SECONDS
        self.add(
            {
                "type": "http",
                "category": "http",
                "message": f"{method} {url}",
                "level": "warning" if slow_or_failed else "info",
                "data": {
                    "method": method,
                    "url": url,
                    "status_code": status_code,
                    "duration": duration,
                },
            }
        )

    def add_database_query(self, query: str, duration: float) -> None:
        self.add(
            {
                "type": "query",
                "category": "database",
                "message": query,
                "level": "warning" if duration > SLOW_OPERATION_SECONDS else "info",
                "data": {"query": query, "duration": duration},
            }
        )

    def add_navigation(self, from_: str, to: str) -> None:
        self.add(
            {
                "type": "navigation",
                "category": "navigation",
                "message": f"Navigated from {from_} to {to}",
                "data": {"from": from_, "to": to},
            }
        )

    def add_user_action(
        self, action: str, data: Mapping[str, object] | None = None
    ) -> None:
        self.add(
            {
                "type": "user",
                "category": "action",
                "message": action,
                "data": {} if data is None else data,
            }
        )
