"""DSN parsing and ingestion URL derivation.

DSN format: ``{scheme}://{host}[:port]/{project_id}``, for example
``https://localhost:8111/b6d8ed85-c0af-4c02-b6bb-bfb0f3609b37``.

The API key is never part of the DSN. It is configured separately and sent as
the ``X-Api-Key`` header.
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import quote, urlsplit

from sdx_telemetry.errors import ConfigError

INGEST_PATH = "/api/errors/ingest"
SESSIONS_PATH = "/api/v1/sessions"
_EXPECTED_FORMAT = "Expected: https://host/project-id"


@dataclass(frozen=True)
class Dsn:
    """Parsed DSN components."""

    scheme: str
    host: str
    port: int | None
    project_id: str

    @property
    def host_with_port(self) -> str:
        """Return ``host[:port]``, bracketing IPv6 literals."""
        host = f"[{self.host}]" if ":" in self.host else self.host
        if self.port is None:
            return host
        return f"{host}:{self.port}"

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host_with_port}"

    @property
    def endpoint(self) -> str:
        """Error ingestion endpoint."""
        return f"{self.base_url}{INGEST_PATH}"

    @property
    def sessions_endpoint(self) -> str:
        return f"{self.base_url}{SESSIONS_PATH}"

    def session_events_endpoint(self, session_id: str) -> str:
        return f"{self.sessions_endpoint}/{quote(session_id, safe='')}/events"

    def session_end_endpoint(self, session_id: str) -> str:
        return f"{self.sessions_endpoint}/{quote(session_id, safe='')}/end"


def parse_dsn(dsn: str) -> Dsn:
    """Parse a DSN string.

    Raises:
        ConfigError: When the DSN is empty, lacks a scheme, host or path, has
            an invalid port, or carries no project id.
    """
    if not dsn or not dsn.strip():
        raise ConfigError("DSN cannot be empty")

    parsed = urlsplit(dsn.strip())
    if not parsed.scheme or not parsed.hostname or not parsed.path:
        raise ConfigError(f"Invalid DSN format. {_EXPECTED_FORMAT}")

    try:
        port = parsed.port
    except ValueError as exc:
        raise ConfigError(f"Invalid DSN port: {exc}. {_EXPECTED_FORMAT}") from exc

    project_id = parsed.path.strip("/")
    if not project_id:
        raise ConfigError("DSN must include project ID in path")

    return Dsn(
        scheme=parsed.scheme,
        host=parsed.hostname,
        port=port,
        project_id=project_id,
    )


def generate_dsn(base_url: str, project_id: str) -> str:
    """Build a DSN for ``project_id`` on the ingestion host at ``base_url``."""
    return f"{base_url.rstrip('/')}/{project_id}"
