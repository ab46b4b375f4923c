"""Request, server, and user context for error reports.

Context collection never raises: each section degrades to ``None`` (or an
empty mapping) on failure and :meth:`ContextCollector.collect_context`
returns whatever it assembled before the failure.
"""

from __future__ import annotations

import hashlib
import ipaddress
import platform
import socket
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Protocol

REDACTED = "[REDACTED]"
DEFAULT_SCRUB_FIELDS: tuple[str, ...] = (
    "password",
    "token",
    "api_key",
    "secret",
    "authorization",
)
_IPV6_KEPT_PREFIX_BITS = 48
TRACKING_SESSION_KEY = "_sdx_telemetry_session_id"


class SessionStore(Protocol):
    """Host-provided per-user session storage."""

    @property
    def session_id(self) -> str:
        """Return the host session identifier."""

    def get(self, key: str, default: object = None) -> object:
        """Return a stored session value."""

    def set(self, key: str, value: object) -> None:
        """Store a session value."""


@dataclass(frozen=True)
class RequestContext:
    """Host view of the request currently being handled."""

    url: str
    method: str = "GET"
    path: str = "/"
    query_string: str | None = None
    headers: Mapping[str, str | Sequence[str]] = field(default_factory=dict)
    data: Mapping[str, object] = field(default_factory=dict)
    cookies: Mapping[str, object] = field(default_factory=dict)
    client_ip: str | None = None
    route: str | None = None
    session: SessionStore | None = None

    @property
    def user_agent(self) -> str | None:
        for name, value in self.headers.items():
            if name.lower() == "user-agent":
                return _join_header(value)
        return None


_current_request: ContextVar[RequestContext | None] = ContextVar(
    "sdx_telemetry_current_request", default=None
)


def current_request() -> RequestContext | None:
    """Return the request bound to the running task or thread, if any."""
    return _current_request.get()


@contextmanager
def bind_request(request: RequestContext) -> Iterator[RequestContext]:
    """Bind ``request`` as the current request for the enclosed block."""
    token = _current_request.set(request)
    try:
        yield request
    finally:
        _current_request.reset(token)


def _join_header(value: str | Sequence[str]) -> str:
    if isinstance(value, str):
        return value
    return ", ".join(str(item) for item in value)


def _is_sensitive(key: object, fields: Sequence[str]) -> bool:
    lowered = str(key).lower()
    return any(name.lower() in lowered for name in fields)


def scrub(value: object, fields: Sequence[str] = DEFAULT_SCRUB_FIELDS) -> object:
    """Return a copy of ``value`` with sensitive mapping entries redacted.

    Walks mappings and sequences recursively. A mapping entry whose key
    contains any of ``fields`` (case-insensitive) is replaced with
    ``REDACTED`` whatever its value; scalars pass through unchanged.
    """
    if isinstance(value, Mapping):
        return {
            key: REDACTED if _is_sensitive(key, fields) else scrub(item, fields)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [scrub(item, fields) for item in value]
    return value


def anonymize_ip(ip: str | None) -> str | None:
    """Mask the host part of an address.

    IPv4 keeps the first three octets; IPv6 keeps the leading 48 bits. Values
    that are not IP addresses are returned unchanged.
    """
    if ip is None:
        return None
    try:
        address = ipaddress.ip_address(ip.strip())
    except ValueError:
        return ip

    if isinstance(address, ipaddress.IPv4Address):
        return str(ipaddress.IPv4Address(int(address) & 0xFFFFFF00))

    host_bits = address.max_prefixlen - _IPV6_KEPT_PREFIX_BITS
    mask = ~((1 << host_bits) - 1) & ((1 << address.max_prefixlen) - 1)
    return str(ipaddress.IPv6Address(int(address) & mask))


def session_hash(session_id: str) -> str:
    """Return the SHA-256 hex digest used to correlate sessions anonymously."""
    return hashlib.sha256(session_id.encode("utf-8")).hexdigest()


class ContextCollector:
    """Collect scrubbed request, user, and server context for error reports."""

    def __init__(
        self,
        *,
        scrub_fields: Sequence[str] = DEFAULT_SCRUB_FIELDS,
        environment: str = "production",
        release: str | None = None,
        request_provider: Callable[[], RequestContext | None] | None = None,
    ) -> None:
        """Create a context collector.

        Args:
            scrub_fields: Key fragments whose values are redacted.
            environment: Deployment environment name.
            release: Application release identifier.
            request_provider: Returns the current request. Defaults to the
                request bound with :func:`bind_request`.
        """
        self.scrub_fields = tuple(scrub_fields)
        self.environment = environment
        self.release = release
        self._request_provider = (
            current_request if request_provider is None else request_provider
        )

    def collect_context(self) -> dict[str, object]:
        """Collect the full context, returning partial results on failure."""
        context: dict[str, object] = {
            "environment": self.environment,
            "release": self.release,
        }
        try:
            context["request"] = self.collect_request()
            context["user"] = self.collect_user()
            context["server"] = self.collect_server()
        except Exception:
            return context
        return context

    def collect_request(self) -> dict[str, object] | None:
        try:
            request = self._request_provider()
            if request is None:
                return None
            headers = {
                name: _join_header(value) for name, value in request.headers.items()
            }
            return {
                "url": request.url,
                "method": request.method,
                "query_string": request.query_string,
                "headers": scrub(headers, self.scrub_fields),
                "data": scrub(dict(request.data), self.scrub_fields),
                "cookies": scrub(dict(request.cookies), self.scrub_fields),
                "ip_address": anonymize_ip(request.client_ip),
                "user_agent": request.user_agent,
            }
        except Exception:
            return None

    def collect_user(self) -> dict[str, object] | None:
        try:
            request = self._request_provider()
            if request is None or request.session is None:
                return None
            session_id = request.session.session_id
            return {
                "id": session_id,
                "session_id": session_id,
                "ip_address": anonymize_ip(request.client_ip),
            }
        except Exception:
            return None

    def collect_server(self) -> dict[str, object]:
        try:
            return {
                "python_version": platform.python_version(),
                "python_implementation": platform.python_implementation(),
                "os": platform.system(),
                "os_release": platform.release(),
                "server_name": socket.gethostname() or "unknown",
            }
        except Exception:
            return {}

    def get_session_hash(self) -> str | None:
        """Return the hashed tracking session id of the current request, if any."""
        try:
            request = self._request_provider()
            if request is None or request.session is None:
                return None
            tracked = request.session.get(TRACKING_SESSION_KEY)
            if not isinstance(tracked, str) or not tracked:
                return None
            return session_hash(tracked)
        except Exception:
            return None
