"""Telemetry events and error payload assembly.

The ingestion API validates field lengths (type 255, message 1000, file 500)
and requires ``line >= 1``; payloads are shaped here so they never fail that
validation.
"""

from __future__ import annotations

import platform
import sysconfig
import traceback
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import cast

MAX_TYPE_LENGTH = 255
MAX_MESSAGE_LENGTH = 1000
MAX_FILE_LENGTH = 500
ERROR_LEVELS = frozenset({"debug", "info", "warning", "error", "fatal"})
PLATFORM = "python"

_THIRD_PARTY_MARKERS = ("site-packages", "dist-packages")
_STDLIB_PATH = sysconfig.get_paths().get("stdlib", "")


class EventKind(StrEnum):
    """Kinds of events accepted by ``TelemetryClient.submit_event``."""

    ERROR = "error"
    SESSION_CREATE = "session-create"
    SESSION_EVENT = "session-event"
    SESSION_END = "session-end"


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class TelemetryEvent:
    """One event handed over by a host integration point."""

    kind: EventKind
    payload: dict[str, object]
    timestamp: datetime = field(default_factory=utcnow)


def truncate(value: str, limit: int) -> str:
    """Cut ``value`` to ``limit`` characters, marking the cut with ``...``."""
    if len(value) <= limit:
        return value
    return value[: limit - 3] + "..."


def normalize_level(level: str | None) -> str:
    if level is None:
        return "error"
    normalized = level.strip().lower()
    if normalized == "critical":
        return "fatal"
    return normalized if normalized in ERROR_LEVELS else "error"


def exception_type_name(exc: BaseException) -> str:
    exc_type = type(exc)
    if exc_type.__module__ == "builtins":
        return exc_type.__qualname__
    return f"{exc_type.__module__}.{exc_type.__qualname__}"


def _is_in_app(filename: str) -> bool:
    if any(marker in filename for marker in _THIRD_PARTY_MARKERS):
        return False
    if _STDLIB_PATH and filename.startswith(_STDLIB_PATH):
        return False
    return True


def parse_stack_trace(exc: BaseException) -> list[dict[str, object]]:
    """Return the exception's frames, outermost call first."""
    frames: list[dict[str, object]] = []
    try:
        for frame, lineno in traceback.walk_tb(exc.__traceback__):
            filename = frame.f_code.co_filename or "unknown"
            module = frame.f_globals.get("__name__")
            frames.append(
                {
                    "file": filename,
                    "line": lineno if lineno and lineno > 0 else 1,
                    "function": frame.f_code.co_name or "unknown",
                    "module": module if isinstance(module, str) else None,
                    "in_app": _is_in_app(filename),
                }
            )
    except Exception:
        return []
    return frames


def _origin(frames: Sequence[Mapping[str, object]]) -> tuple[str, int]:
    if not frames:
        return "unknown", 1
    innermost = frames[-1]
    return str(innermost["file"]), cast(int, innermost["line"])


def _section(context: Mapping[str, object], name: str) -> Mapping[str, object]:
    value = context.get(name)
    return value if isinstance(value, Mapping) else {}


def build_error_payload(
    exc: BaseException,
    *,
    context: Mapping[str, object] | None = None,
    breadcrumbs: Sequence[Mapping[str, object]] = (),
    level: str = "error",
    source: str = "backend",
    session_hash: str | None = None,
    tags: Mapping[str, str] | None = None,
    now: datetime | None = None,
) -> dict[str, object]:
    """Assemble the ingestion payload for ``exc``.

    Falls back to the required fields alone if optional context cannot be
    assembled.
    """
    exc_type = exception_type_name(exc)
    stack_trace = parse_stack_trace(exc)
    file, line = _origin(stack_trace)
    required: dict[str, object] = {
        "type": truncate(exc_type, MAX_TYPE_LENGTH),
        "message": truncate(str(exc), MAX_MESSAGE_LENGTH),
        "file": truncate(file, MAX_FILE_LENGTH),
        "line": line,
        "stack_trace": stack_trace,
        "level": normalize_level(level),
        "source": source,
        "timestamp": (utcnow() if now is None else now).isoformat(),
    }

    try:
        context = {} if context is None else context
        request = _section(context, "request")
        server = _section(context, "server")
        optional: dict[str, object] = {
            "environment": context.get("environment") or "production",
            "release": context.get("release"),
            "session_hash": session_hash,
            "server_name": server.get("server_name"),
            "url": request.get("url"),
            "http_method": request.get("method"),
            "ip_address": request.get("ip_address"),
            "user_agent": request.get("user_agent"),
            "runtime": f"Python {platform.python_version()}",
            "breadcrumbs": [dict(crumb) for crumb in breadcrumbs],
            "request_data": dict(request) or None,
            "context": dict(server),
            "tags": {"exception_class": exc_type, **(tags or {})},
        }
    except Exception:
        return required
    return {**required, **optional}


def stamp_error_payload(
    payload: Mapping[str, object], *, now: datetime
) -> dict[str, object]:
    """Copy ``payload`` with default timestamp/platform and truncated fields."""
    stamped = dict(payload)
    stamped.setdefault("timestamp", now.isoformat())
    stamped.setdefault("platform", PLATFORM)
    for key, limit in (
        ("type", MAX_TYPE_LENGTH),
        ("message", MAX_MESSAGE_LENGTH),
        ("file", MAX_FILE_LENGTH),
    ):
        value = stamped.get(key)
        if isinstance(value, str):
            stamped[key] = truncate(value, limit)
    timestamp = stamped.get("timestamp")
    if isinstance(timestamp, datetime):
        stamped["timestamp"] = timestamp.isoformat()
    return stamped
