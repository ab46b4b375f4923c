from __future__ import annotations

from datetime import UTC, datetime
from typing import cast

import pytest

from sdx_telemetry.payload import (
    MAX_FILE_LENGTH,
    MAX_MESSAGE_LENGTH,
    MAX_TYPE_LENGTH,
    build_error_payload,
    exception_type_name,
    normalize_level,
    parse_stack_trace,
    stamp_error_payload,
    truncate,
)


class _OrderFailed(Exception):
    pass


def _raise_nested() -> None:
    def _inner() -> None:
        raise _OrderFailed("order 42 failed")

    _inner()


def _captured() -> _OrderFailed:
    try:
        _raise_nested()
    except _OrderFailed as exc:
        return exc
    raise AssertionError("unreachable")


def test_truncate_marks_cut_values() -> None:
    assert truncate("abc", 3) == "abc"
    assert truncate("abcdef", 5) == "ab..."


@pytest.mark.parametrize(
    ("level", "expected"),
    [
        (None, "error"),
        ("WARNING", "warning"),
        ("critical", "fatal"),
        ("verbose", "error"),
        (" debug ", "debug"),
    ],
)
def test_normalize_level(level: str | None, expected: str) -> None:
    assert normalize_level(level) == expected


def test_exception_type_name_qualifies_non_builtin_types() -> None:
    assert exception_type_name(ValueError("x")) == "ValueError"
    assert exception_type_name(_OrderFailed()).endswith("test_payload._OrderFailed")


def test_parse_stack_trace_lists_frames_outermost_first() -> None:
    frames = parse_stack_trace(_captured())

    assert [frame["function"] for frame in frames] == [
        "_captured",
        "_raise_nested",
        "_inner",
    ]
    assert all(cast(int, frame["line"]) >= 1 for frame in frames)
    assert all(frame["in_app"] is True for frame in frames)


def test_parse_stack_trace_without_traceback_is_empty() -> None:
    assert parse_stack_trace(ValueError("never raised")) == []


def test_build_error_payload_required_fields() -> None:
    exc = _captured()

    payload = build_error_payload(exc)

    assert payload["type"] == exception_type_name(exc)
    assert payload["message"] == "order 42 failed"
    assert str(payload["file"]).endswith("test_payload.py")
    assert isinstance(payload["line"], int) and payload["line"] >= 1
    assert payload["level"] == "error"
    assert payload["source"] == "backend"
    assert payload["environment"] == "production"
    assert payload["tags"] == {"exception_class": exception_type_name(exc)}


def test_build_error_payload_uses_supplied_timestamp() -> None:
    now = datetime(2024, 5, 6, 7, 8, 9, tzinfo=UTC)

    payload = build_error_payload(_captured(), now=now)

    assert payload["timestamp"] == "2024-05-06T07:08:09+00:00"


def test_build_error_payload_for_unraised_exception_uses_unknown_origin() -> None:
    payload = build_error_payload(RuntimeError("x"))

    assert payload["file"] == "unknown"
    assert payload["line"] == 1
    assert payload["stack_trace"] == []


def test_build_error_payload_flattens_context() -> None:
    context = {
        "environment": "staging",
        "release": "2.0.0",
        "request": {
            "url": "https://app.local/x",
            "method": "PUT",
            "ip_address": "10.1.2.0",
            "user_agent": "ua",
        },
        "server": {"server_name": "web-1", "python_version": "3.12.1"},
    }

    payload = build_error_payload(
        RuntimeError("x"),
        context=context,
        breadcrumbs=[{"message": "before"}],
        level="critical",
        source="worker",
        session_hash="h",
        tags={"team": "core"},
    )

    assert payload["environment"] == "staging"
    assert payload["release"] == "2.0.0"
    assert payload["url"] == "https://app.local/x"
    assert payload["http_method"] == "PUT"
    assert payload["ip_address"] == "10.1.2.0"
    assert payload["user_agent"] == "ua"
    assert payload["server_name"] == "web-1"
    assert payload["session_hash"] == "h"
    assert payload["level"] == "fatal"
    assert payload["source"] == "worker"
    assert payload["breadcrumbs"] == [{"message": "before"}]
    assert payload["context"] == {"server_name": "web-1", "python_version": "3.12.1"}
    assert payload["tags"] == {"exception_class": "RuntimeError", "team": "core"}


def test_build_error_payload_truncates_long_message() -> None:
    payload = build_error_payload(RuntimeError("m" * 2000))

    assert len(payload["message"]) == MAX_MESSAGE_LENGTH  # type: ignore[arg-type]


def test_stamp_error_payload_adds_defaults_and_truncates() -> None:
    now = datetime(2024, 6, 1, 8, 0, tzinfo=UTC)

    stamped = stamp_error_payload(
        {"type": "T" * 300, "message": "m" * 1200, "file": "f" * 600, "line": 3},
        now=now,
    )

    assert stamped["timestamp"] == "2024-06-01T08:00:00+00:00"
    assert stamped["platform"] == "python"
    assert len(stamped["type"]) == MAX_TYPE_LENGTH  # type: ignore[arg-type]
    assert len(stamped["message"]) == MAX_MESSAGE_LENGTH  # type: ignore[arg-type]
    assert len(stamped["file"]) == MAX_FILE_LENGTH  # type: ignore[arg-type]
    assert stamped["line"] == 3


def test_stamp_error_payload_keeps_caller_values() -> None:
    now = datetime(2024, 6, 1, tzinfo=UTC)
    caller_payload = {"timestamp": datetime(2023, 1, 1, tzinfo=UTC), "platform": "php"}

    stamped = stamp_error_payload(caller_payload, now=now)

    assert stamped["timestamp"] == "2023-01-01T00:00:00+00:00"
    assert stamped["platform"] == "php"
    assert isinstance(caller_payload["timestamp"], datetime)
