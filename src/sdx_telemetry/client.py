"""Telemetry client for the error and session ingestion API.

Resilience guarantees:
  - Public operations never raise; every failure is contained and, when the
    debug flag is set, logged.
  - Wall-clock exposure per call is bounded by
    ``timeout * (1 + retry_attempts)`` plus at most 2 seconds of backoff per
    retry.
  - A shared circuit breaker short-circuits calls while the API is known to
    be down.
  - In fire-and-forget mode the call returns once delivery is scheduled.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable, Mapping, Sequence
from contextlib import suppress
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import httpx
from tenacity import RetryCallState, retry_if_exception_type

from sdx_telemetry.breadcrumbs import BreadcrumbRing
from sdx_telemetry.circuit_breaker import AbstractStateStore, CircuitBreaker
from sdx_telemetry.context import ContextCollector
from sdx_telemetry.dsn import parse_dsn
from sdx_telemetry.errors import ConfigError, EncodingError, TransportError
from sdx_telemetry.logging import (
    TelemetryLogger,
    get_logger,
    log_debug,
    log_error,
    log_warning,
)
from sdx_telemetry.payload import (
    EventKind,
    TelemetryEvent,
    build_error_payload,
    stamp_error_payload,
    utcnow,
)
from sdx_telemetry.retry import (
    RetryBackoffPolicy,
    build_exponential_retrying,
    build_interruptible_sleep,
)

if TYPE_CHECKING:
    from sdx_telemetry.settings import TelemetrySettings

CLIENT_NAME = "sdx-telemetry"
CLIENT_VERSION = "0.1.0"
USER_AGENT = f"{CLIENT_NAME}/{CLIENT_VERSION}"
EXPECTED_STATUS = 202
MIN_TIMEOUT_SECONDS = 0.5
MAX_TIMEOUT_SECONDS = 5.0
MAX_RETRY_ATTEMPTS = 3


class DispatchOutcome(StrEnum):
    """What happened to one telemetry call."""

    DISABLED = "disabled"
    CIRCUIT_OPEN = "circuit_open"
    ENCODING_FAILED = "encoding_failed"
    INVALID = "invalid"
    DISPATCHED = "dispatched"
    SENT = "sent"
    UNEXPECTED_STATUS = "unexpected_status"
    FAILED = "failed"


class TelemetryClient:
    """Breaker-gated, bounded-retry client for the ingestion API."""

    def __init__(
        self,
        *,
        dsn: str,
        api_key: str,
        breaker: CircuitBreaker | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 2.0,
        retry_attempts: int = 0,
        async_dispatch: bool = True,
        enabled: bool = True,
        context_collector: ContextCollector | None = None,
        breadcrumbs: BreadcrumbRing | None = None,
        logger: TelemetryLogger | None = None,
        debug: bool = False,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Create a telemetry client.

        Args:
            dsn: Project DSN, ``https://host[:port]/project-id``.
            api_key: Static API key sent as ``X-Api-Key``.
            breaker: Shared circuit breaker. Defaults to a private breaker.
            http_client: Shared async HTTP client. When omitted the client
                owns one and closes it in :meth:`aclose`.
            timeout: Per-attempt timeout in seconds, 0.5 to 5.0.
            retry_attempts: Retries after a transport failure, 0 to 3.
            async_dispatch: Return once delivery is scheduled instead of
                waiting for the response.
            enabled: When false every operation is a no-op.
            context_collector: Request/server context source for
                :meth:`capture_exception`.
            breadcrumbs: Breadcrumb trail attached to captured exceptions.
            logger: Structured logger.
            debug: Log contained failures when true.
            sleep: Backoff sleep. Defaults to a sleep cut short by
                :meth:`aclose`.
            clock: Returns the current aware UTC time.

        Raises:
            ConfigError: On an invalid DSN, API key, timeout or retry count.
        """
        if not api_key or not api_key.strip():
            raise ConfigError("api_key cannot be empty")
        if not MIN_TIMEOUT_SECONDS <= timeout <= MAX_TIMEOUT_SECONDS:
            raise ConfigError(
                f"timeout must be between {MIN_TIMEOUT_SECONDS:g} and "
                f"{MAX_TIMEOUT_SECONDS:g} seconds"
            )
        if not 0 <= retry_attempts <= MAX_RETRY_ATTEMPTS:
            raise ConfigError(
                f"retry_attempts must be between 0 and {MAX_RETRY_ATTEMPTS}"
            )

        self.dsn = parse_dsn(dsn)
        self._api_key = api_key.strip()
        self._timeout = timeout
        self._retry_policy = RetryBackoffPolicy.from_retry_attempts(retry_attempts)
        self._async_dispatch = async_dispatch
        self._enabled = enabled
        self._logger = get_logger(__name__) if logger is None else logger
        self._debug = debug
        self._breaker = (
            CircuitBreaker(logger=self._logger, debug=debug)
            if breaker is None
            else breaker
        )
        self._owns_http_client = http_client is None
        self._owned_store: AbstractStateStore | None = None
        self._http = (
            httpx.AsyncClient(timeout=httpx.Timeout(timeout))
            if http_client is None
            else http_client
        )
        self.context = (
            ContextCollector() if context_collector is None else context_collector
        )
        self.breadcrumbs = BreadcrumbRing() if breadcrumbs is None else breadcrumbs
        self._stop_event = asyncio.Event()
        self._sleep = (
            build_interruptible_sleep(self._stop_event) if sleep is None else sleep
        )
        self._clock = utcnow if clock is None else clock
        self._pending: set[asyncio.Task[DispatchOutcome]] = set()
        self._headers = {
            "Content-Type": "application/json",
            "X-Api-Key": self._api_key,
            "User-Agent": USER_AGENT,
        }

    @classmethod
    def from_settings(
        cls,
        settings: TelemetrySettings,
        *,
        store: AbstractStateStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        logger: TelemetryLogger | None = None,
    ) -> TelemetryClient:
        """Wire a client, breaker, collectors and state store from settings."""
        logger = get_logger(__name__) if logger is None else logger
        owned_store = settings.build_state_store() if store is None else None
        breaker = CircuitBreaker(
            settings.breaker_config(),
            store=store if owned_store is None else owned_store,
            logger=logger,
            debug=settings.debug,
        )
        client = cls(
            dsn=settings.dsn,
            api_key=settings.api_key,
            breaker=breaker,
            http_client=http_client,
            timeout=settings.timeout,
            retry_attempts=settings.retry_attempts,
            async_dispatch=settings.async_dispatch,
            enabled=settings.enabled,
            context_collector=ContextCollector(
                scrub_fields=settings.scrub_fields,
                environment=settings.environment,
                release=settings.release,
            ),
            breadcrumbs=BreadcrumbRing(settings.max_breadcrumbs),
            logger=logger,
            debug=settings.debug,
        )
        client._owned_store = owned_store
        return client

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def pending_deliveries(self) -> int:
        return len(self._pending)

    async def __aenter__(self) -> TelemetryClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def send_error(self, payload: Mapping[str, object]) -> None:
        """Send one error payload to the ingest endpoint. Never raises."""
        await self._guarded("send_error", self._send_error, payload)

    async def create_session(self, data: Mapping[str, object]) -> None:
        """Create or refresh a tracked session. Never raises."""
        await self._guarded("create_session", self._create_session, data)

    async def add_session_event(
        self,
        session_id: str,
        data: Mapping[str, object] | Sequence[Mapping[str, object]],
    ) -> None:
        """Attach one event, or a list of events, to a session. Never raises."""
        await self._guarded(
            "add_session_event", self._add_session_event, session_id, data
        )

    async def end_session(
        self, session_id: str, ended_at: datetime | None = None
    ) -> None:
        """Mark a session as ended, now unless ``ended_at`` is given. Never raises."""
        await self._guarded("end_session", self._end_session, session_id, ended_at)

    async def capture_exception(
        self,
        exc: BaseException,
        *,
        level: str = "error",
        source: str = "backend",
        tags: Mapping[str, str] | None = None,
    ) -> None:
        """Report ``exc`` with request context and breadcrumbs. Never raises."""
        await self._guarded(
            "capture_exception", self._capture_exception, exc, level, source, tags
        )

    async def submit_event(
        self, kind: EventKind | str, payload: Mapping[str, object]
    ) -> None:
        """Route one host event to the matching operation. Never raises.

        Session events carry ``session_id`` in the payload; ``session-event``
        payloads may hold an ``events`` list, and ``session-end`` payloads an
        optional ``ended_at``.
        """
        await self._guarded("submit_event", self._submit_event, kind, payload)

    async def get_breaker_state(self) -> dict[str, object]:
        """Return the shared breaker state for health and monitoring surfaces."""
        snapshot = await self._breaker.get_state()
        return snapshot.to_mapping()

    async def flush(self, timeout: float | None = None) -> None:
        """Wait for scheduled fire-and-forget deliveries to finish."""
        pending = tuple(self._pending)
        if not pending:
            return
        await asyncio.wait(pending, timeout=timeout)

    async def aclose(self) -> None:
        """Cut pending backoff short, drain deliveries, close owned resources."""
        self._stop_event.set()
        await self.flush()
        if self._owns_http_client:
            await self._http.aclose()
        if self._owned_store is not None:
            await self._owned_store.aclose()

    async def _guarded(
        self,
        operation: str,
        func: Callable[..., Awaitable[DispatchOutcome]],
        *args: Any,
    ) -> DispatchOutcome:
        try:
            return await func(*args)
        except Exception as exc:
            self._log(
                log_error,
                "telemetry.unexpected_error",
                operation=operation,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return DispatchOutcome.FAILED

    async def _send_error(self, payload: Mapping[str, object]) -> DispatchOutcome:
        stamped = stamp_error_payload(payload, now=self._clock())
        return await self._submit("send_error", self.dsn.endpoint, stamped)

    async def _create_session(self, data: Mapping[str, object]) -> DispatchOutcome:
        session = dict(data)
        session.setdefault("started_at", self._clock().isoformat())
        return await self._submit("create_session", self.dsn.sessions_endpoint, session)

    async def _add_session_event(
        self,
        session_id: str,
        data: Mapping[str, object] | Sequence[Mapping[str, object]],
    ) -> DispatchOutcome:
        if not session_id:
            return self._invalid("add_session_event", "session_id is required")
        now = self._clock().isoformat()
        body: dict[str, object] | list[dict[str, object]]
        if isinstance(data, Mapping):
            body = {"timestamp": now, **data}
        else:
            body = [{"timestamp": now, **event} for event in data]
        return await self._submit(
            "add_session_event", self.dsn.session_events_endpoint(session_id), body
        )

    async def _end_session(
        self, session_id: str, ended_at: datetime | None
    ) -> DispatchOutcome:
        if not session_id:
            return self._invalid("end_session", "session_id is required")
        ended = self._clock() if ended_at is None else ended_at
        body = {"ended_at": ended.isoformat()}
        return await self._submit(
            "end_session", self.dsn.session_end_endpoint(session_id), body
        )

    async def _capture_exception(
        self,
        exc: BaseException,
        level: str,
        source: str,
        tags: Mapping[str, str] | None,
    ) -> DispatchOutcome:
        payload = build_error_payload(
            exc,
            context=self.context.collect_context(),
            breadcrumbs=self.breadcrumbs.as_payload(),
            level=level,
            source=source,
            session_hash=self.context.get_session_hash(),
            tags=tags,
            now=self._clock(),
        )
        outcome = await self._send_error(payload)
        self.breadcrumbs.add(
            {
                "type": "error",
                "category": "exception",
                "message": f"Exception captured: {exc}",
                "level": "error",
            }
        )
        return outcome

    async def _submit_event(
        self, kind: EventKind | str, payload: Mapping[str, object]
    ) -> DispatchOutcome:
        try:
            event = TelemetryEvent(kind=EventKind(kind), payload=dict(payload))
        except ValueError:
            return self._invalid("submit_event", f"unknown event kind {kind!r}")

        if event.kind == EventKind.ERROR:
            return await self._send_error(event.payload)
        if event.kind == EventKind.SESSION_CREATE:
            return await self._create_session(event.payload)

        data = dict(event.payload)
        session_id = data.pop("session_id", None)
        if not isinstance(session_id, str) or not session_id:
            return self._invalid("submit_event", "session_id is required")

        if event.kind == EventKind.SESSION_EVENT:
            events = data.pop("events", None)
            if isinstance(events, list):
                return await self._add_session_event(session_id, events)
            return await self._add_session_event(session_id, data)

        ended_at = data.get("ended_at")
        if isinstance(ended_at, str):
            ended_at = datetime.fromisoformat(ended_at)
        if not isinstance(ended_at, datetime):
            ended_at = event.timestamp
        return await self._end_session(session_id, ended_at)

    async def _submit(self, operation: str, url: str, body: object) -> DispatchOutcome:
        if not self._enabled:
            return DispatchOutcome.DISABLED

        if await self._breaker.is_open():
            self._log(log_debug, "telemetry.circuit_open", operation=operation)
            return DispatchOutcome.CIRCUIT_OPEN

        try:
            content = self._encode(body)
        except EncodingError as exc:
            self._log(
                log_error,
                "telemetry.encoding_failed",
                operation=operation,
                error=str(exc),
            )
            return DispatchOutcome.ENCODING_FAILED

        if self._async_dispatch:
            self._spawn(operation, url, content)
            return DispatchOutcome.DISPATCHED
        return await self._deliver(operation, url, content, check_status=True)

    @staticmethod
    def _encode(body: object) -> bytes:
        try:
            return json.dumps(body, allow_nan=False).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise EncodingError(str(exc)) from exc

    def _spawn(self, operation: str, url: str, content: bytes) -> None:
        task = asyncio.create_task(
            self._deliver(operation, url, content, check_status=False),
            name=f"sdx_telemetry:{operation}",
        )
        self._pending.add(task)
        task.add_done_callback(self._on_delivery_done)

    def _on_delivery_done(self, task: asyncio.Task[DispatchOutcome]) -> None:
        self._pending.discard(task)
        with suppress(asyncio.CancelledError, Exception):
            task.exception()

    async def _deliver(
        self,
        operation: str,
        url: str,
        content: bytes,
        *,
        check_status: bool,
    ) -> DispatchOutcome:
        try:
            response = await self._post_with_retry(url, content)
        except TransportError as exc:
            await self._breaker.record_failure()
            self._log(
                log_error,
                "telemetry.send_failed",
                operation=operation,
                url=url,
                error=str(exc),
            )
            return DispatchOutcome.FAILED
        except Exception as exc:
            self._log(
                log_error,
                "telemetry.unexpected_error",
                operation=operation,
                url=url,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return DispatchOutcome.FAILED

        outcome = DispatchOutcome.SENT
        if check_status and response.status_code != EXPECTED_STATUS:
            self._log(
                log_warning,
                "telemetry.unexpected_status",
                operation=operation,
                status_code=response.status_code,
                response=response.text[:500],
            )
            outcome = DispatchOutcome.UNEXPECTED_STATUS
        await self._breaker.record_success()
        return outcome

    async def _post_with_retry(self, url: str, content: bytes) -> httpx.Response:
        retrying = build_exponential_retrying(
            retry=retry_if_exception_type(TransportError),
            policy=self._retry_policy,
            sleep=self._sleep,
            before_sleep=self._log_retry,
        )
        async for attempt in retrying:
            with attempt:
                return await self._post_once(url, content)

        raise RuntimeError("Delivery retry loop exited unexpectedly.")

    async def _post_once(self, url: str, content: bytes) -> httpx.Response:
        try:
            return await asyncio.wait_for(
                self._http.post(
                    url,
                    content=content,
                    headers=self._headers,
                    timeout=self._timeout,
                ),
                timeout=self._timeout,
            )
        except TimeoutError as exc:
            raise TransportError(
                f"request timed out after {self._timeout:g}s"
            ) from exc
        except httpx.RequestError as exc:
            raise TransportError(str(exc) or type(exc).__name__) from exc

    def _log_retry(self, retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        next_action = retry_state.next_action
        self._log(
            log_warning,
            "telemetry.retrying",
            attempt=retry_state.attempt_number,
            delay=None if next_action is None else next_action.sleep,
            error=None if outcome is None else str(outcome.exception()),
        )

    def _invalid(self, operation: str, reason: str) -> DispatchOutcome:
        self._log(
            log_warning,
            "telemetry.invalid_event",
            operation=operation,
            reason=reason,
        )
        return DispatchOutcome.INVALID

    def _log(
        self,
        log_fn: Callable[..., None],
        event: str,
        **fields: object,
    ) -> None:
        if self._debug:
            log_fn(self._logger, event, **fields)
