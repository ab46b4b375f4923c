"""Per-request user session tracking.

Hosts call :meth:`SessionTracker.track_request` once per main request. The
tracker keeps a tracking session id and the last activity time in the host
session store, rotates the tracking session after the idle timeout and
reports session starts and page views through the telemetry client.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sdx_telemetry.context import (
    TRACKING_SESSION_KEY,
    RequestContext,
    SessionStore,
    anonymize_ip,
    session_hash,
)
from sdx_telemetry.errors import ConfigError
from sdx_telemetry.logging import TelemetryLogger, get_logger, log_error

if TYPE_CHECKING:
    from sdx_telemetry.client import TelemetryClient
    from sdx_telemetry.settings import TelemetrySettings

LAST_ACTIVITY_KEY = "_sdx_telemetry_last_activity"
PAGE_VIEW_EVENT = "PAGE_VIEW"
MIN_IDLE_TIMEOUT_SECONDS = 300
MAX_IDLE_TIMEOUT_SECONDS = 7200
DEFAULT_IDLE_TIMEOUT_SECONDS = 1800
DEFAULT_IGNORED_PATHS: tuple[str, ...] = ("/api/",)


class SessionTracker:
    """Track host user sessions and page views."""

    def __init__(
        self,
        client: TelemetryClient,
        *,
        enabled: bool = True,
        track_page_views: bool = True,
        idle_timeout: int = DEFAULT_IDLE_TIMEOUT_SECONDS,
        ignored_routes: Sequence[str] = (),
        ignored_paths: Sequence[str] = DEFAULT_IGNORED_PATHS,
        clock: Callable[[], float] | None = None,
        logger: TelemetryLogger | None = None,
        debug: bool = False,
    ) -> None:
        if not MIN_IDLE_TIMEOUT_SECONDS <= idle_timeout <= MAX_IDLE_TIMEOUT_SECONDS:
            raise ConfigError(
                f"idle_timeout must be between {MIN_IDLE_TIMEOUT_SECONDS} "
                f"and {MAX_IDLE_TIMEOUT_SECONDS} seconds"
            )
        self._client = client
        self.enabled = enabled
        self.track_page_views = track_page_views
        self.idle_timeout = idle_timeout
        self.ignored_routes = tuple(ignored_routes)
        self.ignored_paths = tuple(ignored_paths)
        self._clock = time.time if clock is None else clock
        self._logger = get_logger(__name__) if logger is None else logger
        self.debug = debug

    @classmethod
    def from_settings(
        cls,
        client: TelemetryClient,
        settings: TelemetrySettings,
        *,
        clock: Callable[[], float] | None = None,
        logger: TelemetryLogger | None = None,
    ) -> SessionTracker:
        return cls(
            client,
            enabled=settings.session_tracking_enabled,
            track_page_views=settings.track_page_views,
            idle_timeout=settings.session_idle_timeout,
            ignored_routes=settings.session_ignored_routes,
            ignored_paths=settings.session_ignored_paths,
            clock=clock,
            logger=logger,
            debug=settings.debug,
        )

    def should_track(self, request: RequestContext) -> bool:
        if not self.enabled or request.session is None:
            return False
        if request.route is not None and request.route.startswith(self.ignored_routes):
            return False
        return not request.path.startswith(self.ignored_paths)

    async def track_request(self, request: RequestContext) -> str | None:
        """Record activity for ``request`` and return its tracking session id.

        Returns ``None`` when the request is not tracked or tracking failed.
        """
        session = request.session
        if session is None or not self.should_track(request):
            return None

        try:
            return await self._track(request, session)
        except Exception as exc:
            if self.debug:
                log_error(
                    self._logger,
                    "session_tracking.failed",
                    path=request.path,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            return None

    async def _track(self, request: RequestContext, session: SessionStore) -> str:
        now = self._clock()
        session_id = self._get_or_create_session_id(session, now)
        last_activity = session.get(LAST_ACTIVITY_KEY)
        if (
            isinstance(last_activity, (int, float))
            and now - last_activity > self.idle_timeout
        ):
            await self._client.end_session(session_id)
            session_id = self._start_session(session, now)

        session.set(LAST_ACTIVITY_KEY, now)

        await self._client.create_session(
            {
                "session_id": session_id,
                "session_hash": session_hash(session_id),
                "ip_address": anonymize_ip(request.client_ip),
                "user_agent": request.user_agent,
            }
        )
        if self.track_page_views:
            await self._client.add_session_event(
                session_id,
                {
                    "type": PAGE_VIEW_EVENT,
                    "url": request.url,
                    "timestamp": datetime.fromtimestamp(now, UTC).isoformat(),
                },
            )
        return session_id

    def _get_or_create_session_id(self, session: SessionStore, now: float) -> str:
        session_id = session.get(TRACKING_SESSION_KEY)
        if isinstance(session_id, str) and session_id:
            return session_id
        return self._start_session(session, now)

    @staticmethod
    def _start_session(session: SessionStore, now: float) -> str:
        session_id = str(uuid.uuid4())
        session.set(TRACKING_SESSION_KEY, session_id)
        session.set(LAST_ACTIVITY_KEY, now)
        return session_id
