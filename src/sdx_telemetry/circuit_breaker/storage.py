"""Shared state stores for circuit breakers.

Storage is decoupled from breaker logic: the breaker reads a snapshot mapping,
applies one transition, and writes it back. Backends shared between processes
(for example Redis) let every client instance converge on one view of the
ingestion API's health.

Backends raise :class:`~sdx_telemetry.errors.StoreError` for their own
failures; the breaker degrades to a fresh ``CLOSED`` state on any error.
"""

from __future__ import annotations

import json
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from typing import cast

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from sdx_telemetry.errors import StoreError


class AbstractStateStore(ABC):
    """Key-value store with TTL semantics for breaker state."""

    @abstractmethod
    async def get(self, key: str) -> Mapping[str, object] | None:
        """Return the stored mapping for ``key``, or None when absent/expired."""

    @abstractmethod
    async def set(
        self, key: str, value: Mapping[str, object], ttl_seconds: float
    ) -> None:
        """Store ``value`` under ``key`` for ``ttl_seconds``."""

    async def aclose(self) -> None:
        """Release backend resources. No-op for stores that hold none."""


class InMemoryStateStore(AbstractStateStore):
    """Process-local store; shared only by breakers holding the same instance."""

    def __init__(self, *, monotonic: Callable[[], float] = time.monotonic) -> None:
        self._entries: dict[str, tuple[dict[str, object], float]] = {}
        self._lock = threading.Lock()
        self._monotonic = monotonic

    async def get(self, key: str) -> Mapping[str, object] | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._monotonic() >= expires_at:
                del self._entries[key]
                return None
            return dict(value)

    async def set(
        self, key: str, value: Mapping[str, object], ttl_seconds: float
    ) -> None:
        with self._lock:
            self._entries[key] = (dict(value), self._monotonic() + ttl_seconds)


class RedisStateStore(AbstractStateStore):
    """Redis-backed store using ``redis.asyncio`` and native key expiry."""

    def __init__(self, client: aioredis.Redis, *, prefix: str = "sdx:") -> None:
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        prefix: str = "sdx:",
        socket_timeout: float = 1.0,
    ) -> RedisStateStore:
        """Build a store with a lazily-connecting client for ``url``."""
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client, prefix=prefix)

    def _full_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> Mapping[str, object] | None:
        try:
            raw = await self._client.get(self._full_key(key))
        except RedisError as exc:
            raise StoreError(f"redis get failed: {exc}") from exc
        if raw is None:
            return None
        try:
            value = json.loads(raw)
        except ValueError as exc:
            raise StoreError(f"undecodable breaker state under {key!r}") from exc
        if not isinstance(value, dict):
            raise StoreError(f"breaker state under {key!r} is not an object")
        return cast(dict[str, object], value)

    async def set(
        self, key: str, value: Mapping[str, object], ttl_seconds: float
    ) -> None:
        try:
            await self._client.set(
                self._full_key(key),
                json.dumps(dict(value)),
                ex=max(int(ttl_seconds), 1),
            )
        except RedisError as exc:
            raise StoreError(f"redis set failed: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()
