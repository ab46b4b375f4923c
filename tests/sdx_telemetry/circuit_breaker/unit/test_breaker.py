from __future__ import annotations

import asyncio

import pytest

from sdx_telemetry.circuit_breaker import (
    AbstractStateStore,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    InMemoryStateStore,
)
from sdx_telemetry.errors import ConfigError
from tests.sdx_telemetry.support.fakes import (
    CountingStore,
    ExplodingStore,
    FakeClock,
    FakeLogger,
    HangingStore,
)

pytestmark = pytest.mark.asyncio


def _breaker(
    clock: FakeClock,
    *,
    store: AbstractStateStore | None = None,
    failure_threshold: int = 3,
    timeout: float = 10.0,
    max_half_open_attempts: int = 1,
    enabled: bool = True,
    store_timeout: float = 1.0,
    **kwargs: object,
) -> CircuitBreaker:
    return CircuitBreaker(
        CircuitBreakerConfig(
            enabled=enabled,
            failure_threshold=failure_threshold,
            timeout=timeout,
            max_half_open_attempts=max_half_open_attempts,
            store_timeout=store_timeout,
        ),
        store=InMemoryStateStore() if store is None else store,
        clock=clock.now,
        **kwargs,  # type: ignore[arg-type]
    )


@pytest.mark.parametrize("threshold", [1, 2, 3, 5, 8])
async def test_breaker_opens_exactly_at_failure_threshold(
    fake_clock: FakeClock, threshold: int
) -> None:
    breaker = _breaker(fake_clock, failure_threshold=threshold)

    for _ in range(threshold - 1):
        await breaker.record_failure()
        assert await breaker.is_open() is False
        assert (await breaker.get_state()).state == CircuitState.CLOSED

    await breaker.record_failure()

    snapshot = await breaker.get_state()
    assert snapshot.state == CircuitState.OPEN
    assert snapshot.failure_count == threshold
    assert snapshot.opened_at == fake_clock.now()
    assert await breaker.is_open() is True


async def test_record_success_resets_closed_failure_count(
    fake_clock: FakeClock,
) -> None:
    breaker = _breaker(fake_clock)
    await breaker.record_failure()
    await breaker.record_failure()

    await breaker.record_success()
    await breaker.record_failure()
    await breaker.record_failure()

    snapshot = await breaker.get_state()
    assert snapshot.state == CircuitState.CLOSED
    assert snapshot.failure_count == 2


async def test_record_success_closes_open_circuit(fake_clock: FakeClock) -> None:
    breaker = _breaker(fake_clock, failure_threshold=1)
    await breaker.record_failure()

    await breaker.record_success()

    snapshot = await breaker.get_state()
    assert snapshot.state == CircuitState.CLOSED
    assert snapshot.failure_count == 0
    assert snapshot.opened_at is None
    assert await breaker.is_open() is False


async def test_open_circuit_moves_to_half_open_after_timeout(
    fake_clock: FakeClock,
) -> None:
    breaker = _breaker(fake_clock, failure_threshold=1, timeout=30.0)
    await breaker.record_failure()

    fake_clock.advance(29.0)
    assert await breaker.is_open() is True
    assert await breaker.is_half_open() is False

    fake_clock.advance(1.0)
    assert await breaker.is_open() is False

    snapshot = await breaker.get_state()
    assert snapshot.state == CircuitState.HALF_OPEN
    assert snapshot.failure_count == 0
    assert snapshot.half_open_attempts == 1
    assert await breaker.is_half_open() is True


async def test_half_open_limits_trial_calls(fake_clock: FakeClock) -> None:
    breaker = _breaker(fake_clock, failure_threshold=1, max_half_open_attempts=2)
    await breaker.record_failure()
    fake_clock.advance(10.0)

    assert await breaker.is_open() is False
    assert await breaker.is_open() is False
    assert await breaker.is_open() is True
    assert (await breaker.get_state()).half_open_attempts == 2


async def test_half_open_success_closes_circuit(fake_clock: FakeClock) -> None:
    breaker = _breaker(fake_clock, failure_threshold=1)
    await breaker.record_failure()
    fake_clock.advance(10.0)
    assert await breaker.is_open() is False

    await breaker.record_success()

    snapshot = await breaker.get_state()
    assert snapshot.state == CircuitState.CLOSED
    assert snapshot.half_open_attempts == 0


async def test_half_open_failure_reopens_with_fresh_timeout(
    fake_clock: FakeClock,
) -> None:
    breaker = _breaker(fake_clock, failure_threshold=2)
    await breaker.record_failure()
    await breaker.record_failure()
    fake_clock.advance(10.0)
    assert await breaker.is_open() is False

    fake_clock.advance(3.0)
    await breaker.record_failure()

    snapshot = await breaker.get_state()
    assert snapshot.state == CircuitState.OPEN
    assert snapshot.opened_at == fake_clock.now()
    assert snapshot.half_open_attempts == 0
    fake_clock.advance(9.0)
    assert await breaker.is_open() is True


async def test_failures_while_open_are_ignored(fake_clock: FakeClock) -> None:
    breaker = _breaker(fake_clock, failure_threshold=1)
    await breaker.record_failure()
    opened = await breaker.get_state()

    fake_clock.advance(5.0)
    await breaker.record_failure()
    await breaker.record_failure()

    assert await breaker.get_state() == opened


async def test_spent_trial_window_is_renewed_after_timeout(
    fake_clock: FakeClock,
) -> None:
    breaker = _breaker(fake_clock, failure_threshold=1)
    await breaker.record_failure()
    fake_clock.advance(10.0)
    assert await breaker.is_open() is False
    assert await breaker.is_open() is True

    fake_clock.advance(10.0)

    assert await breaker.is_open() is False
    snapshot = await breaker.get_state()
    assert snapshot.state == CircuitState.HALF_OPEN
    assert snapshot.opened_at == fake_clock.now()


async def test_disabled_breaker_never_opens_or_touches_store(
    fake_clock: FakeClock,
) -> None:
    store = CountingStore()
    breaker = _breaker(fake_clock, store=store, failure_threshold=1, enabled=False)

    for _ in range(5):
        await breaker.record_failure()
        assert await breaker.is_open() is False
    await breaker.record_success()
    await breaker.reset()

    assert await breaker.is_half_open() is False
    assert (await breaker.get_state()).is_clean
    assert breaker.enabled is False
    assert store.set_calls == []
    assert store.get_calls == 0


async def test_breakers_sharing_store_and_key_share_state(
    fake_clock: FakeClock,
) -> None:
    store = InMemoryStateStore()
    first = _breaker(fake_clock, store=store, failure_threshold=2)
    second = _breaker(fake_clock, store=store, failure_threshold=2)

    await first.record_failure()
    await second.record_failure()

    assert await first.is_open() is True
    assert await second.is_open() is True


async def test_breakers_with_different_keys_are_isolated(
    fake_clock: FakeClock,
) -> None:
    store = InMemoryStateStore()
    first = _breaker(fake_clock, store=store, failure_threshold=1, key="a")
    second = _breaker(fake_clock, store=store, failure_threshold=1, key="b")

    await first.record_failure()

    assert await first.is_open() is True
    assert await second.is_open() is False


async def test_state_is_written_with_twice_the_timeout_as_ttl(
    fake_clock: FakeClock,
) -> None:
    store = CountingStore()
    breaker = _breaker(fake_clock, store=store, timeout=45.0)

    await breaker.record_failure()

    assert store.set_calls[-1][2] == 90.0
    assert store.set_calls[-1][1]["failure_count"] == 1


async def test_success_on_clean_state_skips_write(fake_clock: FakeClock) -> None:
    store = CountingStore()
    breaker = _breaker(fake_clock, store=store)

    await breaker.record_success()

    assert store.set_calls == []


async def test_reset_forces_closed_state(fake_clock: FakeClock) -> None:
    breaker = _breaker(fake_clock, failure_threshold=1)
    await breaker.record_failure()

    await breaker.reset()

    snapshot = await breaker.get_state()
    assert snapshot.state == CircuitState.CLOSED
    assert snapshot.is_clean


async def test_store_failures_degrade_to_closed_and_log_when_debug(
    fake_clock: FakeClock, fake_logger: FakeLogger
) -> None:
    store = ExplodingStore()
    breaker = _breaker(fake_clock, store=store, logger=fake_logger, debug=True)

    assert await breaker.is_open() is False
    await breaker.record_failure()
    await breaker.record_success()

    assert (await breaker.get_state()).state == CircuitState.CLOSED
    assert "circuit_breaker.store_read_failed" in fake_logger.events
    assert "circuit_breaker.store_write_failed" in fake_logger.events


async def test_unresponsive_store_is_bounded_by_store_timeout(
    fake_clock: FakeClock, fake_logger: FakeLogger
) -> None:
    store = HangingStore()
    breaker = _breaker(
        fake_clock, store=store, store_timeout=0.05, logger=fake_logger, debug=True
    )

    assert await asyncio.wait_for(breaker.is_open(), timeout=1.0) is False
    await asyncio.wait_for(breaker.record_failure(), timeout=1.0)
    snapshot = await asyncio.wait_for(breaker.get_state(), timeout=1.0)

    assert snapshot.state == CircuitState.CLOSED
    assert store.get_calls >= 1
    assert store.set_calls == 1
    assert "circuit_breaker.store_read_failed" in fake_logger.events
    assert "circuit_breaker.store_write_failed" in fake_logger.events


async def test_store_failures_are_silent_without_debug(
    fake_clock: FakeClock, fake_logger: FakeLogger
) -> None:
    breaker = _breaker(fake_clock, store=ExplodingStore(), logger=fake_logger)

    await breaker.record_failure()

    assert fake_logger.calls == []


async def test_corrupt_state_is_treated_as_closed(fake_clock: FakeClock) -> None:
    store = CountingStore()
    store.values["sdx_telemetry.circuit_breaker"] = {"state": "melted"}
    breaker = _breaker(fake_clock, store=store)

    assert await breaker.is_open() is False
    assert (await breaker.get_state()).state == CircuitState.CLOSED


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"failure_threshold": 0}, "failure_threshold must be >= 1"),
        ({"timeout": 9.9}, "timeout must be >= 10 seconds"),
        ({"max_half_open_attempts": 0}, "max_half_open_attempts must be >= 1"),
        ({"store_timeout": 0}, "store_timeout must be > 0"),
    ],
)
async def test_config_validation(overrides: dict[str, object], message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        CircuitBreakerConfig(**overrides)  # type: ignore[arg-type]


async def test_default_config_values() -> None:
    config = CircuitBreakerConfig()

    assert config.enabled is True
    assert config.failure_threshold == 5
    assert config.timeout == 60.0
    assert config.max_half_open_attempts == 1
    assert config.state_ttl == 120.0
    assert config.store_timeout == 1.0
