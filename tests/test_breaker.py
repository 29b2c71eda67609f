from __future__ import annotations

import asyncio

import pytest

from conftest import FakeClock, make_breaker
from ragdesk.errors import DependencyTimeoutError, ServiceUnavailableError
from ragdesk.resilience import BreakerState, CircuitBreakerConfig, create_circuit_breaker


class Flaky:
    def __init__(self) -> None:
        self.calls = 0
        self.fail = True

    async def __call__(self, value: str = "ok") -> str:
        self.calls += 1
        if self.fail:
            raise RuntimeError("boom")
        return value


async def _fail_times(breaker, target, times: int) -> None:
    for _ in range(times):
        with pytest.raises(RuntimeError):
            await breaker.call(target)


@pytest.mark.asyncio
async def test_opens_after_volume_and_error_thresholds(clock: FakeClock) -> None:
    breaker = make_breaker(clock=clock, volume_threshold=3)
    target = Flaky()

    await _fail_times(breaker, target, 2)
    assert breaker.state is BreakerState.CLOSED

    await _fail_times(breaker, target, 1)
    assert breaker.state is BreakerState.OPEN

    with pytest.raises(ServiceUnavailableError):
        await breaker.call(target)
    assert target.calls == 3
    assert breaker.stats()["stats"]["rejects"] == 1


@pytest.mark.asyncio
async def test_mostly_successful_traffic_keeps_breaker_closed(clock: FakeClock) -> None:
    breaker = make_breaker(clock=clock, volume_threshold=3)
    target = Flaky()
    target.fail = False
    for _ in range(3):
        await breaker.call(target)
    target.fail = True
    await _fail_times(breaker, target, 2)

    # 2 of 5 calls failed: 40% does not exceed 50%
    assert breaker.state is BreakerState.CLOSED


@pytest.mark.asyncio
async def test_half_open_probe_success_closes(clock: FakeClock) -> None:
    breaker = make_breaker(clock=clock, volume_threshold=1, reset_timeout_seconds=30)
    target = Flaky()
    await _fail_times(breaker, target, 1)
    assert breaker.state is BreakerState.OPEN

    clock.advance(30)
    assert breaker.state is BreakerState.HALF_OPEN

    target.fail = False
    assert await breaker.call(target, "probe") == "probe"
    assert breaker.state is BreakerState.CLOSED
    assert breaker.stats()["stats"]["window_failures"] == 0


@pytest.mark.asyncio
async def test_half_open_probe_failure_reopens(clock: FakeClock) -> None:
    breaker = make_breaker(clock=clock, volume_threshold=1, reset_timeout_seconds=30)
    target = Flaky()
    await _fail_times(breaker, target, 1)
    clock.advance(30)

    await _fail_times(breaker, target, 1)
    assert breaker.state is BreakerState.OPEN

    clock.advance(29)
    assert breaker.state is BreakerState.OPEN
    clock.advance(1)
    assert breaker.state is BreakerState.HALF_OPEN


@pytest.mark.asyncio
async def test_old_failures_leave_the_rolling_window(clock: FakeClock) -> None:
    breaker = make_breaker(clock=clock, volume_threshold=3, rolling_window_seconds=10, rolling_buckets=10)
    target = Flaky()
    await _fail_times(breaker, target, 2)

    clock.advance(15)
    await _fail_times(breaker, target, 1)

    assert breaker.state is BreakerState.CLOSED
    assert breaker.stats()["stats"]["window_failures"] == 1


@pytest.mark.asyncio
async def test_open_breaker_uses_fallback(clock: FakeClock) -> None:
    config = CircuitBreakerConfig(name="with-fallback", volume_threshold=1)

    async def fallback(value: str = "ok") -> str:
        return f"fallback:{value}"

    breaker = create_circuit_breaker(config, fallback=fallback, clock=clock)
    target = Flaky()
    await _fail_times(breaker, target, 1)

    assert await breaker.call(target, "x") == "fallback:x"
    assert target.calls == 1
    assert breaker.stats()["stats"]["fallbacks"] == 1


@pytest.mark.asyncio
async def test_slow_call_times_out_and_counts_as_failure() -> None:
    breaker = make_breaker(timeout_seconds=0.01)

    async def slow() -> None:
        await asyncio.sleep(1)

    with pytest.raises(DependencyTimeoutError):
        await breaker.call(slow)

    counters = breaker.stats()["stats"]
    assert counters["timeouts"] == 1
    assert counters["failures"] == 1


@pytest.mark.asyncio
async def test_guard_records_outcomes_and_rejects_when_open(clock: FakeClock) -> None:
    breaker = make_breaker(clock=clock, volume_threshold=2)

    async with breaker.guard():
        pass
    for _ in range(2):
        with pytest.raises(RuntimeError):
            async with breaker.guard():
                raise RuntimeError("stream broke")

    # 2 of 3 failed
    assert breaker.state is BreakerState.OPEN
    with pytest.raises(ServiceUnavailableError):
        async with breaker.guard():
            pass


@pytest.mark.asyncio
async def test_state_listener_sees_every_transition(clock: FakeClock) -> None:
    breaker = make_breaker(name="listened", clock=clock, volume_threshold=1, reset_timeout_seconds=5)
    seen: list[tuple[str, str, str]] = []
    breaker.add_state_listener(lambda name, old, new: seen.append((name, old.value, new.value)))
    target = Flaky()

    await _fail_times(breaker, target, 1)
    clock.advance(5)
    target.fail = False
    await breaker.call(target)

    assert seen == [
        ("listened", "closed", "open"),
        ("listened", "open", "half_open"),
        ("listened", "half_open", "closed"),
    ]


async def _wait_then(event: asyncio.Event, value: str = "done") -> str:
    await event.wait()
    return value


@pytest.mark.asyncio
async def test_call_admitted_while_closed_does_not_close_half_open_breaker(clock: FakeClock) -> None:
    breaker = make_breaker(clock=clock, volume_threshold=2, reset_timeout_seconds=5)
    release = asyncio.Event()
    pending = asyncio.create_task(breaker.call(_wait_then, release, "late"))
    await asyncio.sleep(0)

    target = Flaky()
    await _fail_times(breaker, target, 2)
    assert breaker.state is BreakerState.OPEN
    clock.advance(6)
    assert breaker.state is BreakerState.HALF_OPEN

    release.set()
    assert await pending == "late"
    assert breaker.state is BreakerState.HALF_OPEN

    target.fail = False
    await breaker.call(target)
    assert breaker.state is BreakerState.CLOSED


@pytest.mark.asyncio
async def test_late_call_does_not_free_the_half_open_slot(clock: FakeClock) -> None:
    breaker = make_breaker(clock=clock, volume_threshold=1, reset_timeout_seconds=5)
    release_late = asyncio.Event()
    release_trial = asyncio.Event()
    late = asyncio.create_task(breaker.call(_wait_then, release_late))
    await asyncio.sleep(0)

    await _fail_times(breaker, Flaky(), 1)
    clock.advance(5)
    trial = asyncio.create_task(breaker.call(_wait_then, release_trial, "trial"))
    await asyncio.sleep(0)

    release_late.set()
    assert await late == "done"
    with pytest.raises(ServiceUnavailableError):
        await breaker.call(_wait_then, release_trial)

    release_trial.set()
    assert await trial == "trial"
    assert breaker.state is BreakerState.CLOSED


@pytest.mark.asyncio
async def test_late_failure_while_open_keeps_reset_deadline(clock: FakeClock) -> None:
    breaker = make_breaker(clock=clock, volume_threshold=1, reset_timeout_seconds=5)
    release = asyncio.Event()

    async def fails_later() -> None:
        await release.wait()
        raise RuntimeError("late")

    late = asyncio.create_task(breaker.call(fails_later))
    await asyncio.sleep(0)
    await _fail_times(breaker, Flaky(), 1)

    clock.advance(4)
    release.set()
    with pytest.raises(RuntimeError):
        await late

    clock.advance(1)
    assert breaker.state is BreakerState.HALF_OPEN


@pytest.mark.asyncio
async def test_guard_entered_while_closed_does_not_close_half_open_breaker(clock: FakeClock) -> None:
    breaker = make_breaker(clock=clock, volume_threshold=1, reset_timeout_seconds=5)

    async with breaker.guard():
        await _fail_times(breaker, Flaky(), 1)
        clock.advance(5)
        assert breaker.state is BreakerState.HALF_OPEN

    assert breaker.state is BreakerState.HALF_OPEN
