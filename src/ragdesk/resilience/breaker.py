"""Circuit breaker guarding calls to external providers.

Each named dependency (embedding provider, generative model, vector index)
gets its own :class:`CircuitBreaker`. The breaker tracks call outcomes in a
rolling window of fixed-width buckets:

* ``closed``: calls pass through. When the window holds at least
  ``volume_threshold`` calls and the failure percentage exceeds
  ``error_threshold_percentage`` the breaker opens.
* ``open``: calls are short-circuited to the registered fallback, or fail
  with :class:`~ragdesk.errors.ServiceUnavailableError`, until
  ``reset_timeout_seconds`` have elapsed.
* ``half_open``: one probe call is let through. Success closes the breaker
  and clears the window; failure re-opens it and restarts the reset timer.

Every call is bounded by ``timeout_seconds`` regardless of state; a call
that times out counts as a failure. State changes are published to the
listeners registered on the breaker.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, TypeVar

from ragdesk.errors import DependencyTimeoutError, ServiceUnavailableError
from ragdesk.metrics.observability import PipelineMetrics, get_logger

T = TypeVar("T")


class BreakerState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds for one named dependency."""

    name: str
    timeout_seconds: float = 10.0
    error_threshold_percentage: float = 50.0
    reset_timeout_seconds: float = 30.0
    rolling_window_seconds: float = 10.0
    rolling_buckets: int = 10
    volume_threshold: int = 5


StateListener = Callable[[str, BreakerState, BreakerState], None]
CallListener = Callable[[str, str, float], None]


class _Bucket:
    __slots__ = ("start", "successes", "failures")

    def __init__(self, start: float) -> None:
        self.start = start
        self.successes = 0
        self.failures = 0


class RollingWindow:
    """Success/failure counts over the last ``window_seconds``."""

    def __init__(self, window_seconds: float, bucket_count: int) -> None:
        self._window = window_seconds
        self._width = window_seconds / max(bucket_count, 1)
        self._buckets: Deque[_Bucket] = deque()

    def record(self, success: bool, now: float) -> None:
        self._prune(now)
        start = now - (now % self._width)
        if not self._buckets or self._buckets[-1].start != start:
            self._buckets.append(_Bucket(start))
        bucket = self._buckets[-1]
        if success:
            bucket.successes += 1
        else:
            bucket.failures += 1

    def totals(self, now: float) -> tuple[int, int]:
        self._prune(now)
        successes = sum(b.successes for b in self._buckets)
        failures = sum(b.failures for b in self._buckets)
        return successes, failures

    def reset(self) -> None:
        self._buckets.clear()

    def _prune(self, now: float) -> None:
        cutoff = now - self._window
        while self._buckets and self._buckets[0].start + self._width <= cutoff:
            self._buckets.popleft()


class CircuitBreaker:
    """Closed/open/half-open state machine around async calls."""

    def __init__(
        self,
        config: CircuitBreakerConfig,
        *,
        fallback: Callable[..., Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._fallback = fallback
        self._clock = clock
        self._state = BreakerState.CLOSED
        self._open_until = 0.0
        self._probe_in_flight = False
        self._window = RollingWindow(config.rolling_window_seconds, config.rolling_buckets)
        self._state_listeners: list[StateListener] = []
        self._call_listeners: list[CallListener] = []
        self._counters = {"successes": 0, "failures": 0, "timeouts": 0, "rejects": 0, "fallbacks": 0}

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def state(self) -> BreakerState:
        if self._state is BreakerState.OPEN and self._clock() >= self._open_until:
            self._transition(BreakerState.HALF_OPEN)
        return self._state

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def add_call_listener(self, listener: CallListener) -> None:
        self._call_listeners.append(listener)

    def stats(self) -> dict[str, Any]:
        successes, failures = self._window.totals(self._clock())
        return {
            "name": self.name,
            "state": self.state.value,
            "stats": {**self._counters, "window_successes": successes, "window_failures": failures},
        }

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Invoke ``fn`` through the breaker, enforcing the per-call timeout."""

        admitted, probe = self._admit()
        if not admitted:
            return await self._short_circuit(*args, **kwargs)
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(fn(*args, **kwargs), timeout=self.config.timeout_seconds)
        except asyncio.TimeoutError as exc:
            self._record_failure(time.perf_counter() - started, probe=probe, timed_out=True)
            raise DependencyTimeoutError(
                f"{self.name} call timed out after {self.config.timeout_seconds}s"
            ) from exc
        except Exception:
            self._record_failure(time.perf_counter() - started, probe=probe)
            raise
        finally:
            if probe:
                self._probe_in_flight = False
        self._record_success(time.perf_counter() - started, probe=probe)
        return result

    @asynccontextmanager
    async def guard(self) -> AsyncIterator[None]:
        """Admit a long-running operation and record its outcome on exit.

        Used for streaming calls where the caller enforces its own
        per-step timeout. Cancellation and generator close are not counted.
        """

        admitted, probe = self._admit()
        if not admitted:
            self._counters["rejects"] += 1
            self._notify_call("rejected", 0.0)
            raise ServiceUnavailableError(self.name)
        started = time.perf_counter()
        try:
            yield
        except asyncio.TimeoutError:
            self._record_failure(time.perf_counter() - started, probe=probe, timed_out=True)
            raise
        except Exception:
            self._record_failure(time.perf_counter() - started, probe=probe)
            raise
        else:
            self._record_success(time.perf_counter() - started, probe=probe)
        finally:
            if probe:
                self._probe_in_flight = False

    def _admit(self) -> tuple[bool, bool]:
        """Return ``(admitted, probe)`` for a new call."""

        state = self.state
        if state is BreakerState.CLOSED:
            return True, False
        if state is BreakerState.HALF_OPEN and not self._probe_in_flight:
            self._probe_in_flight = True
            return True, True
        return False, False

    async def _short_circuit(self, *args: Any, **kwargs: Any) -> Any:
        if self._fallback is None:
            self._counters["rejects"] += 1
            self._notify_call("rejected", 0.0)
            raise ServiceUnavailableError(self.name)
        self._counters["fallbacks"] += 1
        self._notify_call("fallback", 0.0)
        result = self._fallback(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    # Only the half-open probe moves the breaker out of half_open. Calls
    # admitted earlier count towards the window only while it is closed.
    def _record_success(self, duration: float, *, probe: bool = False) -> None:
        self._counters["successes"] += 1
        self._notify_call("success", duration)
        if probe:
            if self._state is BreakerState.HALF_OPEN:
                self._window.reset()
                self._transition(BreakerState.CLOSED)
            return
        if self._state is BreakerState.CLOSED:
            self._window.record(True, self._clock())

    def _record_failure(self, duration: float, *, probe: bool = False, timed_out: bool = False) -> None:
        self._counters["failures"] += 1
        if timed_out:
            self._counters["timeouts"] += 1
        self._notify_call("timeout" if timed_out else "failure", duration)
        now = self._clock()
        if probe:
            if self._state is BreakerState.HALF_OPEN:
                self._trip(now)
            return
        if self._state is not BreakerState.CLOSED:
            return
        self._window.record(False, now)
        successes, failures = self._window.totals(now)
        total = successes + failures
        if total < self.config.volume_threshold:
            return
        if failures * 100.0 / total > self.config.error_threshold_percentage:
            self._trip(now)

    def _trip(self, now: float) -> None:
        self._open_until = now + self.config.reset_timeout_seconds
        self._transition(BreakerState.OPEN)

    def _transition(self, new_state: BreakerState) -> None:
        old_state = self._state
        if old_state is new_state:
            return
        self._state = new_state
        for listener in list(self._state_listeners):
            listener(self.name, old_state, new_state)

    def _notify_call(self, outcome: str, duration: float) -> None:
        for listener in list(self._call_listeners):
            listener(self.name, outcome, duration)


def create_circuit_breaker(
    config: CircuitBreakerConfig,
    *,
    fallback: Callable[..., Any] | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> CircuitBreaker:
    """Create a breaker wired to structured logging and Prometheus."""

    logger = get_logger("breaker")
    breaker = CircuitBreaker(config, fallback=fallback, clock=clock)

    def log_transition(name: str, old: BreakerState, new: BreakerState) -> None:
        PipelineMetrics.set_breaker_state(name, new.value)
        if new is BreakerState.OPEN:
            logger.warning("breaker.open", breaker=name, previous=old.value)
        else:
            logger.info("breaker.state_change", breaker=name, previous=old.value, state=new.value)

    def record_call(name: str, outcome: str, duration: float) -> None:
        PipelineMetrics.observe_external_call(name, outcome, duration)
        if outcome in ("failure", "timeout"):
            logger.error("breaker.call_failed", breaker=name, outcome=outcome, duration_seconds=duration)

    breaker.add_state_listener(log_transition)
    breaker.add_call_listener(record_call)
    PipelineMetrics.set_breaker_state(config.name, BreakerState.CLOSED.value)
    return breaker
