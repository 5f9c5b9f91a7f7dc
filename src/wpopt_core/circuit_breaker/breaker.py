"""Core circuit breaker implementation."""

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TypeVar

from wpopt_core._locking import StateGuard
from wpopt_core.circuit_breaker.exceptions import CircuitOpenError
from wpopt_core.circuit_breaker.metrics import BreakerListener
from wpopt_core.circuit_breaker.state import CircuitState, CircuitStats
from wpopt_core.errors import AdmissionRejectedError, CallTimeoutError
from wpopt_core.retry import RetryOptions, with_retry

T = TypeVar("T")

_Transition = tuple[CircuitState, CircuitState]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _monotonic() -> float:
    return time.monotonic()


class _ResetAlarm:
    """One cancellable open -> half-open transition owned by one breaker.

    The alarm is scheduled on the running event loop. Its deadline is also
    checked on every admission so a breaker used outside a loop (or whose
    loop was never given a chance to run the timer) still recovers.
    """

    def __init__(self, callback: Callable[[], None]) -> None:
        self._callback = callback
        self._handle: asyncio.TimerHandle | None = None
        self._deadline: float | None = None

    def arm(self, delay: float) -> None:
        self.cancel()
        self._deadline = _monotonic() + delay
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._handle = loop.call_later(delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self._deadline = None

    def remaining(self) -> float:
        if self._deadline is None:
            return 0.0
        return max(self._deadline - _monotonic(), 0.0)

    def fire_if_due(self) -> None:
        if self._deadline is not None and _monotonic() >= self._deadline:
            self._fire()

    def _fire(self) -> None:
        if self._deadline is None:
            return
        self.cancel()
        self._callback()


@dataclass(frozen=True, slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        failure_threshold: Consecutive failures while ``CLOSED`` before opening.
        success_threshold: Consecutive successes while ``HALF_OPEN`` before closing.
        call_timeout: Seconds one attempt may run; ``None`` disables the race.
        open_reset_delay: Seconds to stay ``OPEN`` before allowing a probe.
        max_retries: Default retries used by ``execute``.
        backoff_multiplier: Default backoff base used by ``execute``.
        max_backoff: Default backoff ceiling in seconds used by ``execute``.
        excluded_exceptions: Exceptions that count as neither failure nor success.
    """

    failure_threshold: int = 5
    success_threshold: int = 3
    call_timeout: float | None = 30.0
    open_reset_delay: float = 60.0
    max_retries: int = 3
    backoff_multiplier: float = 2.0
    max_backoff: float = 30.0
    excluded_exceptions: tuple[type[Exception], ...] = (AdmissionRejectedError,)

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")
        if self.call_timeout is not None and self.call_timeout <= 0:
            raise ValueError("call_timeout must be > 0 when provided")
        if self.open_reset_delay < 0:
            raise ValueError("open_reset_delay must be >= 0")

    def retry_options(self) -> RetryOptions:
        """Build the default per-call retry options of this breaker."""
        return RetryOptions(
            max_retries=self.max_retries,
            backoff_multiplier=self.backoff_multiplier,
            max_backoff=self.max_backoff,
        )


class CircuitBreaker:
    """Stateful proxy around a dangerous async operation."""

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        listeners: Sequence[BreakerListener] | None = None,
    ) -> None:
        """Build a circuit breaker.

        Args:
            name: Dependency name used in errors, stats and listener events.
            config: Breaker behavior configuration. Defaults to
                ``CircuitBreakerConfig()``.
            listeners: Optional listener hooks for breaker events.
        """
        self.name = name
        self.config = CircuitBreakerConfig() if config is None else config
        self._listeners: list[BreakerListener] = list(listeners or ())
        self._guard = StateGuard()
        self._alarm = _ResetAlarm(self._on_reset_alarm)
        self._probe_in_flight = False
        self._zero_counters()
        self._state = CircuitState.CLOSED

    def _zero_counters(self) -> None:
        self._failures = 0
        self._successes = 0
        self._consecutive_failures = 0
        self._consecutive_successes = 0
        self._last_failure_at: datetime | None = None
        self._last_success_at: datetime | None = None
        self._total_requests = 0
        self._rejected_requests = 0

    @property
    def state(self) -> CircuitState:
        """Current state, applying a due open -> half-open transition first."""
        self._alarm.fire_if_due()
        return self._state

    def is_available(self) -> bool:
        """Return whether a call would currently be attempted."""
        return self.state != CircuitState.OPEN

    def add_listener(self, listener: BreakerListener) -> None:
        """Subscribe ``listener`` to breaker events."""
        self._listeners.append(listener)

    def stats(self) -> CircuitStats:
        """Return a read-only snapshot of the breaker counters."""
        self._alarm.fire_if_due()
        with self._guard.hold():
            return self._snapshot()

    def _snapshot(self) -> CircuitStats:
        return CircuitStats(
            name=self.name,
            state=self._state,
            failures=self._failures,
            successes=self._successes,
            consecutive_failures=self._consecutive_failures,
            consecutive_successes=self._consecutive_successes,
            last_failure_at=self._last_failure_at,
            last_success_at=self._last_success_at,
            total_requests=self._total_requests,
            rejected_requests=self._rejected_requests,
        )

    def reset(self) -> None:
        """Force ``CLOSED`` with every counter zeroed and no pending alarm."""
        with self._guard.hold():
            old = self._state
            self._alarm.cancel()
            self._probe_in_flight = False
            self._zero_counters()
            self._state = CircuitState.CLOSED
            snapshot = self._snapshot()
        if old != CircuitState.CLOSED:
            self._emit_state_change(old, CircuitState.CLOSED, snapshot)

    def force_state(self, state: CircuitState) -> None:
        """Move the breaker to ``state``. Operator and test escape hatch."""
        with self._guard.hold():
            transition = self._transition_to(state)
            snapshot = self._snapshot()
        self._emit_state_change(*transition, snapshot)

    async def execute(
        self,
        work: Callable[[], Awaitable[T]],
        retry_options: RetryOptions | None = None,
    ) -> T:
        """Run ``work`` under breaker protection with bounded retries.

        Every attempt goes through admission, so a circuit that opens part
        way through the retry loop ends it with ``CircuitOpenError``.

        Args:
            work: Zero-argument coroutine factory for the dangerous call.
            retry_options: Retry policy. Defaults to the breaker config values.

        Raises:
            CircuitOpenError: When the circuit is open and the call is rejected.
            Exception: The last failure of ``work`` once retries are exhausted
                or the failure is not retryable.
        """
        options = (
            self.config.retry_options() if retry_options is None else retry_options
        )
        return await with_retry(
            lambda: self.call(work),
            options,
            operation=f"circuit_breaker:{self.name}",
        )

    async def call(self, work: Callable[[], Awaitable[T]]) -> T:
        """Run a single guarded attempt of ``work``.

        Raises:
            CircuitOpenError: When the circuit is open and the call is rejected.
            CallTimeoutError: When the attempt exceeds ``call_timeout``.
            Exception: The original exception from ``work``.
        """
        is_probe = self._admit()
        start = time.monotonic()
        try:
            result = await self._run_with_timeout(work)
        except self.config.excluded_exceptions:
            raise
        except Exception as exc:
            self._record_failure(exc, max(time.monotonic() - start, 0.0))
            raise
        else:
            self._record_success(max(time.monotonic() - start, 0.0))
            return result
        finally:
            if is_probe:
                with self._guard.hold():
                    self._probe_in_flight = False

    def _admit(self) -> bool:
        self._alarm.fire_if_due()
        with self._guard.hold():
            self._total_requests += 1
            retry_after: float | None = None
            if self._state == CircuitState.OPEN:
                retry_after = self._alarm.remaining()
            elif self._state == CircuitState.HALF_OPEN:
                if self._probe_in_flight:
                    retry_after = 0.0
                else:
                    self._probe_in_flight = True
                    return True
            if retry_after is None:
                return False
            self._rejected_requests += 1

        self._emit("on_call_rejected", self.name, retry_after)
        raise CircuitOpenError(self.name, retry_after=retry_after)

    async def _run_with_timeout(self, work: Callable[[], Awaitable[T]]) -> T:
        timeout = self.config.call_timeout
        if timeout is None:
            return await work()

        start = time.monotonic()
        try:
            async with asyncio.timeout(timeout) as scope:
                return await work()
        except TimeoutError as exc:
            if not scope.expired():
                raise
            raise CallTimeoutError(
                f"circuit_breaker:{self.name}",
                timeout=timeout,
                elapsed=time.monotonic() - start,
            ) from exc

    def _record_success(self, elapsed: float) -> None:
        transition: _Transition | None = None
        with self._guard.hold():
            self._successes += 1
            self._consecutive_successes += 1
            self._consecutive_failures = 0
            self._last_success_at = _utcnow()
            if (
                self._state == CircuitState.HALF_OPEN
                and self._consecutive_successes >= self.config.success_threshold
            ):
                transition = self._transition_to(CircuitState.CLOSED)
            snapshot = self._snapshot()

        self._emit("on_success", self.name, snapshot, elapsed)
        if transition is not None:
            self._emit_state_change(*transition, snapshot)

    def _record_failure(self, exc: Exception, elapsed: float) -> None:
        transition: _Transition | None = None
        with self._guard.hold():
            self._failures += 1
            self._consecutive_failures += 1
            self._consecutive_successes = 0
            self._last_failure_at = _utcnow()
            if self._state == CircuitState.HALF_OPEN or (
                self._state == CircuitState.CLOSED
                and self._consecutive_failures >= self.config.failure_threshold
            ):
                transition = self._transition_to(CircuitState.OPEN)
            snapshot = self._snapshot()

        self._emit("on_failure", self.name, snapshot, exc, elapsed)
        if transition is not None:
            self._emit_state_change(*transition, snapshot)

    def _transition_to(self, new: CircuitState) -> _Transition:
        # Caller holds the guard.
        old = self._state
        self._state = new
        self._alarm.cancel()
        if new == CircuitState.OPEN:
            self._alarm.arm(self.config.open_reset_delay)
        elif new == CircuitState.HALF_OPEN:
            self._consecutive_successes = 0
        else:
            self._consecutive_failures = 0
            self._consecutive_successes = 0
        return old, new

    def _on_reset_alarm(self) -> None:
        with self._guard.hold():
            if self._state != CircuitState.OPEN:
                return
            transition = self._transition_to(CircuitState.HALF_OPEN)
            snapshot = self._snapshot()
        self._emit_state_change(*transition, snapshot)

    def _emit_state_change(
        self, old: CircuitState, new: CircuitState, snapshot: CircuitStats
    ) -> None:
        self._emit("on_state_change", self.name, old, new, snapshot)

    def _emit(self, hook: str, *args: object) -> None:
        for listener in tuple(self._listeners):
            try:
                getattr(listener, hook)(*args)
            except Exception:
                continue

    def __repr__(self) -> str:
        return (
            f"CircuitBreaker(name='{self.name}', state={self._state.value}, "
            f"failures={self._consecutive_failures}/{self.config.failure_threshold})"
        )
