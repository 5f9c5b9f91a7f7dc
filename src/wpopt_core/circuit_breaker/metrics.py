"""Observability hooks for circuit breakers."""

from typing import Protocol

from wpopt_core.circuit_breaker.state import CircuitState, CircuitStats
from wpopt_core.logging import LoggerLike, get_logger, log_info, log_warning


class BreakerListener(Protocol):
    """Listener protocol for circuit breaker events.

    Notes:
        Hooks are called synchronously from the breaker. Exceptions raised by
        a hook are swallowed and never reach the caller of the breaker.
    """

    def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState, stats: CircuitStats
    ) -> None:
        """Handle circuit state transitions."""

    def on_call_rejected(self, name: str, retry_after: float) -> None:
        """Handle call rejection while the circuit is open."""

    def on_success(self, name: str, stats: CircuitStats, elapsed: float) -> None:
        """Handle successful protected call completion."""

    def on_failure(
        self, name: str, stats: CircuitStats, exc: Exception, elapsed: float
    ) -> None:
        """Handle failed protected call completion."""


class LoggingBreakerListener:
    """Emit breaker transitions and rejections as structured log events."""

    def __init__(self, logger: LoggerLike | None = None) -> None:
        self._logger = get_logger(__name__) if logger is None else logger

    def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState, stats: CircuitStats
    ) -> None:
        log_warning(
            self._logger,
            "circuit_breaker.state_changed",
            breaker=name,
            old_state=old.value,
            new_state=new.value,
            consecutive_failures=stats.consecutive_failures,
        )

    def on_call_rejected(self, name: str, retry_after: float) -> None:
        log_info(
            self._logger,
            "circuit_breaker.call_rejected",
            breaker=name,
            retry_after=round(retry_after, 3),
        )

    def on_success(self, name: str, stats: CircuitStats, elapsed: float) -> None:
        return

    def on_failure(
        self, name: str, stats: CircuitStats, exc: Exception, elapsed: float
    ) -> None:
        log_warning(
            self._logger,
            "circuit_breaker.call_failed",
            breaker=name,
            error_type=type(exc).__name__,
            consecutive_failures=stats.consecutive_failures,
            elapsed=round(elapsed, 3),
        )
