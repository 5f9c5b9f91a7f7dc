"""Framework-agnostic async circuit breaker.

This package implements the circuit breaker pattern from *Release It!*.

Key behavior notes:
  - State is owned by one ``CircuitBreaker`` instance per dependency and is
    never shared or persisted.
  - The ``OPEN -> HALF_OPEN`` transition is driven by a single alarm owned by
    the breaker. Re-entering ``OPEN`` re-arms it; ``reset()`` and
    ``force_state()`` cancel it.
  - Half-open probing is conservative: at most one in-flight probe call is
    permitted per ``CircuitBreaker`` instance.
  - Excluded exceptions (admission rejections by default) leave the counters
    untouched: no failure, no success.
"""

from wpopt_core.circuit_breaker.breaker import CircuitBreaker, CircuitBreakerConfig
from wpopt_core.circuit_breaker.exceptions import (
    CircuitBreakerError,
    CircuitOpenError,
)
from wpopt_core.circuit_breaker.metrics import BreakerListener, LoggingBreakerListener
from wpopt_core.circuit_breaker.state import CircuitState, CircuitStats

__all__ = [
    "BreakerListener",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitOpenError",
    "CircuitState",
    "CircuitStats",
    "LoggingBreakerListener",
]
