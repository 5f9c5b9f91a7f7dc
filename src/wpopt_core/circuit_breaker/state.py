"""Circuit breaker state primitives."""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class CircuitState(StrEnum):
    """Circuit breaker state values."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitStats:
    """Point-in-time view of breaker internals useful for metrics/logging.

    Attributes:
        name: Breaker name.
        state: Current breaker state.
        failures: Total failed calls since the last reset.
        successes: Total successful calls since the last reset.
        consecutive_failures: Failures since the last success.
        consecutive_successes: Successes since the last failure.
        last_failure_at: Timestamp of the last counted failure, if any.
        last_success_at: Timestamp of the last success, if any.
        total_requests: Calls seen by the breaker, rejected ones included.
        rejected_requests: Calls refused without attempting the work.
    """

    name: str
    state: CircuitState
    failures: int
    successes: int
    consecutive_failures: int
    consecutive_successes: int
    last_failure_at: datetime | None
    last_success_at: datetime | None
    total_requests: int
    rejected_requests: int
