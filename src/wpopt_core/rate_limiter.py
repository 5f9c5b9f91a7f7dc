"""Local, non-blocking admission control per dependency."""

from __future__ import annotations

import math
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

from wpopt_core._locking import StateGuard
from wpopt_core.errors import AdmissionRejectedError


class RateLimitStrategy(StrEnum):
    """Rate limiting strategies."""

    FIXED_WINDOW = "fixed_window"
    SLIDING_WINDOW = "sliding_window"
    TOKEN_BUCKET = "token_bucket"


class RateLimitExceededError(AdmissionRejectedError):
    """Raised by ``RateLimiter.acquire`` when no capacity is left."""

    def __init__(self, limiter_name: str, strategy: RateLimitStrategy) -> None:
        self.limiter_name = limiter_name
        self.strategy = strategy
        super().__init__(f"rate_limited: {limiter_name} strategy={strategy.value}")


@dataclass(frozen=True)
class RateLimiterConfig:
    """Rate limiter configuration.

    Attributes:
        max_requests: Requests admitted per ``window``.
        window: Window length in seconds.
        strategy: Admission algorithm. Sliding window is exact at window
            boundaries and is the default.
    """

    max_requests: int = 100
    window: float = 60.0
    strategy: RateLimitStrategy = RateLimitStrategy.SLIDING_WINDOW

    def __post_init__(self) -> None:
        if self.max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if self.window <= 0:
            raise ValueError("window must be > 0")


class RateLimiter:
    """Admit at most ``max_requests`` per ``window`` without ever queuing."""

    def __init__(
        self,
        name: str,
        *,
        config: RateLimiterConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Create a limiter.

        Args:
            name: Dependency name used in rejection errors.
            config: Limiter configuration. Defaults to ``RateLimiterConfig()``.
            clock: Epoch-seconds clock. Fixed windows align to this epoch.
        """
        self.name = name
        self.config = RateLimiterConfig() if config is None else config
        self._clock = clock
        self._guard = StateGuard()
        self._log: deque[float] = deque()
        self._tokens = float(self.config.max_requests)
        self._last_refill = clock()

    def try_acquire(self) -> bool:
        """Consume one unit of capacity if available; never blocks."""
        now = self._clock()
        with self._guard.hold():
            if self.config.strategy == RateLimitStrategy.TOKEN_BUCKET:
                self._refill(now)
                if self._tokens < 1:
                    return False
                self._tokens -= 1
                return True

            self._evict(now)
            if len(self._log) >= self.config.max_requests:
                return False
            self._log.append(now)
            return True

    def acquire(self) -> None:
        """Consume one unit of capacity or raise ``RateLimitExceededError``."""
        if not self.try_acquire():
            raise RateLimitExceededError(self.name, self.config.strategy)

    def remaining(self) -> int:
        """Return the capacity left for the active strategy right now."""
        now = self._clock()
        with self._guard.hold():
            if self.config.strategy == RateLimitStrategy.TOKEN_BUCKET:
                self._refill(now)
                return math.floor(self._tokens)
            self._evict(now)
            return max(0, self.config.max_requests - len(self._log))

    def reset(self) -> None:
        """Forget every admitted request and refill the bucket."""
        with self._guard.hold():
            self._log.clear()
            self._tokens = float(self.config.max_requests)
            self._last_refill = self._clock()

    def _evict(self, now: float) -> None:
        if self.config.strategy == RateLimitStrategy.FIXED_WINDOW:
            window_start = math.floor(now / self.config.window) * self.config.window
            while self._log and self._log[0] < window_start:
                self._log.popleft()
            return

        cutoff = now - self.config.window
        while self._log and self._log[0] <= cutoff:
            self._log.popleft()

    def _refill(self, now: float) -> None:
        elapsed = max(now - self._last_refill, 0.0)
        rate = self.config.max_requests / self.config.window
        self._tokens = min(
            float(self.config.max_requests), self._tokens + elapsed * rate
        )
        self._last_refill = now
