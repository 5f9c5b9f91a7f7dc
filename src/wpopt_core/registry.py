"""Per-dependency guard registry.

One ``DependencyRegistry`` is built at startup and handed to the
orchestrator. It owns exactly one breaker, limiter and bulkhead per
dependency name for the lifetime of the process.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass

from wpopt_core._locking import StateGuard
from wpopt_core.bulkhead import Bulkhead, BulkheadConfig, BulkheadStats
from wpopt_core.circuit_breaker import (
    BreakerListener,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitStats,
    LoggingBreakerListener,
)
from wpopt_core.rate_limiter import RateLimiter, RateLimiterConfig
from wpopt_core.retry import RetryOptions
from wpopt_core.settings import CoreSettings

PRIMARY = "primary"
VIDEO = "video"
REFERENCES = "references"


@dataclass(frozen=True)
class DependencyGuards:
    """Guards protecting one dependency."""

    breaker: CircuitBreaker
    limiter: RateLimiter
    bulkhead: Bulkhead
    retry_options: RetryOptions

    @classmethod
    def build(
        cls,
        name: str,
        *,
        breaker_config: CircuitBreakerConfig | None = None,
        limiter_config: RateLimiterConfig | None = None,
        bulkhead_config: BulkheadConfig | None = None,
        retry_options: RetryOptions | None = None,
        listeners: Sequence[BreakerListener] | None = None,
    ) -> DependencyGuards:
        """Create fresh guards for ``name``."""
        breaker = CircuitBreaker(name, config=breaker_config, listeners=listeners)
        return cls(
            breaker=breaker,
            limiter=RateLimiter(name, config=limiter_config),
            bulkhead=Bulkhead(name, config=bulkhead_config),
            retry_options=(
                breaker.config.retry_options()
                if retry_options is None
                else retry_options
            ),
        )


@dataclass(frozen=True)
class DependencyStats:
    """Point-in-time view of one dependency's guards."""

    breaker: CircuitStats
    bulkhead: BulkheadStats
    rate_limit_remaining: int


class DependencyRegistry:
    """Registry of guards keyed by dependency name."""

    def __init__(self) -> None:
        self._guards: dict[str, DependencyGuards] = {}
        self._guard = StateGuard()

    def register(self, name: str, guards: DependencyGuards) -> DependencyGuards:
        """Register ``guards`` under ``name``; a name can only be used once."""
        with self._guard.hold():
            if name in self._guards:
                raise ValueError(f"dependency '{name}' is already registered")
            self._guards[name] = guards
        return guards

    def get(self, name: str) -> DependencyGuards:
        """Return the guards of ``name``.

        Raises:
            KeyError: When ``name`` was never registered.
        """
        with self._guard.hold():
            try:
                return self._guards[name]
            except KeyError:
                raise KeyError(f"unknown dependency '{name}'") from None

    def __contains__(self, name: object) -> bool:
        return name in self._guards

    def __iter__(self) -> Iterator[str]:
        return iter(tuple(self._guards))

    def stats(self) -> dict[str, DependencyStats]:
        """Return a stats snapshot for every registered dependency."""
        with self._guard.hold():
            items = tuple(self._guards.items())
        return {
            name: DependencyStats(
                breaker=guards.breaker.stats(),
                bulkhead=guards.bulkhead.stats(),
                rate_limit_remaining=guards.limiter.remaining(),
            )
            for name, guards in items
        }

    def reset_all(self) -> None:
        """Close every breaker and clear every limiter."""
        with self._guard.hold():
            guards = tuple(self._guards.values())
        for item in guards:
            item.breaker.reset()
            item.limiter.reset()

    @classmethod
    def from_settings(
        cls,
        settings: CoreSettings,
        *,
        listeners: Sequence[BreakerListener] | None = None,
    ) -> DependencyRegistry:
        """Build the primary, video and references guards from ``settings``."""
        listeners = (LoggingBreakerListener(),) if listeners is None else listeners
        limiter_config = RateLimiterConfig(
            max_requests=settings.rate_limit_max_requests,
            window=settings.rate_limit_window_seconds,
            strategy=settings.rate_limit_strategy,
        )
        bulkhead_config = BulkheadConfig(
            max_concurrent=settings.bulkhead_max_concurrent,
            max_queued=settings.bulkhead_max_queued,
            queue_timeout=settings.bulkhead_queue_timeout_seconds,
        )

        registry = cls()
        discovery = (
            settings.discovery_call_timeout_seconds,
            settings.discovery_max_retries,
        )
        plans = {
            PRIMARY: (
                settings.primary_call_timeout_seconds,
                settings.retry_max_retries,
            ),
            VIDEO: discovery,
            REFERENCES: discovery,
        }
        for name, (call_timeout, max_retries) in plans.items():
            breaker_config = CircuitBreakerConfig(
                failure_threshold=settings.breaker_failure_threshold,
                success_threshold=settings.breaker_success_threshold,
                call_timeout=call_timeout,
                open_reset_delay=settings.breaker_open_reset_seconds,
                max_retries=max_retries,
                backoff_multiplier=settings.retry_backoff_multiplier,
                max_backoff=settings.retry_max_backoff_seconds,
            )
            registry.register(
                name,
                DependencyGuards.build(
                    name,
                    breaker_config=breaker_config,
                    limiter_config=limiter_config,
                    bulkhead_config=bulkhead_config,
                    listeners=listeners,
                ),
            )
        return registry
