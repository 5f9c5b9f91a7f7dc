from __future__ import annotations

import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.wait import wait_base

from wpopt_core.errors import DependencyError
from wpopt_core.logging import LoggerLike, get_logger, log_warning

T = TypeVar("T")

JITTER_CEILING = 0.2

_logger = get_logger(__name__)


def is_retryable_error(exc: BaseException) -> bool:
    """Default retry predicate: trust the typed ``retryable`` flag only."""
    if isinstance(exc, DependencyError):
        return exc.retryable
    return False


@dataclass(frozen=True)
class RetryOptions:
    """Per-call retry policy.

    Attributes:
        max_retries: Retries after the first attempt. ``0`` means one attempt.
        backoff_multiplier: Base of the exponential backoff, in seconds.
        max_backoff: Upper bound for a single backoff sleep, in seconds.
        is_retryable: Predicate deciding whether a failure may be retried.
    """

    max_retries: int = 3
    backoff_multiplier: float = 2.0
    max_backoff: float = 30.0
    is_retryable: Callable[[BaseException], bool] = field(
        default=is_retryable_error, compare=False
    )

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if self.max_backoff < 0:
            raise ValueError("max_backoff must be >= 0")


class wait_capped_exponential_jitter(wait_base):
    """``min(maximum, multiplier ** attempt) * (1 + uniform(0, jitter))``.

    The jittered delay is clamped to ``maximum`` and never drops below the
    previous delay of the same retry loop, so one instance belongs to one loop.
    """

    def __init__(
        self,
        *,
        multiplier: float,
        maximum: float,
        jitter: float = JITTER_CEILING,
    ) -> None:
        self.multiplier = multiplier
        self.maximum = maximum
        self.jitter = jitter
        self._previous = 0.0

    def __call__(self, retry_state: RetryCallState) -> float:
        try:
            base = min(self.maximum, self.multiplier**retry_state.attempt_number)
        except OverflowError:
            base = self.maximum
        delay = base * (1 + random.uniform(0, self.jitter))
        delay = min(self.maximum, max(delay, self._previous))
        self._previous = delay
        return delay


def _build_before_sleep(
    logger: LoggerLike, operation: str
) -> Callable[[RetryCallState], None]:
    def _before_sleep(state: RetryCallState) -> None:
        outcome = state.outcome
        error = None if outcome is None else outcome.exception()
        delay = 0.0 if state.next_action is None else state.next_action.sleep
        log_warning(
            logger,
            "retry.sleeping",
            operation=operation,
            attempt=state.attempt_number,
            delay=round(delay, 3),
            error_type=None if error is None else type(error).__name__,
        )

    return _before_sleep


def build_retrying(
    options: RetryOptions,
    *,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    before_sleep: Callable[[RetryCallState], None] | None = None,
) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` implementing ``options``.

    A failure that is not retryable, or that happens on the last permitted
    attempt, is re-raised immediately without a trailing sleep.
    """
    kwargs: dict[str, Any] = {
        "retry": retry_if_exception(options.is_retryable),
        "wait": wait_capped_exponential_jitter(
            multiplier=options.backoff_multiplier,
            maximum=options.max_backoff,
        ),
        "stop": stop_after_attempt(options.max_retries + 1),
        "reraise": True,
    }
    if sleep is not None:
        kwargs["sleep"] = sleep
    if before_sleep is not None:
        kwargs["before_sleep"] = before_sleep
    return AsyncRetrying(**kwargs)


async def with_retry(
    work: Callable[[], Awaitable[T]],
    options: RetryOptions | None = None,
    *,
    operation: str = "call",
    sleep: Callable[[float], Awaitable[None]] | None = None,
    logger: LoggerLike | None = None,
) -> T:
    """Run ``work`` under ``options``, re-raising the last failure.

    Args:
        work: Zero-argument coroutine factory; called once per attempt.
        options: Retry policy. Defaults to ``RetryOptions()``.
        operation: Name used in retry log events.
        sleep: Optional sleep override (tests).
        logger: Optional logger override.

    Returns:
        The first successful result of ``work``.
    """
    retrying = build_retrying(
        RetryOptions() if options is None else options,
        sleep=sleep,
        before_sleep=_build_before_sleep(
            _logger if logger is None else logger, operation
        ),
    )
    async for attempt in retrying:
        with attempt:
            return await work()

    raise RuntimeError("Retry loop exited unexpectedly.")
