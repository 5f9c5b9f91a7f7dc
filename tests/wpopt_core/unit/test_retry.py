from __future__ import annotations

from collections.abc import Awaitable, Callable

import pytest

from tests.wpopt_core.support.fakes import FakeLogger
from wpopt_core.errors import (
    AdmissionRejectedError,
    PermanentError,
    ResponseDecodeError,
    TransientError,
)
from wpopt_core.retry import (
    JITTER_CEILING,
    RetryOptions,
    is_retryable_error,
    with_retry,
)

pytestmark = pytest.mark.asyncio


class _SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _always_failing(
    exc: Exception,
) -> tuple[list[int], Callable[[], Awaitable[None]]]:
    calls = [0]

    async def _work() -> None:
        calls[0] += 1
        raise exc

    return calls, _work


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"max_retries": -1}, "max_retries must be >= 0"),
        ({"backoff_multiplier": 0.5}, "backoff_multiplier must be >= 1"),
        ({"max_backoff": -1.0}, "max_backoff must be >= 0"),
    ],
)
async def test_retry_options_validation(
    kwargs: dict[str, object], message: str
) -> None:
    with pytest.raises(ValueError, match=message):
        RetryOptions(**kwargs)  # type: ignore[arg-type]


async def test_default_predicate_trusts_retryable_flag() -> None:
    assert is_retryable_error(TransientError("503")) is True
    assert is_retryable_error(ResponseDecodeError("bad json")) is True
    assert is_retryable_error(PermanentError("401")) is False
    assert is_retryable_error(AdmissionRejectedError("open")) is False
    assert is_retryable_error(ValueError("unknown")) is False


async def test_returns_first_success_without_sleeping() -> None:
    sleep = _SleepRecorder()

    async def _ok() -> str:
        return "done"

    assert await with_retry(_ok, RetryOptions(), sleep=sleep) == "done"
    assert sleep.delays == []


async def test_backoff_delays_are_non_decreasing_and_bounded() -> None:
    sleep = _SleepRecorder()
    calls, work = _always_failing(TransientError("503"))
    options = RetryOptions(max_retries=6, backoff_multiplier=2.0, max_backoff=10.0)

    with pytest.raises(TransientError):
        await with_retry(work, options, sleep=sleep)

    assert calls[0] == 7
    assert len(sleep.delays) == 6
    assert 2.0 <= sleep.delays[0] <= 2.0 * (1 + JITTER_CEILING)
    assert all(delay <= 10.0 for delay in sleep.delays)
    assert sleep.delays == sorted(sleep.delays)
    assert sleep.delays[-1] == 10.0


async def test_no_sleep_when_max_retries_is_zero() -> None:
    sleep = _SleepRecorder()
    calls, work = _always_failing(TransientError("503"))

    with pytest.raises(TransientError):
        await with_retry(work, RetryOptions(max_retries=0), sleep=sleep)

    assert calls[0] == 1
    assert sleep.delays == []


@pytest.mark.parametrize(
    "exc",
    [
        PermanentError("401", http_status=401),
        AdmissionRejectedError("circuit_open"),
        ValueError("unexpected"),
    ],
)
async def test_non_retryable_failures_are_raised_immediately(exc: Exception) -> None:
    sleep = _SleepRecorder()
    calls, work = _always_failing(exc)

    with pytest.raises(type(exc)):
        await with_retry(work, RetryOptions(max_retries=3), sleep=sleep)

    assert calls[0] == 1
    assert sleep.delays == []


async def test_custom_predicate_overrides_retryable_flag() -> None:
    sleep = _SleepRecorder()
    calls, work = _always_failing(ValueError("flaky parser"))
    options = RetryOptions(
        max_retries=2,
        backoff_multiplier=1.0,
        max_backoff=0.0,
        is_retryable=lambda exc: isinstance(exc, ValueError),
    )

    with pytest.raises(ValueError):
        await with_retry(work, options, sleep=sleep)

    assert calls[0] == 3
    assert sleep.delays == [0.0, 0.0]


async def test_retry_sleeps_are_logged(fake_logger: FakeLogger) -> None:
    sleep = _SleepRecorder()
    attempts = 0

    async def _flaky() -> str:
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise TransientError("503")
        return "ok"

    result = await with_retry(
        _flaky,
        RetryOptions(max_retries=1),
        operation="provider:google",
        sleep=sleep,
        logger=fake_logger,
    )

    assert result == "ok"
    fields = fake_logger.fields_for("retry.sleeping")
    assert len(fields) == 1
    assert fields[0]["operation"] == "provider:google"
    assert fields[0]["attempt"] == 1
    assert fields[0]["error_type"] == "TransientError"
