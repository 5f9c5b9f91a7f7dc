from __future__ import annotations

import pytest

from tests.wpopt_core.support.fakes import FakeClock
from wpopt_core.errors import AdmissionRejectedError
from wpopt_core.rate_limiter import (
    RateLimiter,
    RateLimiterConfig,
    RateLimitExceededError,
    RateLimitStrategy,
)


def _limiter(
    clock: FakeClock,
    strategy: RateLimitStrategy,
    *,
    max_requests: int = 3,
    window: float = 10.0,
) -> RateLimiter:
    return RateLimiter(
        "svc",
        config=RateLimiterConfig(
            max_requests=max_requests, window=window, strategy=strategy
        ),
        clock=clock,
    )


def test_sliding_window_is_default() -> None:
    assert RateLimiterConfig().strategy == RateLimitStrategy.SLIDING_WINDOW


def test_sliding_window_never_exceeds_max_in_trailing_window(
    fake_clock: FakeClock,
) -> None:
    limiter = _limiter(fake_clock, RateLimitStrategy.SLIDING_WINDOW)
    admitted: list[float] = []

    for _ in range(200):
        if limiter.try_acquire():
            admitted.append(fake_clock.now)
        fake_clock.advance(0.7)

    assert admitted
    for start in admitted:
        in_window = [t for t in admitted if start <= t < start + 10.0]
        assert len(in_window) <= 3


def test_sliding_window_frees_capacity_as_entries_age_out(
    fake_clock: FakeClock,
) -> None:
    limiter = _limiter(fake_clock, RateLimitStrategy.SLIDING_WINDOW)

    assert limiter.try_acquire()
    fake_clock.advance(4.0)
    assert limiter.try_acquire()
    assert limiter.try_acquire()
    assert not limiter.try_acquire()
    assert limiter.remaining() == 0

    fake_clock.advance(6.0)
    assert limiter.remaining() == 1
    assert limiter.try_acquire()
    assert not limiter.try_acquire()


def test_fixed_window_resets_at_epoch_aligned_boundary() -> None:
    clock = FakeClock(start=1_000.0)
    limiter = _limiter(clock, RateLimitStrategy.FIXED_WINDOW)

    clock.advance(7.0)
    for _ in range(3):
        assert limiter.try_acquire()
    assert not limiter.try_acquire()

    clock.advance(3.0)
    assert limiter.remaining() == 3
    assert limiter.try_acquire()


def test_token_bucket_refills_continuously(fake_clock: FakeClock) -> None:
    limiter = _limiter(fake_clock, RateLimitStrategy.TOKEN_BUCKET, max_requests=4)

    for _ in range(4):
        assert limiter.try_acquire()
    assert not limiter.try_acquire()

    fake_clock.advance(2.5)
    assert limiter.remaining() == 1
    assert limiter.try_acquire()
    assert not limiter.try_acquire()

    fake_clock.advance(1_000.0)
    assert limiter.remaining() == 4


def test_acquire_raises_admission_rejection(fake_clock: FakeClock) -> None:
    limiter = _limiter(fake_clock, RateLimitStrategy.SLIDING_WINDOW, max_requests=1)
    limiter.acquire()

    with pytest.raises(RateLimitExceededError) as excinfo:
        limiter.acquire()

    assert isinstance(excinfo.value, AdmissionRejectedError)
    assert excinfo.value.retryable is False
    assert excinfo.value.limiter_name == "svc"
    assert "rate_limited: svc" in str(excinfo.value)


def test_reset_restores_full_capacity(fake_clock: FakeClock) -> None:
    for strategy in RateLimitStrategy:
        limiter = _limiter(fake_clock, strategy)
        while limiter.try_acquire():
            pass

        limiter.reset()

        assert limiter.remaining() == 3


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"max_requests": 0}, "max_requests must be >= 1"),
        ({"window": 0.0}, "window must be > 0"),
    ],
)
def test_config_validation(kwargs: dict[str, object], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        RateLimiterConfig(**kwargs)  # type: ignore[arg-type]
