from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import pytest

from tests.wpopt_core.support.fakes import FakeLogger
from wpopt_core.bulkhead import (
    Bulkhead,
    BulkheadConfig,
    QueueFullError,
    QueueTimeoutError,
)
from wpopt_core.errors import AdmissionRejectedError

pytestmark = pytest.mark.asyncio


def _bulkhead(
    logger: FakeLogger | None = None,
    *,
    max_concurrent: int = 2,
    max_queued: int = 1,
    queue_timeout: float = 5.0,
) -> Bulkhead:
    return Bulkhead(
        "svc",
        config=BulkheadConfig(
            max_concurrent=max_concurrent,
            max_queued=max_queued,
            queue_timeout=queue_timeout,
        ),
        logger=logger,
    )


async def test_runs_work_and_releases_slot() -> None:
    bulkhead = _bulkhead()

    async def _work() -> str:
        assert bulkhead.running == 1
        return "ok"

    assert await bulkhead.run(_work) == "ok"
    assert bulkhead.running == 0


async def test_never_exceeds_max_concurrent() -> None:
    bulkhead = _bulkhead(max_concurrent=3, max_queued=20)
    peak = 0

    async def _work() -> None:
        nonlocal peak
        peak = max(peak, bulkhead.running)
        await asyncio.sleep(0.01)

    await asyncio.gather(*(bulkhead.run(_work) for _ in range(15)))

    assert peak == 3
    stats = bulkhead.stats()
    assert stats.running == 0
    assert stats.queued == 0
    assert stats.available == 3


async def test_queue_full_is_rejected_before_suspending(
    fake_logger: FakeLogger,
) -> None:
    bulkhead = _bulkhead(fake_logger, max_concurrent=1, max_queued=1)
    release = asyncio.Event()

    async def _blocked() -> None:
        await release.wait()

    running = asyncio.create_task(bulkhead.run(_blocked))
    queued = asyncio.create_task(bulkhead.run(_blocked))
    await asyncio.sleep(0)
    assert bulkhead.running == 1
    assert bulkhead.queued == 1

    rejected = bulkhead.run(_blocked)
    with pytest.raises(QueueFullError) as excinfo:
        rejected.send(None)
    rejected.close()

    assert isinstance(excinfo.value, AdmissionRejectedError)
    assert excinfo.value.bulkhead_name == "svc"
    assert "bulkhead.queue_full" in fake_logger.events
    assert bulkhead.stats().rejected == 1

    release.set()
    await asyncio.gather(running, queued)
    assert bulkhead.running == 0


async def test_zero_queue_rejects_immediately_when_busy() -> None:
    bulkhead = _bulkhead(max_concurrent=1, max_queued=0)
    release = asyncio.Event()

    async def _blocked() -> None:
        await release.wait()

    running = asyncio.create_task(bulkhead.run(_blocked))
    await asyncio.sleep(0)

    with pytest.raises(QueueFullError):
        await bulkhead.run(_blocked)

    release.set()
    await running


async def test_waiters_are_admitted_in_fifo_order() -> None:
    bulkhead = _bulkhead(max_concurrent=1, max_queued=5)
    release = asyncio.Event()
    order: list[int] = []

    async def _first() -> None:
        await release.wait()

    def _recorder(index: int) -> Callable[[], Awaitable[None]]:
        async def _work() -> None:
            order.append(index)

        return _work

    first = asyncio.create_task(bulkhead.run(_first))
    await asyncio.sleep(0)
    waiters = [asyncio.create_task(bulkhead.run(_recorder(i))) for i in range(4)]
    await asyncio.sleep(0)

    release.set()
    await asyncio.gather(first, *waiters)

    assert order == [0, 1, 2, 3]


async def test_queue_timeout_rejects_waiter_without_further_calls(
    fake_logger: FakeLogger,
) -> None:
    bulkhead = _bulkhead(
        fake_logger, max_concurrent=1, max_queued=1, queue_timeout=0.02
    )
    release = asyncio.Event()

    async def _blocked() -> None:
        await release.wait()

    running = asyncio.create_task(bulkhead.run(_blocked))
    await asyncio.sleep(0)

    with pytest.raises(QueueTimeoutError):
        await bulkhead.run(_blocked)

    assert bulkhead.queued == 0
    assert bulkhead.stats().timed_out == 1
    assert "bulkhead.queue_timeout" in fake_logger.events

    release.set()
    await running
    assert bulkhead.running == 0


async def test_cancelled_waiter_leaves_the_queue() -> None:
    bulkhead = _bulkhead(max_concurrent=1, max_queued=2)
    release = asyncio.Event()

    async def _blocked() -> None:
        await release.wait()

    running = asyncio.create_task(bulkhead.run(_blocked))
    await asyncio.sleep(0)
    waiter = asyncio.create_task(bulkhead.run(_blocked))
    await asyncio.sleep(0)
    assert bulkhead.queued == 1

    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    assert bulkhead.queued == 0
    release.set()
    await running
    assert bulkhead.running == 0


async def test_slot_is_released_when_work_fails() -> None:
    bulkhead = _bulkhead()

    async def _boom() -> None:
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await bulkhead.run(_boom)

    assert bulkhead.running == 0


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"max_concurrent": 0}, "max_concurrent must be >= 1"),
        ({"max_queued": -1}, "max_queued must be >= 0"),
        ({"queue_timeout": 0.0}, "queue_timeout must be > 0"),
    ],
)
async def test_config_validation(kwargs: dict[str, object], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        BulkheadConfig(**kwargs)  # type: ignore[arg-type]
