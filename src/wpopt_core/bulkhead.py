"""Bulkhead isolation for one dependency.

A bulkhead bounds how many calls to a dependency run at once and how many
may wait for a slot, so saturation of one dependency cannot exhaust the
capacity needed by the others.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from wpopt_core._locking import StateGuard
from wpopt_core.errors import AdmissionRejectedError
from wpopt_core.logging import LoggerLike, get_logger, log_warning

T = TypeVar("T")


class BulkheadError(AdmissionRejectedError):
    """Base exception for bulkhead admission failures."""

    def __init__(self, message: str, *, bulkhead_name: str) -> None:
        super().__init__(message)
        self.bulkhead_name = bulkhead_name


class QueueFullError(BulkheadError):
    """Raised when the wait queue already holds ``max_queued`` waiters."""


class QueueTimeoutError(BulkheadError):
    """Raised when a waiter is not admitted within ``queue_timeout``."""


@dataclass(frozen=True)
class BulkheadConfig:
    """Configuration for bulkhead isolation.

    Attributes:
        max_concurrent: Calls allowed to run at the same time.
        max_queued: Waiters allowed in the queue; ``0`` disables queuing.
        queue_timeout: Seconds a waiter may wait before being rejected.
    """

    max_concurrent: int = 10
    max_queued: int = 100
    queue_timeout: float = 30.0

    def __post_init__(self) -> None:
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if self.max_queued < 0:
            raise ValueError("max_queued must be >= 0")
        if self.queue_timeout <= 0:
            raise ValueError("queue_timeout must be > 0")


@dataclass(frozen=True)
class BulkheadStats:
    """Snapshot of bulkhead occupancy."""

    name: str
    running: int
    queued: int
    available: int
    rejected: int
    timed_out: int


@dataclass(eq=False)
class _Waiter:
    future: asyncio.Future[None]
    timer: asyncio.TimerHandle | None = field(default=None)


class Bulkhead:
    """Bounded concurrency pool with a FIFO overflow queue."""

    def __init__(
        self,
        name: str,
        *,
        config: BulkheadConfig | None = None,
        logger: LoggerLike | None = None,
    ) -> None:
        """Create a bulkhead.

        Args:
            name: Dependency name used in errors and log events.
            config: Bulkhead configuration. Defaults to ``BulkheadConfig()``.
            logger: Optional logger override.
        """
        self.name = name
        self.config = BulkheadConfig() if config is None else config
        self._logger = get_logger(__name__) if logger is None else logger
        self._guard = StateGuard()
        self._running = 0
        self._queue: deque[_Waiter] = deque()
        self._rejected = 0
        self._timed_out = 0

    @property
    def running(self) -> int:
        return self._running

    @property
    def queued(self) -> int:
        return len(self._queue)

    async def run(self, work: Callable[[], Awaitable[T]]) -> T:
        """Run ``work`` once a slot is available.

        Raises:
            QueueFullError: When no slot is free and the queue is full. Raised
                before the caller suspends.
            QueueTimeoutError: When no slot frees up within ``queue_timeout``.
        """
        await self._acquire()
        try:
            return await work()
        finally:
            self.release()

    async def _acquire(self) -> None:
        with self._guard.hold():
            if self._running < self.config.max_concurrent:
                self._running += 1
                return
            if len(self._queue) >= self.config.max_queued:
                self._rejected += 1
                rejection = QueueFullError(
                    f"bulkhead_queue_full: {self.name} "
                    f"max_queued={self.config.max_queued}",
                    bulkhead_name=self.name,
                )
            else:
                rejection = None
                loop = asyncio.get_running_loop()
                waiter = _Waiter(future=loop.create_future())
                waiter.timer = loop.call_later(
                    self.config.queue_timeout, self._expire, waiter
                )
                self._queue.append(waiter)

        if rejection is not None:
            log_warning(
                self._logger,
                "bulkhead.queue_full",
                bulkhead=self.name,
                running=self._running,
                queued=len(self._queue),
            )
            raise rejection

        try:
            await waiter.future
        except asyncio.CancelledError:
            self._abandon(waiter)
            raise

    def release(self) -> None:
        """Free one slot, handing it to the oldest live waiter if any."""
        with self._guard.hold():
            while self._queue:
                waiter = self._queue.popleft()
                if waiter.timer is not None:
                    waiter.timer.cancel()
                if waiter.future.done():
                    continue
                # Slot passes to the waiter; running count is unchanged.
                waiter.future.set_result(None)
                return
            self._running -= 1

    def _expire(self, waiter: _Waiter) -> None:
        with self._guard.hold():
            if waiter not in self._queue:
                return
            self._queue.remove(waiter)
            if waiter.future.done():
                return
            self._timed_out += 1
            waiter.future.set_exception(
                QueueTimeoutError(
                    f"bulkhead_queue_timeout: {self.name} "
                    f"timeout={self.config.queue_timeout:g}s",
                    bulkhead_name=self.name,
                )
            )
        log_warning(
            self._logger,
            "bulkhead.queue_timeout",
            bulkhead=self.name,
            queue_timeout=self.config.queue_timeout,
        )

    def _abandon(self, waiter: _Waiter) -> None:
        with self._guard.hold():
            if waiter in self._queue:
                self._queue.remove(waiter)
                if waiter.timer is not None:
                    waiter.timer.cancel()
                return
            granted = (
                waiter.future.done()
                and not waiter.future.cancelled()
                and waiter.future.exception() is None
            )
        if granted:
            self.release()

    def stats(self) -> BulkheadStats:
        """Return current occupancy counters."""
        with self._guard.hold():
            return BulkheadStats(
                name=self.name,
                running=self._running,
                queued=len(self._queue),
                available=self.config.max_concurrent - self._running,
                rejected=self._rejected,
                timed_out=self._timed_out,
            )
