"""Guard for in-process resilience state.

Under a single event loop, state changes made between suspension points are
already atomic. On free-threaded builds a thread lock is also taken so the
decision and the mutation it gates stay together.
"""

import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager


def gil_enabled() -> bool:
    """Return whether the running interpreter holds a GIL."""
    is_gil_enabled = getattr(sys, "_is_gil_enabled", None)
    return True if is_gil_enabled is None else bool(is_gil_enabled())


class StateGuard:
    """Serialize synchronous state mutation of one guard instance."""

    def __init__(self) -> None:
        self._thread_lock: threading.Lock | None = None
        if not gil_enabled():
            self._thread_lock = threading.Lock()

    @contextmanager
    def hold(self) -> Iterator[None]:
        if self._thread_lock is None:
            yield
            return
        with self._thread_lock:
            yield
