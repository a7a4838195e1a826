"""Thread-side concurrency primitives shared by the coordinator and executors."""

from __future__ import annotations

import queue
import threading
from typing import Generic, TypeVar

T = TypeVar("T")


class OperationCancelledError(RuntimeError):
    """Raised by :meth:`CancellationToken.raise_if_cancelled`."""


class CancellationToken:
    """Cooperative cancellation token backed by ``threading.Event``."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or ``timeout`` elapses. Returns ``is_cancelled``."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError("operation cancelled")


class ReportChannel(Generic[T]):
    """
    Synchronized hand-off from worker threads to the single scheduler thread.

    Producers call :meth:`put`; the scheduler drains with :meth:`get` (blocking
    with a timeout) followed by :meth:`drain` for anything else already queued.
    """

    def __init__(self) -> None:
        self._queue: queue.Queue[T] = queue.Queue()

    def put(self, item: T) -> None:
        self._queue.put(item)

    def get(self, timeout: float | None = None) -> T | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[T]:
        items: list[T] = []
        while True:
            try:
                items.append(self._queue.get_nowait())
            except queue.Empty:
                return items

    def __len__(self) -> int:
        return self._queue.qsize()


__all__ = ["CancellationToken", "OperationCancelledError", "ReportChannel"]
