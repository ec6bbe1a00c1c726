"""Bounded, ordered, closable event channel."""

from __future__ import annotations

import queue
import threading
from collections.abc import Iterator
from typing import Generic, TypeVar

from ralph.cancel import CancelScope

T = TypeVar("T")

DEFAULT_CAPACITY = 100
POLL_INTERVAL_SECONDS = 0.05

_CLOSED = object()


class ChannelClosed(Exception):
    """Raised by ``EventChannel.get`` once the channel is closed and drained."""


class EventChannel(Generic[T]):
    """FIFO channel between one producer and one consumer.

    ``put`` blocks while the channel is full. When a cancel scope is passed,
    the wait gives up as soon as the scope is cancelled so a producer never
    outlives a consumer that stopped reading. Writing to a closed channel is
    a no-op that returns False.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._queue: queue.Queue[object] = queue.Queue(maxsize=capacity)
        self._lock = threading.Lock()
        self._closed = False
        self._drained = False

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def put(self, item: T, *, cancel: CancelScope | None = None) -> bool:
        if self.closed:
            return False
        return self._enqueue(item, cancel)

    def close(self, *, cancel: CancelScope | None = None) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        if self._enqueue(_CLOSED, cancel):
            return
        try:
            self._queue.put_nowait(_CLOSED)
        except queue.Full:
            # Cancelled with a full buffer: the consumer is expected to stop on
            # the same scope rather than wait for the marker.
            pass

    def get(self, timeout: float | None = None) -> T:
        """Return the next item; raise ``queue.Empty`` on timeout.

        Raises ``ChannelClosed`` once the close marker has been reached.
        """
        if self._drained:
            raise ChannelClosed
        item = self._queue.get(timeout=timeout)
        if item is _CLOSED:
            self._drained = True
            raise ChannelClosed
        return item  # type: ignore[return-value]

    def __iter__(self) -> Iterator[T]:
        while True:
            try:
                yield self.get()
            except ChannelClosed:
                return

    def _enqueue(self, item: object, cancel: CancelScope | None) -> bool:
        if cancel is None:
            self._queue.put(item)
            return True
        while not cancel.cancelled:
            try:
                self._queue.put(item, timeout=POLL_INTERVAL_SECONDS)
            except queue.Full:
                continue
            return True
        return False
