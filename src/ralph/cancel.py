"""Cancellation scope shared by the loop engine and the backend adapter."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

LOGGER = logging.getLogger(__name__)

CancelCallback = Callable[[], None]


class CancelScope:
    """A one-shot cancellation signal with an optional deadline.

    The scope is signalled by an explicit ``cancel()``, by its deadline
    elapsing, or by its parent scope being cancelled. Signalling is
    idempotent: callbacks registered with ``add_callback`` run exactly once,
    on the thread that first cancels the scope.
    """

    def __init__(self, timeout: float = 0.0, *, parent: CancelScope | None = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[CancelCallback] = []
        self._deadline: float | None = None
        self._timer: threading.Timer | None = None
        self._detach_parent: CancelCallback | None = None

        if timeout > 0:
            self._deadline = time.monotonic() + timeout
            self._timer = threading.Timer(timeout, self.cancel)
            self._timer.daemon = True
            self._timer.start()
        if parent is not None:
            self._detach_parent = parent.add_callback(self.cancel)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def deadline_exceeded(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        for callback in callbacks:
            try:
                callback()
            except Exception:  # noqa: BLE001
                LOGGER.exception("cancel_callback_failed")

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or ``timeout`` elapses; return the cancelled flag."""
        return self._event.wait(timeout)

    def add_callback(self, callback: CancelCallback) -> CancelCallback:
        """Register ``callback`` to run on cancellation and return a remover.

        When the scope is already cancelled the callback runs immediately.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return lambda: self._remove_callback(callback)
        callback()
        return lambda: None

    def close(self) -> None:
        """Release the deadline timer and parent link without signalling."""
        if self._timer is not None:
            self._timer.cancel()
        if self._detach_parent is not None:
            self._detach_parent()
            self._detach_parent = None

    def _remove_callback(self, callback: CancelCallback) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)
