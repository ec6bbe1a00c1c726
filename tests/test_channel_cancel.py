from __future__ import annotations

import queue
import threading
import time

import pytest

from ralph.cancel import CancelScope
from ralph.channel import ChannelClosed, EventChannel


def test_channel_preserves_order_and_closes() -> None:
    channel: EventChannel[int] = EventChannel(10)
    for value in range(5):
        assert channel.put(value) is True
    channel.close()

    assert list(channel) == [0, 1, 2, 3, 4]
    with pytest.raises(ChannelClosed):
        channel.get(timeout=0.01)


def test_channel_put_after_close_is_noop() -> None:
    channel: EventChannel[str] = EventChannel(2)
    channel.close()
    channel.close()

    assert channel.put("late") is False
    assert channel.closed is True
    assert list(channel) == []


def test_channel_get_times_out_when_empty() -> None:
    channel: EventChannel[str] = EventChannel(2)

    with pytest.raises(queue.Empty):
        channel.get(timeout=0.01)


def test_channel_put_gives_up_when_cancelled() -> None:
    channel: EventChannel[int] = EventChannel(1)
    scope = CancelScope()
    channel.put(1)

    threading.Timer(0.05, scope.cancel).start()
    started = time.monotonic()

    assert channel.put(2, cancel=scope) is False
    assert time.monotonic() - started < 2.0


def test_cancel_scope_runs_callbacks_once() -> None:
    scope = CancelScope()
    calls: list[str] = []
    scope.add_callback(lambda: calls.append("first"))

    scope.cancel()
    scope.cancel()

    assert scope.cancelled is True
    assert calls == ["first"]


def test_cancel_scope_runs_late_callback_immediately() -> None:
    scope = CancelScope()
    scope.cancel()
    calls: list[str] = []

    scope.add_callback(lambda: calls.append("late"))

    assert calls == ["late"]


def test_cancel_scope_callback_can_be_removed() -> None:
    scope = CancelScope()
    calls: list[str] = []
    remove = scope.add_callback(lambda: calls.append("removed"))

    remove()
    scope.cancel()

    assert calls == []


def test_cancel_scope_deadline_fires() -> None:
    scope = CancelScope(0.05)

    assert scope.wait(2.0) is True
    assert scope.deadline_exceeded is True


def test_cancel_scope_without_deadline() -> None:
    scope = CancelScope()

    assert scope.deadline_exceeded is False
    assert scope.wait(0.01) is False


def test_cancel_scope_follows_parent_until_closed() -> None:
    parent = CancelScope()
    child = CancelScope(parent=parent)
    detached = CancelScope(parent=parent)
    detached.close()

    parent.cancel()

    assert child.cancelled is True
    assert detached.cancelled is False


def test_cancel_scope_logs_failing_callback(caplog) -> None:
    scope = CancelScope()
    calls: list[str] = []

    def broken() -> None:
        raise RuntimeError("boom")

    scope.add_callback(broken)
    scope.add_callback(lambda: calls.append("after"))

    scope.cancel()

    assert calls == ["after"]
    assert "cancel_callback_failed" in caplog.text
