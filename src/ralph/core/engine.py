"""Iteration state machine driving a loop run to a single terminal outcome."""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Iterator
from typing import Protocol

from ralph.backend.events import (
    BackendErrorEvent,
    BackendEvent,
    TextEvent,
    ToolCall,
    ToolCallEvent,
    ToolResultEvent,
)
from ralph.cancel import CancelScope
from ralph.channel import ChannelClosed, EventChannel
from ralph.core.events import (
    PROMISE_SOURCE_AI_RESPONSE,
    AIResponse,
    ErrorOccurred,
    IterationComplete,
    IterationStart,
    LoopCancelled,
    LoopComplete,
    LoopEvent,
    LoopFailed,
    LoopStart,
    PromiseDetected,
    ToolExecutionResult,
    ToolExecutionStart,
)
from ralph.core.models import LoopConfig, LoopResult, LoopState
from ralph.core.promise import detect_promise
from ralph.core.prompt import build_iteration_prompt
from ralph.errors import (
    BackendError,
    LoopCancelledError,
    LoopError,
    LoopStateError,
    LoopTimeoutError,
)

LOGGER = logging.getLogger(__name__)

EVENT_BUFFER_SIZE = 100
CANCEL_CLEANUP_GRACE_SECONDS = 1.0
CLEANUP_GRACE_SECONDS = 5.0
EVENT_POLL_SECONDS = 0.05


class PromptSession(Protocol):
    """The slice of ``BackendSession`` the engine depends on."""

    def start(self) -> None: ...

    def create_session(self, cancel: CancelScope | None = None) -> None: ...

    def send_prompt(self, cancel: CancelScope, prompt: str) -> EventChannel[BackendEvent]: ...

    def destroy_session(self) -> None: ...

    def stop(self) -> None: ...


class _Interrupted(Exception):
    """The cancel scope fired while an iteration was in flight."""


class LoopEngine:
    """Runs iterations until the budget, the timeout, or the operator stops it.

    An engine is single-use. ``start`` blocks the calling thread for the whole
    run and always returns a ``LoopResult``; terminal failures are reported on
    the result and as the final event, never raised. Events go to a bounded
    channel read by one consumer through ``events()``. A full channel blocks
    the loop until the consumer catches up, so no event is ever dropped.
    """

    def __init__(
        self,
        config: LoopConfig | None = None,
        session: PromptSession | None = None,
    ) -> None:
        self._config = config or LoopConfig.default()
        self._session = session
        self._lock = threading.Lock()
        self._state = LoopState.IDLE
        self._iteration = 0
        self._start_time = 0.0
        self._events: EventChannel[LoopEvent] = EventChannel(EVENT_BUFFER_SIZE)
        self._events_closed = False
        self._external_cancel = CancelScope()

    @property
    def config(self) -> LoopConfig:
        return self._config

    @property
    def state(self) -> LoopState:
        with self._lock:
            return self._state

    @property
    def iteration(self) -> int:
        with self._lock:
            return self._iteration

    def events(self) -> Iterator[LoopEvent]:
        """Iterate loop events until the run concludes and the channel closes."""
        return iter(self._events)

    def cancel(self) -> None:
        """Request cancellation; safe to call repeatedly and from any thread."""
        self._external_cancel.cancel()

    def start(self, cancel: CancelScope | None = None) -> LoopResult:
        """Run the loop to completion.

        ``cancel`` is an optional parent scope (for example one wired to
        SIGINT); cancelling it has the same effect as calling ``cancel()``.
        Raises ``LoopStateError`` when the engine has already been started.
        """
        with self._lock:
            if self._state is not LoopState.IDLE:
                raise LoopStateError("loop already running")
            self._state = LoopState.RUNNING
            self._start_time = time.monotonic()
            self._iteration = 0
            scope = CancelScope(self._config.timeout, parent=self._external_cancel)
        detach_parent = cancel.add_callback(scope.cancel) if cancel is not None else None

        LOGGER.info(
            "loop_start",
            extra={
                "model": self._config.model,
                "max_iterations": self._config.max_iterations,
                "timeout_seconds": self._config.timeout,
                "working_dir": self._config.working_dir,
            },
        )
        try:
            self._emit(LoopStart(self._config))
            result = self._initialize_backend(scope)
            if result is None:
                result = self._run_loop(scope)
            self._release_backend(result.state)
            return result
        finally:
            if detach_parent is not None:
                detach_parent()
            scope.close()
            self._close_events()

    def _initialize_backend(self, scope: CancelScope) -> LoopResult | None:
        if self._session is None:
            return None
        try:
            self._session.start()
            self._session.create_session(scope)
        except Exception as exc:
            error = BackendError(f"failed to start backend: {exc}")
            error.__cause__ = exc
            return self._fail(error)
        return None

    def _run_loop(self, scope: CancelScope) -> LoopResult:
        while True:
            result = self._pre_iteration_check(scope)
            if result is not None:
                return result
            try:
                self._execute_iteration(scope)
            except _Interrupted:
                continue
            except Exception as exc:
                if scope.cancelled:
                    continue
                error = LoopError(f"iteration {self.iteration} failed: {exc}")
                error.__cause__ = exc
                return self._fail(error)

    def _pre_iteration_check(self, scope: CancelScope) -> LoopResult | None:
        if scope.cancelled:
            if self._timed_out(scope):
                return self._fail(LoopTimeoutError())
            return self._cancelled()

        max_iterations = self._config.max_iterations
        if max_iterations > 0 and self.iteration >= max_iterations:
            return self._complete()
        return None

    def _timed_out(self, scope: CancelScope) -> bool:
        timeout = self._config.timeout
        if timeout <= 0:
            return False
        return scope.deadline_exceeded or self._elapsed() >= timeout

    def _execute_iteration(self, scope: CancelScope) -> None:
        with self._lock:
            self._iteration += 1
            iteration = self._iteration
        started = time.monotonic()
        self._emit(IterationStart(iteration, self._config.max_iterations))
        LOGGER.info("iteration_start", extra={"iteration": iteration})

        if self._session is not None:
            prompt = build_iteration_prompt(
                self._config.prompt, iteration, self._config.max_iterations
            )
            stream = self._session.send_prompt(scope, prompt)
            tool_started: dict[str, float] = {}
            while True:
                if scope.cancelled:
                    raise _Interrupted
                try:
                    event = stream.get(timeout=EVENT_POLL_SECONDS)
                except queue.Empty:
                    continue
                except ChannelClosed:
                    break
                self._handle_backend_event(event, iteration, tool_started)
            if scope.cancelled:
                raise _Interrupted

        duration = time.monotonic() - started
        self._emit(IterationComplete(iteration, duration))
        LOGGER.info(
            "iteration_complete",
            extra={"iteration": iteration, "duration_seconds": round(duration, 4)},
        )

    def _handle_backend_event(
        self, event: BackendEvent, iteration: int, tool_started: dict[str, float]
    ) -> None:
        if isinstance(event, TextEvent):
            self._emit(AIResponse(event.text, iteration))
            phrase = self._config.promise_phrase
            if not event.reasoning and detect_promise(event.text, phrase):
                LOGGER.info("promise_detected", extra={"iteration": iteration})
                self._emit(PromiseDetected(phrase, PROMISE_SOURCE_AI_RESPONSE, iteration))
        elif isinstance(event, ToolCallEvent):
            call = event.tool_call
            tool_started[_tool_key(call)] = event.timestamp
            self._emit(ToolExecutionStart(call.name, call.parameters, iteration))
        elif isinstance(event, ToolResultEvent):
            call = event.tool_call
            started_at = tool_started.pop(_tool_key(call), None)
            duration = 0.0 if started_at is None else max(0.0, event.timestamp - started_at)
            self._emit(
                ToolExecutionResult(
                    call.name,
                    call.parameters,
                    iteration,
                    result=event.result,
                    error=event.error,
                    duration=duration,
                )
            )
        elif isinstance(event, BackendErrorEvent):
            LOGGER.warning(
                "iteration_backend_error",
                extra={"iteration": iteration, "error": str(event.error)},
            )
            self._emit(ErrorOccurred(event.error, iteration, recoverable=True))

    def _complete(self) -> LoopResult:
        result = self._transition(LoopState.COMPLETE, None)
        self._emit(LoopComplete(result))
        return result

    def _fail(self, error: Exception) -> LoopResult:
        result = self._transition(LoopState.FAILED, error)
        self._emit(LoopFailed(error, result))
        return result

    def _cancelled(self) -> LoopResult:
        result = self._transition(LoopState.CANCELLED, LoopCancelledError())
        self._emit(LoopCancelled(result))
        return result

    def _transition(self, state: LoopState, error: Exception | None) -> LoopResult:
        with self._lock:
            self._state = state
            result = LoopResult(
                state=state,
                iterations=self._iteration,
                duration=time.monotonic() - self._start_time,
                error=error,
            )
        LOGGER.info(
            "loop_finished",
            extra={
                "state": state.value,
                "iterations": result.iterations,
                "duration_seconds": round(result.duration, 4),
                "error": str(error) if error else None,
            },
        )
        return result

    def _elapsed(self) -> float:
        with self._lock:
            return time.monotonic() - self._start_time

    def _emit(self, event: LoopEvent) -> None:
        with self._lock:
            closed = self._events_closed
        if closed:
            LOGGER.debug("late_event_dropped", extra={"event_type": type(event).__name__})
            return
        self._events.put(event)

    def _close_events(self) -> None:
        with self._lock:
            if self._events_closed:
                return
            self._events_closed = True
        self._events.close()

    def _release_backend(self, state: LoopState) -> None:
        session = self._session
        if session is None:
            return
        if state is LoopState.CANCELLED:
            # Best effort; the caller does not wait for this thread.
            threading.Thread(
                target=_shutdown_session,
                args=(session, CANCEL_CLEANUP_GRACE_SECONDS),
                name="ralph-cancel-cleanup",
                daemon=True,
            ).start()
            return
        _shutdown_session(session, CLEANUP_GRACE_SECONDS)


def _shutdown_session(session: PromptSession, grace: float) -> None:
    """Destroy the session and stop the client, waiting at most ``grace`` seconds."""

    def teardown() -> None:
        try:
            session.destroy_session()
        finally:
            session.stop()

    worker = threading.Thread(target=teardown, name="ralph-session-teardown", daemon=True)
    worker.start()
    worker.join(grace)
    if worker.is_alive():
        LOGGER.warning("backend_teardown_timeout", extra={"grace_seconds": grace})


def _tool_key(call: ToolCall) -> str:
    return call.id or call.name
