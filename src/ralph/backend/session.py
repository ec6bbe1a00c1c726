"""Session adapter turning one prompt into a normalized, retried event stream."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from ralph.backend.base import (
    NOTIFICATION_MESSAGE,
    NOTIFICATION_MESSAGE_DELTA,
    NOTIFICATION_REASONING_DELTA,
    NOTIFICATION_SESSION_ERROR,
    NOTIFICATION_SESSION_IDLE,
    NOTIFICATION_TOOL_COMPLETE,
    NOTIFICATION_TOOL_START,
    BackendClient,
    Notification,
    PermissionRequest,
    RemoteSession,
    SessionOptions,
    SystemMessageMode,
)
from ralph.backend.events import (
    BackendErrorEvent,
    BackendEvent,
    TextEvent,
    ToolCall,
    ToolCallEvent,
    ToolResultEvent,
)
from ralph.backend.sandbox import PathSandbox, extract_command_paths
from ralph.cancel import CancelScope
from ralph.channel import EventChannel
from ralph.core.models import DEFAULT_MODEL
from ralph.errors import BackendError, ToolExecutionError

LOGGER = logging.getLogger(__name__)

EVENT_BUFFER_SIZE = 100
RETRY_BACKOFFS: tuple[float, ...] = (1.0, 2.0, 5.0)

PATH_BEARING_KINDS = frozenset({"read", "write"})

_RETRYABLE_MARKERS = (
    "goaway",
    "connection reset",
    "connection refused",
    "connection terminated",
    "eof",
    "timeout",
    "timed out",
)


def is_retryable_error(error: BaseException | None) -> bool:
    """Return true for transient transport failures worth another attempt."""
    if error is None:
        return False
    message = str(error).lower()
    return any(marker in message for marker in _RETRYABLE_MARKERS)


class _AttemptCancelled(Exception):
    pass


@dataclass(slots=True)
class _AttemptState:
    saw_message_delta: bool = False
    pending_tools: dict[str, ToolCall] = field(default_factory=dict)
    error: Exception | None = None


class BackendSession:
    """Owns one backend session and runs prompt exchanges against it."""

    def __init__(
        self,
        client: BackendClient,
        *,
        model: str = DEFAULT_MODEL,
        working_dir: str = ".",
        allowed_directories: Sequence[str] | None = None,
        streaming: bool = True,
        system_message: str | None = None,
        system_message_mode: SystemMessageMode = "append",
        available_tools: list[str] | None = None,
        excluded_tools: list[str] | None = None,
        retry_backoffs: Sequence[float] = RETRY_BACKOFFS,
    ) -> None:
        if not model:
            raise ValueError("model cannot be empty")
        self.client = client
        self.model = model
        self.working_dir = working_dir
        self.streaming = streaming
        self.system_message = system_message
        self.system_message_mode = system_message_mode
        self.available_tools = available_tools
        self.excluded_tools = excluded_tools
        self.retry_backoffs = tuple(retry_backoffs)
        self.sandbox = PathSandbox(allowed_directories, working_dir)
        self._lock = threading.Lock()
        self._remote: RemoteSession | None = None
        self._started = False

    @property
    def allowed_directories(self) -> tuple[str, ...]:
        return self.sandbox.allowed_directories

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            try:
                self.client.start()
            except Exception as exc:
                raise BackendError(f"failed to start client: {exc}") from exc
            self._started = True
        LOGGER.info("backend_client_started", extra={"model": self.model})

    def create_session(self, cancel: CancelScope | None = None) -> None:
        if cancel is not None and cancel.cancelled:
            raise BackendError("session creation cancelled")
        with self._lock:
            if not self._started:
                raise BackendError("backend client not started")
            options = SessionOptions(
                model=self.model,
                working_dir=self.sandbox.working_dir,
                permission_handler=self.check_permission,
                streaming=self.streaming,
                system_message=self.system_message,
                system_message_mode=self.system_message_mode,
                available_tools=self.available_tools,
                excluded_tools=self.excluded_tools,
            )
            try:
                self._remote = self.client.create_session(options)
            except Exception as exc:
                raise BackendError(f"failed to create session: {exc}") from exc
        LOGGER.info(
            "backend_session_created",
            extra={
                "model": self.model,
                "allowed_directories": list(self.allowed_directories),
            },
        )

    def destroy_session(self) -> None:
        with self._lock:
            remote, self._remote = self._remote, None
        if remote is None:
            return
        try:
            remote.destroy()
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("backend_session_destroy_failed", extra={"error": str(exc)})

    def stop(self) -> None:
        self.destroy_session()
        with self._lock:
            if not self._started:
                return
            self._started = False
        try:
            self.client.stop()
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("backend_client_stop_failed", extra={"error": str(exc)})

    def send_prompt(self, cancel: CancelScope, prompt: str) -> EventChannel[BackendEvent]:
        """Run one prompt exchange in the background and return its event stream.

        The stream closes when the exchange finishes, fails terminally, or
        ``cancel`` fires. Cancellation never produces an error event.
        """
        with self._lock:
            remote = self._remote
        if remote is None:
            raise BackendError("no active session")

        events: EventChannel[BackendEvent] = EventChannel(EVENT_BUFFER_SIZE)
        worker = threading.Thread(
            target=self._produce,
            args=(remote, cancel, prompt, events),
            name="ralph-backend-send",
            daemon=True,
        )
        worker.start()
        return events

    def check_permission(self, request: PermissionRequest) -> bool:
        """Approve a tool request only when every path it touches is sandboxed."""
        paths = self._request_paths(request)
        if not paths:
            if request.kind in PATH_BEARING_KINDS:
                LOGGER.warning(
                    "permission_denied",
                    extra={"kind": request.kind, "reason": "no path in request"},
                )
                return False
            return True

        outside = [path for path in paths if not self.sandbox.is_allowed(path)]
        if outside:
            LOGGER.warning(
                "permission_denied",
                extra={
                    "kind": request.kind,
                    "paths": outside,
                    "allowed_directories": list(self.allowed_directories),
                },
            )
            return False
        LOGGER.debug("permission_granted", extra={"kind": request.kind, "paths": paths})
        return True

    @staticmethod
    def _request_paths(request: PermissionRequest) -> list[str]:
        candidates: list[str] = []
        if request.kind == "shell":
            candidates.extend(request.possible_paths)
            candidates.extend(extract_command_paths(request.full_command_text or ""))
        else:
            candidates.extend(p for p in (request.path, request.file_name) if p)
        unique: list[str] = []
        for path in candidates:
            if path and path not in unique:
                unique.append(path)
        return unique

    def _produce(
        self,
        remote: RemoteSession,
        cancel: CancelScope,
        prompt: str,
        events: EventChannel[BackendEvent],
    ) -> None:
        try:
            self._send_with_retry(remote, cancel, prompt, events)
        finally:
            events.close(cancel=cancel)

    def _send_with_retry(
        self,
        remote: RemoteSession,
        cancel: CancelScope,
        prompt: str,
        events: EventChannel[BackendEvent],
    ) -> None:
        last_error: Exception | None = None
        for attempt in range(len(self.retry_backoffs) + 1):
            if cancel.cancelled:
                return
            if attempt > 0:
                delay = self.retry_backoffs[attempt - 1]
                LOGGER.info(
                    "backend_retry_scheduled",
                    extra={"attempt": attempt + 1, "delay_seconds": delay},
                )
                if cancel.wait(delay):
                    return

            try:
                self._send_once(remote, cancel, prompt, events)
                return
            except _AttemptCancelled:
                return
            except Exception as exc:
                if cancel.cancelled:
                    return
                if not is_retryable_error(exc):
                    LOGGER.error("backend_request_failed", extra={"error": str(exc)})
                    events.put(BackendErrorEvent(exc), cancel=cancel)
                    return
                LOGGER.warning(
                    "backend_transient_error",
                    extra={"attempt": attempt + 1, "error": str(exc)},
                )
                last_error = exc

        LOGGER.error("backend_retries_exhausted", extra={"error": str(last_error)})
        error = BackendError(f"max retries exceeded: {last_error}")
        error.__cause__ = last_error
        events.put(BackendErrorEvent(error), cancel=cancel)

    def _send_once(
        self,
        remote: RemoteSession,
        cancel: CancelScope,
        prompt: str,
        events: EventChannel[BackendEvent],
    ) -> None:
        done = threading.Event()
        state = _AttemptState()
        state_lock = threading.Lock()

        def emit(event: BackendEvent) -> None:
            events.put(event, cancel=cancel)

        def handle(notification: Notification) -> None:
            if cancel.cancelled:
                done.set()
                return
            with state_lock:
                if done.is_set():
                    return
                self._translate(notification, state, emit, done)

        unsubscribe = remote.on(handle)
        remove_cancel_hook = cancel.add_callback(done.set)
        try:
            remote.send(prompt)
            done.wait()
        finally:
            remove_cancel_hook()
            unsubscribe()

        if cancel.cancelled:
            threading.Thread(
                target=_abort_quietly,
                args=(remote,),
                name="ralph-backend-abort",
                daemon=True,
            ).start()
            raise _AttemptCancelled
        if state.error is not None:
            raise state.error

    @staticmethod
    def _translate(
        notification: Notification,
        state: _AttemptState,
        emit: Callable[[BackendEvent], None],
        done: threading.Event,
    ) -> None:
        data = notification.data
        kind = notification.type

        if kind in {NOTIFICATION_MESSAGE_DELTA, NOTIFICATION_REASONING_DELTA}:
            delta = data.get("delta_content")
            if not isinstance(delta, str) or not delta:
                return
            reasoning = kind == NOTIFICATION_REASONING_DELTA
            if not reasoning:
                state.saw_message_delta = True
            emit(TextEvent(delta, reasoning=reasoning))
            return

        if kind == NOTIFICATION_MESSAGE:
            content = data.get("content")
            if isinstance(content, str) and content and not state.saw_message_delta:
                emit(TextEvent(content))
            return

        if kind == NOTIFICATION_TOOL_START:
            tool_name = data.get("tool_name")
            if not isinstance(tool_name, str) or not tool_name:
                return
            call_id = str(data.get("tool_call_id") or "")
            arguments = data.get("arguments")
            tool_call = ToolCall(
                id=call_id,
                name=tool_name,
                parameters=dict(arguments) if isinstance(arguments, dict) else {},
            )
            if call_id:
                state.pending_tools[call_id] = tool_call
            emit(ToolCallEvent(tool_call))
            return

        if kind == NOTIFICATION_TOOL_COMPLETE:
            call_id = str(data.get("tool_call_id") or "")
            tool_call = state.pending_tools.pop(call_id, None) if call_id else None
            if tool_call is None:
                tool_call = ToolCall(id=call_id, name=str(data.get("tool_name") or ""))
            elif not tool_call.name and isinstance(data.get("tool_name"), str):
                tool_call.name = str(data["tool_name"])
            emit(
                ToolResultEvent(
                    tool_call,
                    result=_result_text(data.get("result")),
                    error=_tool_error(data),
                )
            )
            return

        if kind == NOTIFICATION_SESSION_ERROR:
            message = data.get("message") or "unknown error"
            state.error = BackendError(f"backend error: {message}")
            done.set()
            return

        if kind == NOTIFICATION_SESSION_IDLE:
            done.set()


def _result_text(result: object) -> str:
    if isinstance(result, dict):
        content = result.get("content")
        return content if isinstance(content, str) else ""
    if isinstance(result, str):
        return result
    return ""


def _tool_error(data: dict[str, object]) -> Exception | None:
    if data.get("success") is not False:
        return None
    error = data.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        return ToolExecutionError(str(message or "tool execution failed"))
    if isinstance(error, str) and error:
        return ToolExecutionError(error)
    return ToolExecutionError("tool execution failed")


def _abort_quietly(remote: RemoteSession) -> None:
    try:
        remote.abort()
    except Exception as exc:  # noqa: BLE001
        LOGGER.debug("backend_abort_failed", extra={"error": str(exc)})
