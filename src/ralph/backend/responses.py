"""HTTP backend speaking the OpenAI Responses API with local tool execution."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from urllib import request
from urllib.error import HTTPError, URLError

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
    NotificationHandler,
    RemoteSession,
    SessionOptions,
    Unsubscribe,
)
from ralph.backend.tools import DEFAULT_COMMAND_TIMEOUT, ToolOutcome, Toolbox
from ralph.errors import BackendError
from ralph.shell import ShellAdapter

LOGGER = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.openai.com/v1/responses"
DEFAULT_REQUEST_TIMEOUT = 60.0
MAX_TOOL_ROUNDS = 50

BASE_INSTRUCTIONS = " ".join(
    [
        "You are a coding assistant working inside a local project directory.",
        "Use the provided tools to inspect and change files and to run commands.",
        "Stay inside the allowed directories; requests outside them are denied.",
        "Keep answers short and report what you changed.",
    ]
)


class _Aborted(Exception):
    pass


class _StreamError(Exception):
    pass


@dataclass(slots=True)
class _Turn:
    """Everything one request/response round produced."""

    response_id: str | None = None
    message: str = ""
    calls: list[dict[str, object]] = field(default_factory=list)


def compose_instructions(options: SessionOptions) -> str:
    """Combine the built-in instructions with the session's system message."""
    message = (options.system_message or "").strip()
    if not message:
        return BASE_INSTRUCTIONS
    if options.system_message_mode == "replace":
        return message
    return f"{BASE_INSTRUCTIONS}\n\n{message}"


class ResponsesClient(BackendClient):
    """Creates sessions against a Responses-compatible endpoint."""

    def __init__(
        self,
        *,
        api_key: str | None,
        api_url: str = DEFAULT_API_URL,
        reasoning_effort: str | None = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        shell: ShellAdapter | None = None,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> None:
        self.api_key = api_key
        self.api_url = api_url
        self.reasoning_effort = reasoning_effort
        self.request_timeout = request_timeout
        self.shell = shell
        self.command_timeout = command_timeout
        self._lock = threading.Lock()
        self._started = False
        self._sessions: list[ResponsesSession] = []

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            if not self.api_key:
                raise BackendError("no API key configured (set RALPH_API_KEY)")
            self._started = True
        LOGGER.debug("responses_client_started", extra={"api_url": self.api_url})

    def stop(self) -> None:
        with self._lock:
            sessions, self._sessions = self._sessions, []
            self._started = False
        for session in sessions:
            session.destroy()

    def create_session(self, options: SessionOptions) -> ResponsesSession:
        with self._lock:
            if not self._started:
                raise BackendError("client not started")
            toolbox = Toolbox(
                options.working_dir,
                shell=self.shell,
                available_tools=options.available_tools,
                excluded_tools=options.excluded_tools,
                command_timeout=self.command_timeout,
            )
            session = ResponsesSession(self, options, toolbox)
            self._sessions.append(session)
        LOGGER.debug(
            "responses_session_created",
            extra={"model": options.model, "tools": toolbox.names},
        )
        return session


class ResponsesSession(RemoteSession):
    """One conversation; each ``send`` runs on its own worker thread."""

    def __init__(self, client: ResponsesClient, options: SessionOptions, toolbox: Toolbox) -> None:
        self.client = client
        self.options = options
        self.toolbox = toolbox
        self.instructions = compose_instructions(options)
        self._lock = threading.Lock()
        self._handlers: list[NotificationHandler] = []
        self._previous_response_id: str | None = None
        self._abort = threading.Event()
        self._active_response: object | None = None
        self._destroyed = False

    def on(self, handler: NotificationHandler) -> Unsubscribe:
        with self._lock:
            self._handlers.append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return unsubscribe

    def send(self, prompt: str) -> None:
        with self._lock:
            if self._destroyed:
                raise BackendError("session destroyed")
            self._abort = threading.Event()
            abort = self._abort
        worker = threading.Thread(
            target=self._run,
            args=(prompt, abort),
            name="ralph-responses-worker",
            daemon=True,
        )
        worker.start()

    def abort(self) -> None:
        with self._lock:
            self._abort.set()
            response = self._active_response
        close = getattr(response, "close", None)
        if callable(close):
            try:
                close()
            except OSError:
                pass

    def destroy(self) -> None:
        self.abort()
        with self._lock:
            self._destroyed = True
            self._handlers.clear()

    def _dispatch(self, kind: str, **data: object) -> None:
        with self._lock:
            handlers = list(self._handlers)
        notification = Notification(kind, dict(data))
        for handler in handlers:
            handler(notification)

    def _run(self, prompt: str, abort: threading.Event) -> None:
        input_items: list[dict[str, object]] = [{"role": "user", "content": prompt}]
        try:
            for _ in range(MAX_TOOL_ROUNDS):
                turn = self._request(input_items, abort)
                self._previous_response_id = turn.response_id or self._previous_response_id
                if turn.message:
                    self._dispatch(NOTIFICATION_MESSAGE, content=turn.message)
                if not turn.calls:
                    self._dispatch(NOTIFICATION_SESSION_IDLE)
                    return
                input_items = []
                for call in turn.calls:
                    if abort.is_set():
                        raise _Aborted
                    input_items.append(self._run_tool(call))
            self._dispatch(
                NOTIFICATION_SESSION_ERROR,
                message=f"exceeded {MAX_TOOL_ROUNDS} tool rounds in one exchange",
            )
        except _Aborted:
            LOGGER.debug("responses_exchange_aborted")
        except _StreamError as exc:
            self._dispatch(NOTIFICATION_SESSION_ERROR, message=str(exc))
        except Exception as exc:
            if abort.is_set():
                # A response closed by abort() can fail mid-read in arbitrary ways.
                LOGGER.debug("responses_exchange_aborted", extra={"error": str(exc)})
                return
            LOGGER.exception("responses_worker_failed")
            self._dispatch(NOTIFICATION_SESSION_ERROR, message=f"internal error: {exc}")

    def _run_tool(self, call: dict[str, object]) -> dict[str, object]:
        name = str(call.get("name") or "")
        call_id = str(call.get("call_id") or call.get("id") or "")
        arguments = _parse_arguments(call.get("arguments"))
        self._dispatch(
            NOTIFICATION_TOOL_START,
            tool_name=name,
            tool_call_id=call_id,
            arguments=arguments,
        )

        permission = self.toolbox.permission_request(name, call_id, arguments)
        if permission is not None and not self.options.permission_handler(permission):
            outcome = ToolOutcome(
                "",
                success=False,
                error="permission denied: path is outside the allowed directories",
            )
        else:
            outcome = self.toolbox.run(name, arguments)

        completion: dict[str, object] = {
            "tool_name": name,
            "tool_call_id": call_id,
            "success": outcome.success,
            "result": {"content": outcome.output},
        }
        if outcome.error:
            completion["error"] = {"message": outcome.error}
        self._dispatch(NOTIFICATION_TOOL_COMPLETE, **completion)

        output = outcome.output
        if outcome.error:
            output = f"{output}\nerror: {outcome.error}" if output else f"error: {outcome.error}"
        return {"type": "function_call_output", "call_id": call_id, "output": output}

    def _build_payload(self, input_items: list[dict[str, object]]) -> dict[str, object]:
        payload: dict[str, object] = {
            "model": self.options.model,
            "instructions": self.instructions,
            "input": input_items,
            "stream": self.options.streaming,
        }
        tools = self.toolbox.definitions()
        if tools:
            payload["tools"] = tools
        if self._previous_response_id:
            payload["previous_response_id"] = self._previous_response_id
        if self.client.reasoning_effort:
            payload["reasoning"] = {"effort": self.client.reasoning_effort, "summary": "auto"}
        return payload

    def _request(self, input_items: list[dict[str, object]], abort: threading.Event) -> _Turn:
        payload = self._build_payload(input_items)
        body = json.dumps(payload).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.client.api_key:
            headers["Authorization"] = f"Bearer {self.client.api_key}"
        if self.options.streaming:
            headers["Accept"] = "text/event-stream"

        LOGGER.debug(
            "responses_request_prepared",
            extra={
                "api_url": self.client.api_url,
                "model": self.options.model,
                "payload_bytes": len(body),
                "input_items": len(input_items),
                "streaming": self.options.streaming,
            },
        )

        req = request.Request(self.client.api_url, data=body, headers=headers, method="POST")
        try:
            with request.urlopen(req, timeout=self.client.request_timeout) as resp:  # noqa: S310
                with self._lock:
                    self._active_response = resp
                try:
                    if self.options.streaming:
                        return self._consume_stream(resp, abort)
                    return _turn_from_response(_coerce_object_dict(json.loads(resp.read())))
                finally:
                    with self._lock:
                        self._active_response = None
        except HTTPError as exc:
            excerpt = _read_error_body_excerpt(exc)
            LOGGER.error(
                "responses_http_error",
                extra={
                    "api_url": self.client.api_url,
                    "http_status": exc.code,
                    "reason": exc.reason,
                    "response_excerpt": excerpt,
                },
            )
            details = f"request failed with HTTP {exc.code}: {exc.reason}"
            if excerpt:
                details = f"{details}. Response body: {excerpt}"
            raise _StreamError(details) from exc
        except URLError as exc:
            LOGGER.error(
                "responses_transport_error",
                extra={"api_url": self.client.api_url, "reason": str(exc.reason)},
            )
            raise _StreamError(f"transport error: {exc.reason}") from exc
        except TimeoutError as exc:
            LOGGER.error(
                "responses_timeout",
                extra={"timeout_seconds": self.client.request_timeout},
            )
            raise _StreamError(
                f"request timed out after {self.client.request_timeout:.1f}s"
            ) from exc
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            LOGGER.error("responses_parse_error", extra={"error": str(exc)})
            raise _StreamError(f"response parsing error: {exc}") from exc
        except ValueError as exc:
            if abort.is_set():
                raise _Aborted from exc
            raise _StreamError(f"stream read error: {exc}") from exc
        except OSError as exc:
            if abort.is_set():
                raise _Aborted from exc
            LOGGER.error("responses_connection_error", extra={"error": str(exc)})
            raise _StreamError(f"connection error: {exc}") from exc

    def _consume_stream(self, lines: Iterable[bytes], abort: threading.Event) -> _Turn:
        turn = _Turn()
        streamed_text = False
        for event_type, data in iter_sse_events(lines):
            if abort.is_set():
                raise _Aborted
            if event_type == "response.output_text.delta":
                delta = data.get("delta")
                if isinstance(delta, str) and delta:
                    streamed_text = True
                    self._dispatch(NOTIFICATION_MESSAGE_DELTA, delta_content=delta)
            elif event_type == "response.reasoning_summary_text.delta":
                delta = data.get("delta")
                if isinstance(delta, str) and delta:
                    self._dispatch(NOTIFICATION_REASONING_DELTA, delta_content=delta)
            elif event_type == "response.completed":
                turn = _turn_from_response(_coerce_object_dict(data.get("response")))
            elif event_type in {"response.failed", "error"}:
                raise _StreamError(_stream_error_message(data))
        if abort.is_set():
            raise _Aborted
        if not streamed_text and not turn.message and not turn.calls and turn.response_id is None:
            raise _StreamError("stream ended before the response completed (unexpected EOF)")
        return turn


def iter_sse_events(lines: Iterable[bytes | str]) -> Iterator[tuple[str, dict[str, object]]]:
    """Yield ``(event_type, data)`` pairs from a server-sent event stream."""
    event_name: str | None = None
    data_lines: list[str] = []
    for raw in lines:
        line = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        line = line.rstrip("\r\n")
        if not line:
            if data_lines:
                yield _sse_event(event_name, data_lines)
            event_name, data_lines = None, []
            continue
        if line.startswith(":"):
            continue
        key, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if key == "event":
            event_name = value
        elif key == "data":
            data_lines.append(value)
    if data_lines:
        yield _sse_event(event_name, data_lines)


def _sse_event(event_name: str | None, data_lines: list[str]) -> tuple[str, dict[str, object]]:
    raw = "\n".join(data_lines)
    if raw == "[DONE]":
        return "done", {}
    data = _coerce_object_dict(json.loads(raw)) or {}
    event_type = data.get("type")
    if isinstance(event_type, str) and event_type:
        return event_type, data
    return event_name or "message", data


def _turn_from_response(response: dict[str, object] | None) -> _Turn:
    if response is None:
        raise _StreamError("response parsing error: expected top-level object")
    turn = _Turn(response_id=_optional_string(response.get("id")))
    output = response.get("output")
    if not isinstance(output, list):
        return turn
    texts: list[str] = []
    for item in output:
        item_object = _coerce_object_dict(item)
        if item_object is None:
            continue
        item_type = item_object.get("type")
        if item_type == "function_call":
            turn.calls.append(item_object)
            continue
        if item_type != "message":
            continue
        content_items = item_object.get("content")
        if not isinstance(content_items, list):
            continue
        for content in content_items:
            content_object = _coerce_object_dict(content)
            if content_object is None:
                continue
            text = content_object.get("text")
            if content_object.get("type") == "output_text" and isinstance(text, str):
                texts.append(text)
    turn.message = "".join(texts)
    return turn


def _stream_error_message(data: dict[str, object]) -> str:
    response = _coerce_object_dict(data.get("response"))
    error = _coerce_object_dict((response or data).get("error"))
    if error is not None and isinstance(error.get("message"), str):
        return str(error["message"])
    message = data.get("message")
    return message if isinstance(message, str) and message else "response failed"


def _parse_arguments(raw: object) -> dict[str, object]:
    if isinstance(raw, dict):
        return {str(key): value for key, value in raw.items()}
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return _coerce_object_dict(parsed) or {}


def _coerce_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    return {str(key): raw_value for key, raw_value in value.items()}


def _optional_string(value: object) -> str | None:
    return value if isinstance(value, str) and value else None


def _read_error_body_excerpt(exc: HTTPError, *, max_chars: int = 500) -> str | None:
    if exc.fp is None:
        return None
    try:
        raw = exc.read()
    except OSError:
        return None

    if not raw:
        return None

    excerpt = raw.decode("utf-8", errors="replace").replace("\n", " ").strip()
    if len(excerpt) > max_chars:
        return f"{excerpt[:max_chars]}..."
    return excerpt
