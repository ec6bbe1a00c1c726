"""Backend collaborator primitives consumed by the session adapter."""

from __future__ import annotations

import abc
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal

NOTIFICATION_MESSAGE_DELTA = "assistant.message_delta"
NOTIFICATION_REASONING_DELTA = "assistant.reasoning_delta"
NOTIFICATION_MESSAGE = "assistant.message"
NOTIFICATION_TOOL_START = "tool.execution_start"
NOTIFICATION_TOOL_COMPLETE = "tool.execution_complete"
NOTIFICATION_SESSION_ERROR = "session.error"
NOTIFICATION_SESSION_IDLE = "session.idle"

PermissionKind = Literal["read", "write", "shell", "url", "mcp", "custom-tool"]
SystemMessageMode = Literal["append", "replace"]


@dataclass(slots=True)
class Notification:
    """A raw, backend-native session notification."""

    type: str
    data: dict[str, object] = field(default_factory=dict)


@dataclass(slots=True)
class PermissionRequest:
    """A tool's request to touch the file system or run a command."""

    kind: PermissionKind
    tool_call_id: str = ""
    path: str | None = None
    file_name: str | None = None
    possible_paths: list[str] = field(default_factory=list)
    full_command_text: str | None = None


NotificationHandler = Callable[[Notification], None]
PermissionHandler = Callable[[PermissionRequest], bool]
Unsubscribe = Callable[[], None]


@dataclass(slots=True)
class SessionOptions:
    """Settings applied when the backend creates a session."""

    model: str
    working_dir: str
    permission_handler: PermissionHandler
    streaming: bool = True
    system_message: str | None = None
    system_message_mode: SystemMessageMode = "append"
    available_tools: list[str] | None = None
    excluded_tools: list[str] | None = None


class RemoteSession(abc.ABC):
    """A conversation held open by the backend."""

    @abc.abstractmethod
    def on(self, handler: NotificationHandler) -> Unsubscribe:
        """Subscribe to session notifications; return an unsubscribe callable."""

    @abc.abstractmethod
    def send(self, prompt: str) -> None:
        """Submit a prompt; progress arrives through subscribed handlers."""

    @abc.abstractmethod
    def abort(self) -> None:
        """Stop the in-flight exchange, if any."""

    @abc.abstractmethod
    def destroy(self) -> None:
        """Release the session."""


class BackendClient(abc.ABC):
    """Process-level connection to the assistant backend."""

    @abc.abstractmethod
    def start(self) -> None:
        """Start the client; calling it twice is harmless."""

    @abc.abstractmethod
    def stop(self) -> None:
        """Stop the client and release its resources."""

    @abc.abstractmethod
    def create_session(self, options: SessionOptions) -> RemoteSession:
        """Open a new session configured by ``options``."""
