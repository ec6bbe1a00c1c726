"""Normalized events produced by the backend session adapter."""

from __future__ import annotations

import time
from dataclasses import dataclass, field


@dataclass(slots=True)
class ToolCall:
    """A tool invocation requested by the assistant."""

    id: str
    name: str
    parameters: dict[str, object] = field(default_factory=dict)


@dataclass(slots=True)
class TextEvent:
    text: str
    reasoning: bool = False
    timestamp: float = field(default_factory=time.time)


@dataclass(slots=True)
class ToolCallEvent:
    tool_call: ToolCall
    timestamp: float = field(default_factory=time.time)


@dataclass(slots=True)
class ToolResultEvent:
    tool_call: ToolCall
    result: str = ""
    error: Exception | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass(slots=True)
class BackendErrorEvent:
    error: Exception
    timestamp: float = field(default_factory=time.time)

    def __str__(self) -> str:
        return str(self.error)


BackendEvent = TextEvent | ToolCallEvent | ToolResultEvent | BackendErrorEvent
