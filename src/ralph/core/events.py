"""Loop events emitted by the engine for a display consumer."""

from __future__ import annotations

from dataclasses import dataclass

from ralph.core.models import LoopConfig, LoopResult

PROMISE_SOURCE_AI_RESPONSE = "ai_response"


@dataclass(slots=True)
class LoopStart:
    config: LoopConfig


@dataclass(slots=True)
class IterationStart:
    iteration: int
    max_iterations: int


@dataclass(slots=True)
class IterationComplete:
    iteration: int
    duration: float


@dataclass(slots=True)
class AIResponse:
    text: str
    iteration: int


@dataclass(slots=True)
class _ToolEvent:
    tool_name: str
    parameters: dict[str, object]
    iteration: int

    def info(self, prefix: str) -> str:
        """One-line description of the tool and its parameter values."""
        if not self.parameters:
            return f"{prefix} {self.tool_name}"
        values = ", ".join(str(value) for value in self.parameters.values())
        return f"{prefix} {self.tool_name}: {values}"


@dataclass(slots=True)
class ToolExecutionStart(_ToolEvent):
    pass


@dataclass(slots=True)
class ToolExecutionResult(_ToolEvent):
    result: str = ""
    error: Exception | None = None
    duration: float = 0.0


@dataclass(slots=True)
class PromiseDetected:
    phrase: str
    source: str
    iteration: int


@dataclass(slots=True)
class ErrorOccurred:
    error: Exception
    iteration: int
    recoverable: bool


@dataclass(slots=True)
class LoopComplete:
    result: LoopResult


@dataclass(slots=True)
class LoopFailed:
    error: Exception
    result: LoopResult


@dataclass(slots=True)
class LoopCancelled:
    result: LoopResult


TERMINAL_EVENTS = (LoopComplete, LoopFailed, LoopCancelled)

LoopEvent = (
    LoopStart
    | IterationStart
    | IterationComplete
    | AIResponse
    | ToolExecutionStart
    | ToolExecutionResult
    | PromiseDetected
    | ErrorOccurred
    | LoopComplete
    | LoopFailed
    | LoopCancelled
)

__all__ = [
    "AIResponse",
    "ErrorOccurred",
    "IterationComplete",
    "IterationStart",
    "LoopCancelled",
    "LoopComplete",
    "LoopEvent",
    "LoopFailed",
    "LoopStart",
    "PROMISE_SOURCE_AI_RESPONSE",
    "PromiseDetected",
    "TERMINAL_EVENTS",
    "ToolExecutionResult",
    "ToolExecutionStart",
]

