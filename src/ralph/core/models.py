"""Configuration, state, and result types for a loop run."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

DEFAULT_MAX_ITERATIONS = 10
DEFAULT_TIMEOUT_SECONDS = 30 * 60.0
DEFAULT_PROMISE_PHRASE = "I'm special!"
DEFAULT_MODEL = "gpt-4"


class LoopState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {LoopState.COMPLETE, LoopState.FAILED, LoopState.CANCELLED}

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True, slots=True)
class LoopConfig:
    """Settings for one loop run; validated by the caller before ``start``."""

    prompt: str
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    promise_phrase: str = DEFAULT_PROMISE_PHRASE
    model: str = DEFAULT_MODEL
    working_dir: str = "."
    dry_run: bool = False

    @classmethod
    def default(cls) -> LoopConfig:
        return cls(prompt="")


@dataclass(slots=True)
class LoopResult:
    """Outcome of a run, produced once on the terminal transition."""

    state: LoopState
    iterations: int
    duration: float
    error: Exception | None = None
