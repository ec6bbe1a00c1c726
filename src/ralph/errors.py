"""Error identities shared by the loop engine, backend adapter, and CLI."""

from __future__ import annotations


class RalphError(Exception):
    """Base class for all ralph errors."""


class ConfigError(RalphError):
    """Invalid configuration or command-line input."""


class LoopError(RalphError):
    """A loop run ended in failure."""


class LoopCancelledError(LoopError):
    """The loop was cancelled by the operator."""

    def __init__(self, message: str = "loop cancelled") -> None:
        super().__init__(message)


class LoopTimeoutError(LoopError):
    """The loop exceeded its configured wall-clock timeout."""

    def __init__(self, message: str = "loop timeout exceeded") -> None:
        super().__init__(message)


class MaxIterationsError(LoopError):
    """The loop exhausted its iteration budget without finishing."""

    def __init__(self, message: str = "maximum iterations reached") -> None:
        super().__init__(message)


class LoopStateError(RalphError):
    """The engine was asked to do something its current state forbids."""


class BackendError(RalphError):
    """Backend lifecycle or non-retryable transport failure."""


class ToolExecutionError(RalphError):
    """A tool run by the backend reported failure."""
