"""Shell execution primitives shared by the assistant's command tool."""

from __future__ import annotations

import abc
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)

PolicyHook = Callable[[str, str], bool]

BLOCKED_RETURNCODE = 126
TIMEOUT_RETURNCODE = 124
DEFAULT_OUTPUT_LIMIT = 16000

_DESTRUCTIVE_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\brm\s+-(?:[a-z]*r[a-z]*f|[a-z]*f[a-z]*r)\b",
        r"\bmkfs(?:\.\w+)?\b",
        r"\bdd\s+[^|]*\bof=/dev/",
        r"\bgit\s+push\s+[^|]*--force\b",
        r"\bgit\s+reset\s+--hard\b",
        r"\bdrop\s+(?:table|database)\b",
        r":\(\)\s*\{\s*:\|:&\s*\};:",
    )
]

_SECRET_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"(--?(?:password|token|secret|api[-_]?key)\s+)([^\s]+)",
        r"((?:password|token|secret|api[-_]?key)\s*=\s*)([^\s]+)",
        r"(authorization:\s*bearer\s+)([^\s'\"]+)",
    )
]


@dataclass(slots=True)
class CommandResult:
    """Outcome of one command run on behalf of the assistant."""

    command: str
    shell: str
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False
    duration_seconds: float = 0.0
    executed: bool = True
    blocked: bool = False
    block_reason: str | None = None

    def render(self, *, limit: int = DEFAULT_OUTPUT_LIMIT) -> str:
        """Format the result as the text handed back to the model."""
        if self.blocked:
            return f"command not run: {self.block_reason}"
        parts = [f"exit code: {self.returncode}"]
        if self.timed_out:
            parts.append("command timed out")
        if self.stdout:
            parts.append(f"stdout:\n{_truncate(self.stdout, limit)}")
        if self.stderr:
            parts.append(f"stderr:\n{_truncate(self.stderr, limit)}")
        return "\n".join(parts)


class ShellAdapter(abc.ABC):
    """Runs assistant-issued commands behind policy checks."""

    def __init__(
        self,
        *,
        allowlist_hook: PolicyHook | None = None,
        denylist_hook: PolicyHook | None = None,
        block_destructive: bool = True,
    ) -> None:
        self.allowlist_hook = allowlist_hook
        self.denylist_hook = denylist_hook
        self.block_destructive = block_destructive

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Shell name reported in results and logs."""

    @abc.abstractmethod
    def execute(
        self,
        command: str,
        *,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run ``command`` and return a normalized result."""

    def check_policy(self, command: str) -> str | None:
        """Return the reason a command is refused, or ``None`` when it may run."""
        if not command.strip():
            return "empty command"
        if self.denylist_hook and self.denylist_hook(command, self.name):
            return "command blocked by denylist policy"
        if self.allowlist_hook and not self.allowlist_hook(command, self.name):
            return "command rejected by allowlist policy"
        if self.block_destructive and is_destructive_command(command):
            return "destructive commands are disabled for unattended runs"
        return None

    def blocked_result(self, command: str, reason: str) -> CommandResult:
        return CommandResult(
            command=command,
            shell=self.name,
            returncode=BLOCKED_RETURNCODE,
            stdout="",
            stderr=reason,
            executed=False,
            blocked=True,
            block_reason=reason,
        )

    def log_request(self, command: str, *, cwd: str | None, timeout: float | None) -> None:
        LOGGER.info(
            "command_request",
            extra={
                "shell": self.name,
                "command": sanitize_command(command),
                "cwd": cwd,
                "timeout": timeout,
            },
        )

    def log_result(self, result: CommandResult) -> None:
        LOGGER.info(
            "command_result",
            extra={
                "shell": result.shell,
                "returncode": result.returncode,
                "timed_out": result.timed_out,
                "duration_seconds": round(result.duration_seconds, 4),
                "executed": result.executed,
                "blocked": result.blocked,
                "stdout_length": len(result.stdout),
                "stderr_length": len(result.stderr),
            },
        )

    @staticmethod
    def monotonic_now() -> float:
        return time.monotonic()


def is_destructive_command(command: str) -> bool:
    """Return true when a command matches the destructive-command heuristics."""
    return any(pattern.search(command) for pattern in _DESTRUCTIVE_PATTERNS)


def sanitize_command(command: str) -> str:
    """Mask credentials before a command line reaches the logs."""
    sanitized = command
    for pattern in _SECRET_PATTERNS:
        sanitized = pattern.sub(r"\1***", sanitized)
    return sanitized


def _truncate(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    omitted = len(text) - limit
    return f"{text[:limit]}\n... [{omitted} characters truncated]"
