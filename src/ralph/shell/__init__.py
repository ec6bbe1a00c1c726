"""Shell adapters used by the assistant's command tool."""

from .base import CommandResult, ShellAdapter, is_destructive_command, sanitize_command
from .bash_adapter import BashAdapter


def create_shell_adapter(shell_name: str, *, block_destructive: bool = True) -> ShellAdapter:
    normalized = shell_name.strip().lower()
    if normalized in {"bash", "sh", "shell"}:
        return BashAdapter(
            executable="sh" if normalized == "sh" else None,
            block_destructive=block_destructive,
        )
    msg = f"Unsupported shell adapter: {shell_name}"
    raise ValueError(msg)


__all__ = [
    "BashAdapter",
    "CommandResult",
    "ShellAdapter",
    "create_shell_adapter",
    "is_destructive_command",
    "sanitize_command",
]
