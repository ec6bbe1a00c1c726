"""Local tools the assistant may call during an exchange."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from ralph.backend.base import PermissionRequest
from ralph.shell import ShellAdapter, create_shell_adapter
from ralph.shell.base import DEFAULT_OUTPUT_LIMIT

LOGGER = logging.getLogger(__name__)

TOOL_READ_FILE = "read_file"
TOOL_WRITE_FILE = "write_file"
TOOL_LIST_DIRECTORY = "list_directory"
TOOL_SHELL = "shell"

DEFAULT_COMMAND_TIMEOUT = 120.0


@dataclass(slots=True)
class ToolOutcome:
    """What a tool call produced, as reported back to the model."""

    output: str
    success: bool = True
    error: str | None = None


@dataclass(slots=True)
class ToolSpec:
    name: str
    description: str
    parameters: dict[str, object]
    permission_kind: str

    def definition(self) -> dict[str, object]:
        """Function-tool definition in the Responses API shape."""
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


def _object_schema(properties: dict[str, object], required: list[str]) -> dict[str, object]:
    return {
        "type": "object",
        "properties": properties,
        "required": required,
        "additionalProperties": False,
    }


_PATH_PROPERTY = {"type": "string", "description": "File system path, absolute or relative."}

TOOL_SPECS: tuple[ToolSpec, ...] = (
    ToolSpec(
        name=TOOL_READ_FILE,
        description="Read a UTF-8 text file and return its contents.",
        parameters=_object_schema({"path": _PATH_PROPERTY}, ["path"]),
        permission_kind="read",
    ),
    ToolSpec(
        name=TOOL_WRITE_FILE,
        description="Create or overwrite a text file with the given content.",
        parameters=_object_schema(
            {"path": _PATH_PROPERTY, "content": {"type": "string"}},
            ["path", "content"],
        ),
        permission_kind="write",
    ),
    ToolSpec(
        name=TOOL_LIST_DIRECTORY,
        description="List the entries of a directory; subdirectories end with '/'.",
        parameters=_object_schema({"path": _PATH_PROPERTY}, ["path"]),
        permission_kind="read",
    ),
    ToolSpec(
        name=TOOL_SHELL,
        description="Run a shell command in the working directory and return its output.",
        parameters=_object_schema(
            {"command": {"type": "string", "description": "Command line to run."}},
            ["command"],
        ),
        permission_kind="shell",
    ),
)


def select_tools(
    available: Iterable[str] | None = None,
    excluded: Iterable[str] | None = None,
) -> list[ToolSpec]:
    """Apply the allow list first, then the exclusion list."""
    allowed = set(available) if available else None
    blocked = set(excluded or ())
    return [
        spec
        for spec in TOOL_SPECS
        if (allowed is None or spec.name in allowed) and spec.name not in blocked
    ]


class Toolbox:
    """Executes the enabled tools relative to one working directory."""

    def __init__(
        self,
        working_dir: str = ".",
        *,
        shell: ShellAdapter | None = None,
        available_tools: list[str] | None = None,
        excluded_tools: list[str] | None = None,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        output_limit: int = DEFAULT_OUTPUT_LIMIT,
    ) -> None:
        self.working_dir = os.path.abspath(working_dir)
        self.shell = shell or create_shell_adapter("bash")
        self.command_timeout = command_timeout
        self.output_limit = output_limit
        self._specs = {spec.name: spec for spec in select_tools(available_tools, excluded_tools)}
        self._handlers: dict[str, Callable[[dict[str, object]], ToolOutcome]] = {
            TOOL_READ_FILE: self._read_file,
            TOOL_WRITE_FILE: self._write_file,
            TOOL_LIST_DIRECTORY: self._list_directory,
            TOOL_SHELL: self._run_shell,
        }

    @property
    def names(self) -> list[str]:
        return list(self._specs)

    def definitions(self) -> list[dict[str, object]]:
        return [spec.definition() for spec in self._specs.values()]

    def permission_request(
        self, name: str, call_id: str, arguments: dict[str, object]
    ) -> PermissionRequest | None:
        """Describe what a call would touch; ``None`` for unknown tools."""
        spec = self._specs.get(name)
        if spec is None:
            return None
        if spec.permission_kind == "shell":
            return PermissionRequest(
                kind="shell",
                tool_call_id=call_id,
                full_command_text=_string_arg(arguments, "command"),
            )
        path = _string_arg(arguments, "path") or None
        if spec.permission_kind == "write":
            return PermissionRequest(kind="write", tool_call_id=call_id, file_name=path)
        return PermissionRequest(kind="read", tool_call_id=call_id, path=path)

    def run(self, name: str, arguments: dict[str, object]) -> ToolOutcome:
        if name not in self._specs:
            return ToolOutcome("", success=False, error=f"unknown tool: {name}")
        try:
            return self._handlers[name](arguments)
        except OSError as exc:
            LOGGER.warning("tool_failed", extra={"tool": name, "error": str(exc)})
            return ToolOutcome("", success=False, error=str(exc))

    def _resolve(self, arguments: dict[str, object]) -> str:
        path = _string_arg(arguments, "path")
        if not path:
            raise OSError("path is required")
        expanded = os.path.expanduser(path)
        if not os.path.isabs(expanded):
            expanded = os.path.join(self.working_dir, expanded)
        return os.path.normpath(expanded)

    def _read_file(self, arguments: dict[str, object]) -> ToolOutcome:
        path = self._resolve(arguments)
        with open(path, encoding="utf-8", errors="replace") as fh:
            content = fh.read()
        if self.output_limit > 0 and len(content) > self.output_limit:
            omitted = len(content) - self.output_limit
            content = f"{content[: self.output_limit]}\n... [{omitted} characters truncated]"
        return ToolOutcome(content)

    def _write_file(self, arguments: dict[str, object]) -> ToolOutcome:
        path = self._resolve(arguments)
        content = _string_arg(arguments, "content")
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(content)
        return ToolOutcome(f"wrote {len(content)} characters to {path}")

    def _list_directory(self, arguments: dict[str, object]) -> ToolOutcome:
        path = self._resolve(arguments)
        entries = []
        with os.scandir(path) as it:
            for entry in it:
                entries.append(entry.name + "/" if entry.is_dir() else entry.name)
        return ToolOutcome("\n".join(sorted(entries)))

    def _run_shell(self, arguments: dict[str, object]) -> ToolOutcome:
        command = _string_arg(arguments, "command")
        result = self.shell.execute(command, cwd=self.working_dir, timeout=self.command_timeout)
        output = result.render(limit=self.output_limit)
        if result.blocked:
            return ToolOutcome(output, success=False, error=result.block_reason)
        if result.timed_out:
            return ToolOutcome(output, success=False, error="command timed out")
        if result.returncode != 0:
            return ToolOutcome(
                output, success=False, error=f"command exited with code {result.returncode}"
            )
        return ToolOutcome(output)


def _string_arg(arguments: dict[str, object], key: str) -> str:
    value = arguments.get(key)
    return value if isinstance(value, str) else ""
