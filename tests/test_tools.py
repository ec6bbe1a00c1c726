from __future__ import annotations

from ralph.backend.tools import Toolbox, select_tools
from ralph.shell import CommandResult


class FakeShell:
    name = "fake"

    def __init__(self, result: CommandResult) -> None:
        self.result = result
        self.calls: list[tuple[str, str | None, float | None]] = []

    def execute(self, command, *, cwd=None, timeout=None):
        self.calls.append((command, cwd, timeout))
        return self.result


def _result(returncode: int = 0, stdout: str = "", **kwargs) -> CommandResult:
    return CommandResult(
        command="cmd", shell="fake", returncode=returncode, stdout=stdout, stderr="", **kwargs
    )


def test_select_tools_applies_available_then_excluded() -> None:
    assert [spec.name for spec in select_tools()] == [
        "read_file",
        "write_file",
        "list_directory",
        "shell",
    ]
    assert [spec.name for spec in select_tools(["read_file", "shell"], ["shell"])] == [
        "read_file"
    ]


def test_toolbox_definitions_use_function_tool_shape(tmp_path) -> None:
    toolbox = Toolbox(str(tmp_path), shell=FakeShell(_result()), excluded_tools=["shell"])

    definitions = toolbox.definitions()

    assert toolbox.names == ["read_file", "write_file", "list_directory"]
    assert definitions[0]["type"] == "function"
    assert definitions[0]["parameters"]["required"] == ["path"]


def test_write_then_read_and_list(tmp_path) -> None:
    toolbox = Toolbox(str(tmp_path), shell=FakeShell(_result()))

    written = toolbox.run("write_file", {"path": "docs/notes.txt", "content": "hello"})
    read = toolbox.run("read_file", {"path": "docs/notes.txt"})
    listing = toolbox.run("list_directory", {"path": "."})

    assert written.success is True
    assert read.output == "hello"
    assert listing.output == "docs/"


def test_read_missing_file_reports_error(tmp_path) -> None:
    toolbox = Toolbox(str(tmp_path), shell=FakeShell(_result()))

    outcome = toolbox.run("read_file", {"path": "missing.txt"})

    assert outcome.success is False
    assert outcome.error


def test_read_file_truncates_long_content(tmp_path) -> None:
    (tmp_path / "big.txt").write_text("x" * 50, encoding="utf-8")
    toolbox = Toolbox(str(tmp_path), shell=FakeShell(_result()), output_limit=10)

    outcome = toolbox.run("read_file", {"path": "big.txt"})

    assert outcome.output.startswith("x" * 10)
    assert "40 characters truncated" in outcome.output


def test_unknown_or_excluded_tool_fails(tmp_path) -> None:
    toolbox = Toolbox(str(tmp_path), shell=FakeShell(_result()), available_tools=["read_file"])

    assert toolbox.run("shell", {"command": "ls"}).error == "unknown tool: shell"
    assert toolbox.permission_request("shell", "c1", {"command": "ls"}) is None


def test_shell_tool_runs_in_working_dir(tmp_path) -> None:
    shell = FakeShell(_result(stdout="hi\n"))
    toolbox = Toolbox(str(tmp_path), shell=shell, command_timeout=5.0)

    outcome = toolbox.run("shell", {"command": "echo hi"})

    assert shell.calls == [("echo hi", str(tmp_path), 5.0)]
    assert outcome.success is True
    assert "exit code: 0" in outcome.output
    assert "hi" in outcome.output


def test_shell_tool_reports_failures(tmp_path) -> None:
    failed = Toolbox(str(tmp_path), shell=FakeShell(_result(returncode=2))).run(
        "shell", {"command": "false"}
    )
    blocked = Toolbox(
        str(tmp_path),
        shell=FakeShell(
            _result(returncode=126, executed=False, blocked=True, block_reason="denied")
        ),
    ).run("shell", {"command": "rm -rf /"})

    assert failed.success is False
    assert failed.error == "command exited with code 2"
    assert blocked.success is False
    assert blocked.error == "denied"
    assert blocked.output == "command not run: denied"


def test_permission_requests_by_kind(tmp_path) -> None:
    toolbox = Toolbox(str(tmp_path), shell=FakeShell(_result()))

    read = toolbox.permission_request("read_file", "c1", {"path": "a.txt"})
    write = toolbox.permission_request("write_file", "c2", {"path": "b.txt", "content": ""})
    listing = toolbox.permission_request("list_directory", "c3", {})
    shell = toolbox.permission_request("shell", "c4", {"command": "cat /etc/hosts"})

    assert (read.kind, read.path, read.tool_call_id) == ("read", "a.txt", "c1")
    assert (write.kind, write.file_name) == ("write", "b.txt")
    assert (listing.kind, listing.path) == ("read", None)
    assert (shell.kind, shell.full_command_text) == ("shell", "cat /etc/hosts")
