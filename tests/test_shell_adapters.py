from __future__ import annotations

import subprocess
from types import SimpleNamespace

import pytest

from ralph.shell import (
    BashAdapter,
    CommandResult,
    create_shell_adapter,
    is_destructive_command,
    sanitize_command,
)


@pytest.mark.parametrize(
    ("factory_input", "expected_executable"),
    [("bash", None), ("sh", "sh"), ("shell", None)],
)
def test_create_shell_adapter(factory_input: str, expected_executable: str | None) -> None:
    adapter = create_shell_adapter(factory_input)

    assert isinstance(adapter, BashAdapter)
    if expected_executable:
        assert adapter.executable == expected_executable


@pytest.mark.parametrize("shell_name", ["zsh", "cmd", "powershell"])
def test_create_shell_adapter_rejects_unsupported(shell_name: str) -> None:
    with pytest.raises(ValueError, match="Unsupported shell adapter"):
        create_shell_adapter(shell_name)


def test_bash_adapter_runs_command(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(*args: object, **kwargs: object) -> SimpleNamespace:
        assert args[0] == ["bash", "-c", "echo hi"]
        assert kwargs["cwd"] == "/repo"
        assert kwargs["timeout"] == 3.0
        return SimpleNamespace(returncode=0, stdout=b"hi", stderr=b"")

    monkeypatch.setattr(subprocess, "run", fake_run)
    result = BashAdapter(executable="bash").execute("echo hi", cwd="/repo", timeout=3.0)

    assert result.returncode == 0
    assert result.stdout == "hi"


def test_bash_adapter_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(*args: object, **kwargs: object) -> SimpleNamespace:
        raise subprocess.TimeoutExpired(cmd=args[0], timeout=1, output=b"", stderr=b"late")

    monkeypatch.setattr(subprocess, "run", fake_run)
    result = BashAdapter(executable="bash").execute("sleep 10", timeout=1)

    assert result.timed_out is True
    assert result.returncode == 124
    assert result.stderr == "late"
    assert "command timed out" in result.render()


def test_bash_adapter_falls_back_to_sh(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_which(name: str) -> str | None:
        if name == "sh":
            return "/bin/sh"
        return None

    monkeypatch.setattr("ralph.shell.bash_adapter.shutil.which", fake_which)

    assert BashAdapter().executable == "sh"


def test_allowlist_hook_rejects() -> None:
    adapter = BashAdapter(executable="bash", allowlist_hook=lambda _command, _shell: False)

    result = adapter.execute("ls")

    assert result.executed is False
    assert result.blocked is True
    assert "allowlist" in result.stderr


def test_denylist_hook_blocks() -> None:
    adapter = BashAdapter(executable="bash", denylist_hook=lambda command, _shell: "curl" in command)

    result = adapter.execute("curl https://example.com")

    assert result.blocked is True
    assert result.returncode == 126


def test_destructive_command_blocked_by_default(monkeypatch: pytest.MonkeyPatch) -> None:
    def fail_run(*_args: object, **_kwargs: object) -> None:
        raise AssertionError("blocked commands must not run")

    monkeypatch.setattr(subprocess, "run", fail_run)
    result = BashAdapter(executable="bash").execute("rm -rf ./build")

    assert result.blocked is True
    assert result.render() == f"command not run: {result.block_reason}"


def test_destructive_command_allowed_when_blocking_disabled(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    calls: list[list[str]] = []

    def fake_run(*args: object, **_kwargs: object) -> SimpleNamespace:
        calls.append(args[0])  # type: ignore[arg-type]
        return SimpleNamespace(returncode=0, stdout=b"", stderr=b"")

    monkeypatch.setattr(subprocess, "run", fake_run)
    result = BashAdapter(executable="bash", block_destructive=False).execute("rm -rf ./tmp")

    assert calls == [["bash", "-c", "rm -rf ./tmp"]]
    assert result.executed is True
    assert result.blocked is False
    assert result.returncode == 0


def test_empty_command_is_refused() -> None:
    result = BashAdapter(executable="bash").execute("   ")

    assert result.blocked is True
    assert result.block_reason == "empty command"


@pytest.mark.parametrize(
    ("command", "expected"),
    [
        ("rm -rf /", True),
        ("rm -fr build", True),
        ("git reset --hard HEAD~1", True),
        ("git push origin main --force", True),
        ("mkfs.ext4 /dev/sda1", True),
        ("rm notes.txt", False),
        ("git status", False),
    ],
)
def test_is_destructive_command(command: str, expected: bool) -> None:
    assert is_destructive_command(command) is expected


def test_sanitize_command_masks_secrets() -> None:
    sanitized = sanitize_command("deploy --token abc123 API_KEY=xyz")

    assert "abc123" not in sanitized
    assert "xyz" not in sanitized
    assert "--token ***" in sanitized


def test_render_truncates_long_output() -> None:
    result = CommandResult(
        command="cat big", shell="bash", returncode=0, stdout="y" * 30, stderr="warn"
    )

    rendered = result.render(limit=10)

    assert rendered.startswith("exit code: 0\nstdout:\n" + "y" * 10)
    assert "20 characters truncated" in rendered
    assert rendered.endswith("stderr:\nwarn")
