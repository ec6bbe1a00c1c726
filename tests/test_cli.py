from __future__ import annotations

import argparse
import io
from pathlib import Path

import pytest

from ralph import cli
from ralph.backend.events import TextEvent
from ralph.channel import EventChannel
from ralph.config import AppConfig
from ralph.core.events import (
    AIResponse,
    ErrorOccurred,
    IterationComplete,
    IterationStart,
    LoopCancelled,
    LoopFailed,
    LoopStart,
    PromiseDetected,
    ToolExecutionResult,
    ToolExecutionStart,
)
from ralph.core.models import LoopConfig, LoopResult, LoopState
from ralph.errors import (
    ConfigError,
    LoopCancelledError,
    LoopError,
    LoopTimeoutError,
    MaxIterationsError,
    ToolExecutionError,
)


class FakeSession:
    def __init__(self, text: str = "") -> None:
        self.text = text
        self.prompts: list[str] = []

    def start(self) -> None:
        return None

    def create_session(self, cancel=None) -> None:
        return None

    def send_prompt(self, cancel, prompt):
        self.prompts.append(prompt)
        channel: EventChannel = EventChannel()
        if self.text:
            channel.put(TextEvent(self.text))
        channel.close()
        return channel

    def destroy_session(self) -> None:
        return None

    def stop(self) -> None:
        return None


def _install_config(monkeypatch: pytest.MonkeyPatch, config: AppConfig) -> None:
    monkeypatch.setattr(
        cli,
        "AppConfig",
        type("FakeConfig", (), {"from_env": staticmethod(lambda: config)}),
    )


def test_parser_defaults() -> None:
    args = cli.build_parser().parse_args([])

    assert args.prompt is None
    assert args.max_iterations is None
    assert args.timeout is None
    assert args.streaming is None
    assert args.dry_run is False
    assert args.allowed_directories is None


def test_parser_accepts_loop_flags() -> None:
    args = cli.build_parser().parse_args(
        [
            "-m",
            "5",
            "-t",
            "1h30m",
            "--promise",
            "DONE",
            "--allowed-directories",
            "/a",
            "--allowed-directories",
            "/b",
            "--excluded-tools",
            "shell, write_file",
            "--no-streaming",
            "fix the tests",
        ]
    )

    assert args.max_iterations == 5
    assert args.timeout == 5400.0
    assert args.promise == "DONE"
    assert args.allowed_directories == ["/a", "/b"]
    assert args.excluded_tools == ["shell", "write_file"]
    assert args.streaming is False
    assert args.prompt == "fix the tests"


@pytest.mark.parametrize(
    ("value", "expected"),
    [("90", 90.0), ("90s", 90.0), ("10m", 600.0), ("1h30m", 5400.0), ("500ms", 0.5), ("0", 0.0)],
)
def test_parse_duration(value: str, expected: float) -> None:
    assert cli.parse_duration(value) == pytest.approx(expected)


@pytest.mark.parametrize("value", ["", "ten minutes", "10x", "m10"])
def test_parse_duration_rejects_garbage(value: str) -> None:
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_duration(value)


def test_format_duration() -> None:
    assert cli.format_duration(1800) == "30m0s"
    assert cli.format_duration(5400) == "1h30m0s"
    assert cli.format_duration(4.4) == "4s"


def test_resolve_prompt_plain_text() -> None:
    assert cli.resolve_prompt("refactor the parser") == "refactor the parser"


def test_resolve_prompt_keeps_long_text_that_cannot_be_a_file_name() -> None:
    prompt = "Implement the feature " * 20

    assert cli.resolve_prompt(prompt) == prompt


def test_resolve_prompt_treats_unstattable_value_as_text(monkeypatch: pytest.MonkeyPatch) -> None:
    def too_long(self: Path) -> bool:
        raise OSError(36, "File name too long")

    monkeypatch.setattr(Path, "exists", too_long)

    assert cli.resolve_prompt("write the release notes") == "write the release notes"


def test_resolve_prompt_reads_markdown_file(tmp_path: Path) -> None:
    prompt_file = tmp_path / "task.md"
    prompt_file.write_text("# Task\nDo it", encoding="utf-8")

    assert cli.resolve_prompt(str(prompt_file)) == "# Task\nDo it"


def test_resolve_prompt_rejects_non_markdown_file_and_directory(tmp_path: Path) -> None:
    other = tmp_path / "task.txt"
    other.write_text("nope", encoding="utf-8")

    with pytest.raises(ConfigError, match="Markdown"):
        cli.resolve_prompt(str(other))
    with pytest.raises(ConfigError, match="directory"):
        cli.resolve_prompt(str(tmp_path))


def test_resolve_prompt_reads_piped_stdin() -> None:
    assert cli.resolve_prompt(None, stdin=io.StringIO("from stdin\n")) == "from stdin"


def test_resolve_prompt_requires_input_on_tty() -> None:
    class Tty(io.StringIO):
        def isatty(self) -> bool:
            return True

    with pytest.raises(ConfigError, match="prompt is required"):
        cli.resolve_prompt(None, stdin=Tty())


def test_validate_loop_config(tmp_path: Path) -> None:
    valid = cli.validate_loop_config(
        LoopConfig(prompt="task", working_dir=str(tmp_path)), "append"
    )

    assert valid.working_dir == str(tmp_path.resolve())
    with pytest.raises(ConfigError, match="prompt cannot be empty"):
        cli.validate_loop_config(LoopConfig(prompt="  "), "append")
    with pytest.raises(ConfigError, match="max-iterations"):
        cli.validate_loop_config(LoopConfig(prompt="t", max_iterations=-1), "append")
    with pytest.raises(ConfigError, match="timeout"):
        cli.validate_loop_config(LoopConfig(prompt="t", timeout=-1), "append")
    with pytest.raises(ConfigError, match="system-prompt-mode"):
        cli.validate_loop_config(LoopConfig(prompt="t"), "prepend")
    with pytest.raises(ConfigError, match="working directory"):
        cli.validate_loop_config(
            LoopConfig(prompt="t", working_dir=str(tmp_path / "missing")), "append"
        )


def test_resolve_system_message() -> None:
    default_message, default_mode = cli.resolve_system_message(None, "replace", "DONE")
    custom_message, custom_mode = cli.resolve_system_message("Only test", "replace", "DONE")

    assert "<promise>DONE</promise>" in default_message
    assert default_mode == "append"
    assert (custom_message, custom_mode) == ("Only test", "replace")


@pytest.mark.parametrize(
    ("result", "expected"),
    [
        (LoopResult(LoopState.COMPLETE, 3, 1.0), 0),
        (LoopResult(LoopState.FAILED, 1, 1.0, LoopError("boom")), 1),
        (LoopResult(LoopState.CANCELLED, 1, 1.0, LoopCancelledError()), 2),
        (LoopResult(LoopState.FAILED, 1, 1.0, LoopTimeoutError()), 3),
        (LoopResult(LoopState.FAILED, 10, 1.0, MaxIterationsError()), 4),
        (None, 2),
    ],
)
def test_exit_code_for(result: LoopResult | None, expected: int) -> None:
    assert cli.exit_code_for(result) == expected


def test_display_events_renders_progress() -> None:
    config = LoopConfig(prompt="task", max_iterations=2)
    out = io.StringIO()
    events = [
        LoopStart(config),
        IterationStart(1, 2),
        AIResponse("Hello ", 1),
        AIResponse("world", 1),
        ToolExecutionStart("read_file", {"path": "a.txt"}, 1),
        ToolExecutionResult("read_file", {"path": "a.txt"}, 1, error=ToolExecutionError("nope")),
        PromiseDetected("DONE", "ai_response", 1),
        ErrorOccurred(RuntimeError("flaky"), 1, recoverable=True),
        IterationComplete(1, 0.5),
        LoopCancelled(LoopResult(LoopState.CANCELLED, 1, 0.5)),
    ]

    cli.display_events(events, config, out)
    rendered = out.getvalue()

    assert "--- Iteration 1/2 ---" in rendered
    assert "Hello world\n[tool] read_file: a.txt" in rendered
    assert "[failed] read_file: a.txt (nope)" in rendered
    assert 'Promise detected: "DONE"' in rendered
    assert "Error: flaky" in rendered
    assert "Iteration 1 complete" in rendered
    assert rendered.endswith("Loop cancelled\n")


def test_display_events_reports_loop_failure() -> None:
    config = LoopConfig(prompt="task", max_iterations=1)
    out = io.StringIO()
    error = LoopError("iteration 1 failed: boom")

    cli.display_events(
        [AIResponse("partial", 1), LoopFailed(error, LoopResult(LoopState.FAILED, 1, 0.1, error))],
        config,
        out,
    )

    assert out.getvalue() == "partial\nLoop failed: iteration 1 failed: boom\n"


def test_print_summary_includes_error() -> None:
    out = io.StringIO()

    cli.print_summary(LoopResult(LoopState.FAILED, 2, 65.0, LoopTimeoutError()), out)

    rendered = out.getvalue()
    assert "Status:     Failed" in rendered
    assert "Iterations: 2" in rendered
    assert "Duration:   1m5s" in rendered
    assert "Error:      loop timeout exceeded" in rendered


def test_main_dry_run_prints_preview(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    _install_config(monkeypatch, AppConfig(working_directory=str(tmp_path)))
    monkeypatch.setattr("sys.argv", ["ralph", "--dry-run", "-m", "7", "build it"])

    def fail_build(*_args, **_kwargs):
        raise AssertionError("dry run must not create a backend")

    monkeypatch.setattr(cli, "build_backend_session", fail_build)

    assert cli.main() == 0
    out = capsys.readouterr().out
    assert "Dry Run - Configuration Preview" in out
    assert "Prompt:            build it" in out
    assert "Max iterations:    7" in out
    assert "Timeout:           30m0s" in out


def test_main_rejects_invalid_working_dir(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    _install_config(monkeypatch, AppConfig(working_directory="./definitely-missing-dir"))
    monkeypatch.setattr("sys.argv", ["ralph", "build it"])

    assert cli.main() == 1
    assert "Error: working directory does not exist" in capsys.readouterr().err


def test_main_runs_loop_and_reports_summary(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    _install_config(monkeypatch, AppConfig(working_directory=str(tmp_path)))
    monkeypatch.setattr("sys.argv", ["ralph", "-m", "2", "--promise", "DONE", "build it"])
    session = FakeSession("finished <promise>DONE</promise>")
    captured: dict[str, object] = {}

    def fake_build(config, loop_config, **kwargs):
        captured.update(kwargs)
        captured["loop_config"] = loop_config
        return session

    monkeypatch.setattr(cli, "build_backend_session", fake_build)

    assert cli.main() == 0
    out = capsys.readouterr().out
    assert session.prompts == ["[Iteration 1/2]\n\nbuild it", "[Iteration 2/2]\n\nbuild it"]
    assert "Promise detected" in out
    assert "Status:     Complete" in out
    assert "Iterations: 2" in out
    assert captured["allowed_directories"] == []
    assert captured["streaming"] is True
    assert captured["system_message_mode"] == "append"
    assert "<promise>DONE</promise>" in str(captured["system_message"])
    assert captured["loop_config"].working_dir == str(tmp_path.resolve())
