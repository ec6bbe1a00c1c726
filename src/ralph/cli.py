"""Command-line interface for ralph."""

from __future__ import annotations

import argparse
import dataclasses
import logging
import os
import re
import signal
import sys
import threading
from collections.abc import Iterable
from pathlib import Path
from typing import Any, TextIO, cast

from .backend.responses import ResponsesClient
from .backend.session import BackendSession
from .config import LOG_LEVELS, SYSTEM_PROMPT_MODES, AppConfig
from .core.engine import LoopEngine
from .core.events import (
    AIResponse,
    ErrorOccurred,
    IterationComplete,
    IterationStart,
    LoopCancelled,
    LoopComplete,
    LoopEvent,
    LoopFailed,
    LoopStart,
    PromiseDetected,
    ToolExecutionResult,
    ToolExecutionStart,
)
from .core.models import LoopConfig, LoopResult, LoopState
from .core.prompt import build_system_prompt
from .errors import ConfigError, LoopTimeoutError, MaxIterationsError
from .shell import create_shell_adapter

LOGGER = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 2
EXIT_TIMEOUT = 3
EXIT_MAX_ITERATIONS = 4

DISPLAY_DRAIN_SECONDS = 1.0
MARKDOWN_EXTENSIONS = (".md", ".markdown")

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


class CLIArgs(argparse.Namespace):
    prompt: str | None
    max_iterations: int | None
    timeout: float | None
    promise: str | None
    model: str | None
    working_dir: str | None
    allowed_directories: list[str] | None
    dry_run: bool
    streaming: bool | None
    system_prompt: str | None
    system_prompt_mode: str | None
    available_tools: list[str] | None
    excluded_tools: list[str] | None
    log_level: str | None


def parse_duration(value: str) -> float:
    """Parse ``90``, ``90s``, ``10m`` or ``1h30m`` into seconds."""
    text = value.strip().lower()
    if not text:
        raise argparse.ArgumentTypeError("duration cannot be empty")
    try:
        return float(text)
    except ValueError:
        pass

    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise argparse.ArgumentTypeError(f"invalid duration: {value!r}")
    return total


def format_duration(seconds: float) -> str:
    """Render seconds the way ``parse_duration`` accepts them, e.g. ``1h30m0s``."""
    whole = int(round(seconds))
    hours, remainder = divmod(whole, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def _comma_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ralph",
        description="Ralph loop: feed the same prompt to an AI assistant until it is done",
    )
    parser.add_argument(
        "prompt",
        nargs="?",
        help="Task prompt, or a path to a Markdown file; read from stdin when omitted",
    )
    parser.add_argument("-m", "--max-iterations", type=int, help="Iteration budget (0 = unlimited)")
    parser.add_argument(
        "-t",
        "--timeout",
        type=parse_duration,
        help="Wall-clock limit such as 90s, 10m or 1h30m (0 = none)",
    )
    parser.add_argument("--promise", help="Phrase the assistant says when the task is done")
    parser.add_argument("--model", help="Model name")
    parser.add_argument("--working-dir", help="Directory the assistant works in")
    parser.add_argument(
        "--allowed-directories",
        action="append",
        metavar="DIR",
        help="Directory the assistant's tools may touch; repeatable",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the configuration without running the loop",
    )
    parser.add_argument(
        "--no-streaming",
        dest="streaming",
        action="store_const",
        const=False,
        default=None,
        help="Wait for complete responses instead of streaming deltas",
    )
    parser.add_argument(
        "--system-prompt",
        help="Custom system message, as text or a path to a Markdown file",
    )
    parser.add_argument("--system-prompt-mode", help="append or replace")
    parser.add_argument(
        "--available-tools",
        type=_comma_list,
        help="Comma-separated tools the assistant may use",
    )
    parser.add_argument(
        "--excluded-tools",
        type=_comma_list,
        help="Comma-separated tools the assistant may not use",
    )
    parser.add_argument("--log-level", choices=LOG_LEVELS, help="Logging verbosity")
    return parser


def resolve_prompt(value: str | None, *, stdin: TextIO | None = None) -> str:
    """Return prompt text from an argument, a Markdown file, or piped stdin."""
    if not value:
        stream = stdin if stdin is not None else sys.stdin
        if stream is None or stream.isatty():
            raise ConfigError("prompt is required (provide as argument or via stdin)")
        return stream.read().strip()

    try:
        path = Path(value).expanduser()
        is_file_or_dir = path.exists()
    except (OSError, RuntimeError):
        # Long free text can exceed the platform's name length limit.
        return value
    if not is_file_or_dir:
        return value
    if path.is_dir():
        raise ConfigError(f"prompt path {value} is a directory, must be a Markdown file")
    if path.suffix.lower() not in MARKDOWN_EXTENSIONS:
        raise ConfigError(
            f"file {value} must be a Markdown file with extension .md or .markdown"
        )
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"failed to read prompt file {value}: {exc}") from exc


def build_loop_config(args: CLIArgs, config: AppConfig, prompt: str) -> LoopConfig:
    return LoopConfig(
        prompt=prompt,
        max_iterations=(
            args.max_iterations if args.max_iterations is not None else config.max_iterations
        ),
        timeout=args.timeout if args.timeout is not None else config.timeout,
        promise_phrase=args.promise or config.promise_phrase,
        model=args.model or config.model,
        working_dir=args.working_dir or config.working_directory,
        dry_run=args.dry_run,
    )


def validate_loop_config(loop_config: LoopConfig, system_prompt_mode: str) -> LoopConfig:
    """Reject unusable settings; return the config with an absolute working dir."""
    if not loop_config.prompt.strip():
        raise ConfigError("prompt cannot be empty")
    if loop_config.max_iterations < 0:
        raise ConfigError(
            f"max-iterations must not be negative (got: {loop_config.max_iterations})"
        )
    if loop_config.timeout < 0:
        raise ConfigError(f"timeout must not be negative (got: {loop_config.timeout})")
    if not loop_config.promise_phrase:
        raise ConfigError("promise phrase cannot be empty")
    if system_prompt_mode not in SYSTEM_PROMPT_MODES:
        raise ConfigError(
            f"invalid system-prompt-mode: {system_prompt_mode!r} (must be append or replace)"
        )
    working_dir = Path(loop_config.working_dir).expanduser().resolve()
    if not working_dir.is_dir():
        raise ConfigError(f"working directory does not exist: {loop_config.working_dir}")
    return dataclasses.replace(loop_config, working_dir=str(working_dir))


def resolve_system_message(
    custom: str | None, mode: str, promise_phrase: str
) -> tuple[str, str]:
    """Pick the session's system message and mode.

    A custom message is used as given with the requested mode; otherwise the
    loop instructions are appended to the backend's own.
    """
    if custom:
        return resolve_prompt(custom), mode
    return build_system_prompt(promise_phrase), "append"


def build_backend_session(
    config: AppConfig,
    loop_config: LoopConfig,
    *,
    allowed_directories: list[str],
    streaming: bool,
    system_message: str,
    system_message_mode: str,
    available_tools: list[str] | None,
    excluded_tools: list[str] | None,
) -> BackendSession:
    client = ResponsesClient(
        api_key=config.api_key,
        api_url=config.api_url,
        reasoning_effort=config.reasoning_effort,
        request_timeout=config.request_timeout,
        shell=create_shell_adapter(config.shell, block_destructive=not config.allow_unsafe),
        command_timeout=config.command_timeout,
    )
    return BackendSession(
        client,
        model=loop_config.model,
        working_dir=loop_config.working_dir,
        allowed_directories=allowed_directories,
        streaming=streaming,
        system_message=system_message,
        system_message_mode="replace" if system_message_mode == "replace" else "append",
        available_tools=available_tools,
        excluded_tools=excluded_tools,
    )


def print_dry_run(loop_config: LoopConfig, out: TextIO | None = None) -> None:
    out = out or sys.stdout
    print("Dry Run - Configuration Preview", file=out)
    print(f"  Prompt:            {loop_config.prompt}", file=out)
    print(f"  Model:             {loop_config.model}", file=out)
    print(f"  Max iterations:    {loop_config.max_iterations}", file=out)
    print(f"  Timeout:           {format_duration(loop_config.timeout)}", file=out)
    print(f"  Promise phrase:    {loop_config.promise_phrase}", file=out)
    print(f"  Working directory: {loop_config.working_dir}", file=out)


def print_loop_config(loop_config: LoopConfig, out: TextIO | None = None) -> None:
    out = out or sys.stdout
    print("Starting Ralph Loop", file=out)
    print(f"Prompt:         {loop_config.prompt}", file=out)
    print(f"Model:          {loop_config.model}", file=out)
    print(f"Max iterations: {loop_config.max_iterations}", file=out)
    print(f"Timeout:        {format_duration(loop_config.timeout)}", file=out)
    print(f"Working dir:    {loop_config.working_dir}", file=out)


def display_events(
    events: Iterable[LoopEvent], loop_config: LoopConfig, out: TextIO | None = None
) -> None:
    """Render loop events as plain text until the run concludes."""
    out = out or sys.stdout
    mid_response = False

    def end_response() -> None:
        if mid_response:
            out.write("\n")

    for event in events:
        if isinstance(event, LoopStart):
            out.write("\nLoop started\n")
        elif isinstance(event, IterationStart):
            end_response()
            out.write(f"\n--- Iteration {event.iteration}/{loop_config.max_iterations} ---\n\n")
        elif isinstance(event, AIResponse):
            out.write(event.text)
        elif isinstance(event, ToolExecutionStart):
            end_response()
            out.write(event.info("[tool]") + "\n")
        elif isinstance(event, ToolExecutionResult):
            end_response()
            if event.error is not None:
                out.write(f"{event.info('[failed]')} ({event.error})\n")
            else:
                out.write(event.info("[done]") + "\n")
        elif isinstance(event, IterationComplete):
            end_response()
            out.write(f"Iteration {event.iteration} complete\n")
        elif isinstance(event, PromiseDetected):
            end_response()
            out.write(f'Promise detected: "{event.phrase}"\n')
        elif isinstance(event, ErrorOccurred):
            end_response()
            out.write(f"Error: {event.error}\n")
        elif isinstance(event, LoopCancelled):
            end_response()
            out.write("Loop cancelled\n")
        elif isinstance(event, LoopFailed):
            end_response()
            out.write(f"Loop failed: {event.error}\n")
        elif isinstance(event, LoopComplete):
            end_response()
        out.flush()
        mid_response = isinstance(event, AIResponse)


def print_summary(result: LoopResult, out: TextIO | None = None) -> None:
    out = out or sys.stdout
    labels = {
        LoopState.COMPLETE: "Complete",
        LoopState.FAILED: "Failed",
        LoopState.CANCELLED: "Cancelled",
    }
    print("", file=out)
    print("Loop Summary", file=out)
    print(f"Status:     {labels.get(result.state, str(result.state))}", file=out)
    print(f"Iterations: {result.iterations}", file=out)
    print(f"Duration:   {format_duration(result.duration)}", file=out)
    if result.error is not None:
        print(f"Error:      {result.error}", file=out)


def exit_code_for(result: LoopResult | None) -> int:
    if result is None:
        return EXIT_CANCELLED
    if result.state is LoopState.COMPLETE:
        return EXIT_SUCCESS
    if result.state is LoopState.CANCELLED:
        return EXIT_CANCELLED
    if isinstance(result.error, LoopTimeoutError):
        return EXIT_TIMEOUT
    if isinstance(result.error, MaxIterationsError):
        return EXIT_MAX_ITERATIONS
    return EXIT_FAILED


class InterruptHandler:
    """First SIGINT/SIGTERM cancels the engine; a second one forces exit."""

    def __init__(self, engine: LoopEngine, out: TextIO | None = None) -> None:
        self.engine = engine
        self.out = out or sys.stdout
        self.interrupted = False
        self._previous: dict[int, Any] = {}

    def __call__(self, signum: int, _frame: object) -> None:
        if self.interrupted:
            print("\nSecond interrupt received, forcing exit...", file=self.out, flush=True)
            os._exit(EXIT_CANCELLED)
        self.interrupted = True
        LOGGER.info("interrupt_received", extra={"signal": signum})
        print("\nReceived interrupt signal, cancelling loop...", file=self.out, flush=True)
        self.engine.cancel()

    def install(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous[signum] = signal.signal(signum, self)

    def restore(self) -> None:
        for signum, handler in self._previous.items():
            if handler is not None:
                signal.signal(signum, handler)
        self._previous.clear()


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def run_loop(engine: LoopEngine, loop_config: LoopConfig) -> LoopResult:
    """Start the engine with a display thread and signal handling attached."""
    display = threading.Thread(
        target=display_events,
        args=(engine.events(), loop_config),
        name="ralph-display",
        daemon=True,
    )
    display.start()
    handler = InterruptHandler(engine)
    handler.install()
    try:
        result = engine.start()
    finally:
        handler.restore()
    display.join(DISPLAY_DRAIN_SECONDS)
    return result


def main() -> int:
    parser = build_parser()
    args = cast(CLIArgs, parser.parse_args())
    config = AppConfig.from_env()
    _configure_logging(args.log_level or config.log_level)

    try:
        prompt = resolve_prompt(args.prompt)
        system_prompt_mode = args.system_prompt_mode or config.system_prompt_mode
        loop_config = validate_loop_config(
            build_loop_config(args, config, prompt), system_prompt_mode
        )
        if loop_config.dry_run:
            print_dry_run(loop_config)
            return EXIT_SUCCESS
        system_message, system_message_mode = resolve_system_message(
            args.system_prompt or config.system_prompt,
            system_prompt_mode,
            loop_config.promise_phrase,
        )
        session = build_backend_session(
            config,
            loop_config,
            allowed_directories=args.allowed_directories or config.allowed_directories,
            streaming=config.streaming if args.streaming is None else args.streaming,
            system_message=system_message,
            system_message_mode=system_message_mode,
            available_tools=args.available_tools or config.available_tools,
            excluded_tools=args.excluded_tools or config.excluded_tools,
        )
    except (ConfigError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILED

    print_loop_config(loop_config)
    engine = LoopEngine(loop_config, session)
    result = run_loop(engine, loop_config)
    print_summary(result)
    return exit_code_for(result)


if __name__ == "__main__":
    raise SystemExit(main())
