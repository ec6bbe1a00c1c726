"""POSIX shell adapter."""

from __future__ import annotations

import locale
import shutil
import subprocess

from .base import TIMEOUT_RETURNCODE, CommandResult, PolicyHook, ShellAdapter


class BashAdapter(ShellAdapter):
    """Runs commands through ``bash -c`` (or ``sh -c`` when bash is missing)."""

    def __init__(
        self,
        executable: str | None = None,
        *,
        allowlist_hook: PolicyHook | None = None,
        denylist_hook: PolicyHook | None = None,
        block_destructive: bool = True,
        fallback_to_sh: bool = True,
    ) -> None:
        super().__init__(
            allowlist_hook=allowlist_hook,
            denylist_hook=denylist_hook,
            block_destructive=block_destructive,
        )
        self.executable = executable or _default_executable(fallback_to_sh=fallback_to_sh)

    @property
    def name(self) -> str:
        return "bash"

    def execute(
        self,
        command: str,
        *,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        self.log_request(command, cwd=cwd, timeout=timeout)
        reason = self.check_policy(command)
        if reason:
            result = self.blocked_result(command, reason)
            self.log_result(result)
            return result

        started = self.monotonic_now()
        try:
            process = subprocess.run(
                [self.executable, "-c", command],
                capture_output=True,
                cwd=cwd,
                timeout=timeout,
                check=False,
                stdin=subprocess.DEVNULL,
            )
            result = CommandResult(
                command=command,
                shell=self.name,
                returncode=process.returncode,
                stdout=_normalize_output(process.stdout),
                stderr=_normalize_output(process.stderr),
                duration_seconds=self.monotonic_now() - started,
            )
        except subprocess.TimeoutExpired as exc:
            result = CommandResult(
                command=command,
                shell=self.name,
                returncode=TIMEOUT_RETURNCODE,
                stdout=_normalize_output(exc.stdout),
                stderr=_normalize_output(exc.stderr),
                timed_out=True,
                duration_seconds=self.monotonic_now() - started,
            )

        self.log_result(result)
        return result


def _default_executable(*, fallback_to_sh: bool) -> str:
    if shutil.which("bash"):
        return "bash"
    if fallback_to_sh and shutil.which("sh"):
        return "sh"
    return "bash"


def _normalize_output(payload: bytes | str | None) -> str:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload

    for encoding in ("utf-8", locale.getpreferredencoding(False)):
        try:
            return payload.decode(encoding)
        except (LookupError, UnicodeDecodeError):
            continue
    return payload.decode("utf-8", errors="replace")
