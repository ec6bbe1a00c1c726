"""Allow-list sandbox for file-system paths requested by the assistant."""

from __future__ import annotations

import os
import re
import shlex
import sys
from collections.abc import Iterable

_CASE_INSENSITIVE = os.name == "nt" or sys.platform == "darwin"

_OPERATOR_SPLIT = re.compile(r"[\s;&|<>()]+")
_WINDOWS_DRIVE = re.compile(r"^[A-Za-z]:[\\/]")


class PathSandbox:
    """Decides whether a path lies inside a fixed set of allowed directories."""

    def __init__(self, allowed_directories: Iterable[str] | None, working_dir: str = ".") -> None:
        self.working_dir = _normalize(working_dir, base=os.getcwd())
        entries = [entry for entry in (allowed_directories or []) if entry]
        if not entries:
            entries = [self.working_dir]
        normalized: list[str] = []
        for entry in entries:
            path = _normalize(entry, base=self.working_dir)
            if path not in normalized:
                normalized.append(path)
        self.allowed_directories: tuple[str, ...] = tuple(normalized)
        self._comparable = tuple(_comparable(path) for path in normalized)

    def is_allowed(self, path: str | None) -> bool:
        if not path:
            return False
        candidate = _comparable(_normalize(path, base=self.working_dir))
        for allowed in self._comparable:
            if candidate == allowed:
                return True
            prefix = allowed if allowed.endswith(os.sep) else allowed + os.sep
            if candidate.startswith(prefix):
                return True
        return False


def extract_command_paths(command: str) -> list[str]:
    """Pull path-looking tokens out of a free-text shell command line."""
    if not command or not command.strip():
        return []
    paths: list[str] = []
    for token in _split_command(command):
        for candidate in _token_candidates(token):
            if _looks_like_path(candidate) and candidate not in paths:
                paths.append(candidate)
    return paths


def _split_command(command: str) -> list[str]:
    """Split on whitespace and shell operators, so ``cd ..;`` yields ``..``."""
    lexer = shlex.shlex(command, posix=os.name != "nt", punctuation_chars=True)
    lexer.whitespace_split = True
    lexer.commenters = ""
    try:
        return list(lexer)
    except ValueError:
        return [token for token in _OPERATOR_SPLIT.split(command) if token]


def _token_candidates(token: str) -> list[str]:
    token = token.strip().strip("'\"")
    if not token:
        return []
    candidates = [token]
    if "=" in token:
        _, _, value = token.partition("=")
        if value:
            candidates.append(value)
    return candidates


def _looks_like_path(token: str) -> bool:
    if "://" in token:
        return False
    if token.startswith(("/", "~", "./", "../", ".\\", "..\\")) or token in {".", ".."}:
        return True
    if _WINDOWS_DRIVE.match(token):
        return True
    return "/../" in token or token.endswith("/..") or "\\..\\" in token


def _normalize(path: str, *, base: str) -> str:
    expanded = os.path.expanduser(path)
    if not os.path.isabs(expanded):
        expanded = os.path.join(base, expanded)
    normalized = os.path.normpath(os.path.abspath(expanded))
    root = os.path.splitdrive(normalized)[0] + os.sep
    if normalized != root:
        normalized = normalized.rstrip("\\/")
    return normalized


def _comparable(path: str) -> str:
    if not _CASE_INSENSITIVE:
        return path
    return os.path.normcase(path).casefold()
