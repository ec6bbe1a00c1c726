"""Environment-backed application configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

from ralph.backend.responses import DEFAULT_API_URL, DEFAULT_REQUEST_TIMEOUT
from ralph.backend.tools import DEFAULT_COMMAND_TIMEOUT
from ralph.core.models import (
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MODEL,
    DEFAULT_PROMISE_PHRASE,
    DEFAULT_TIMEOUT_SECONDS,
)

DEFAULT_LOG_LEVEL = "warning"
LOG_LEVELS = ("debug", "info", "warning", "error")
SYSTEM_PROMPT_MODES = ("append", "replace")


def _to_bool(value: object, default: bool = False) -> bool:
    """Convert common env var truthy/falsy values into booleans."""
    if isinstance(value, bool):
        return value
    if not isinstance(value, str):
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


@dataclass(slots=True)
class AppConfig:
    """Runtime settings loaded from environment variables and config files."""

    api_key: str | None = None
    api_url: str = DEFAULT_API_URL
    model: str = DEFAULT_MODEL
    reasoning_effort: str | None = None
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    promise_phrase: str = DEFAULT_PROMISE_PHRASE
    working_directory: str = "."
    allowed_directories: list[str] = field(default_factory=list)
    streaming: bool = True
    system_prompt: str | None = None
    system_prompt_mode: str = "append"
    log_level: str = DEFAULT_LOG_LEVEL
    shell: str = "bash"
    allow_unsafe: bool = False
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    available_tools: list[str] | None = None
    excluded_tools: list[str] | None = None

    @classmethod
    def from_env(cls) -> AppConfig:
        file_config = _load_preferred_file_config()
        openai_from_file = file_config.get("openai")
        openai_config = openai_from_file if isinstance(openai_from_file, dict) else {}
        models_from_file = file_config.get("models")
        model_config = models_from_file if isinstance(models_from_file, dict) else {}

        selected_model = (
            os.getenv("RALPH_MODEL")
            or _to_optional_string(file_config.get("default_model"))
            or DEFAULT_MODEL
        )
        selected_model_entry = model_config.get(selected_model)
        selected_model_config = (
            selected_model_entry if isinstance(selected_model_entry, dict) else {}
        )

        return cls(
            api_key=(
                os.getenv("RALPH_OPENAI_API_KEY")
                or os.getenv("RALPH_API_KEY")
                or _to_optional_string(openai_config.get("api_key"))
                or _to_optional_string(file_config.get("api_key"))
            ),
            api_url=(
                os.getenv("RALPH_API_URL")
                or _to_optional_string(openai_config.get("api_url"))
                or DEFAULT_API_URL
            ),
            model=selected_model,
            reasoning_effort=(
                os.getenv("RALPH_REASONING_EFFORT")
                or _to_optional_string(selected_model_config.get("reasoning_effort"))
                or _default_reasoning_effort(selected_model)
            ),
            max_iterations=_to_non_negative_int(
                os.getenv("RALPH_MAX_ITERATIONS") or file_config.get("max_iterations"),
                default=DEFAULT_MAX_ITERATIONS,
            ),
            timeout=_to_non_negative_float(
                os.getenv("RALPH_TIMEOUT") or file_config.get("timeout"),
                default=DEFAULT_TIMEOUT_SECONDS,
            ),
            promise_phrase=(
                os.getenv("RALPH_PROMISE")
                or _to_optional_string(file_config.get("promise_phrase"))
                or DEFAULT_PROMISE_PHRASE
            ),
            working_directory=(
                os.getenv("RALPH_WORKING_DIR")
                or _to_optional_string(file_config.get("working_directory"))
                or "."
            ),
            allowed_directories=_to_string_list(
                os.getenv("RALPH_ALLOWED_DIRECTORIES") or file_config.get("allowed_directories"),
                separator=os.pathsep,
            )
            or [],
            streaming=_to_bool(
                os.getenv("RALPH_STREAMING"),
                default=_to_bool(file_config.get("streaming"), default=True),
            ),
            system_prompt=(
                os.getenv("RALPH_SYSTEM_PROMPT")
                or _to_optional_string(file_config.get("system_prompt"))
            ),
            system_prompt_mode=_choice(
                os.getenv("RALPH_SYSTEM_PROMPT_MODE") or file_config.get("system_prompt_mode"),
                SYSTEM_PROMPT_MODES,
                default="append",
            ),
            log_level=_choice(
                os.getenv("RALPH_LOG_LEVEL") or file_config.get("log_level"),
                LOG_LEVELS,
                default=DEFAULT_LOG_LEVEL,
            ),
            shell=_shell_value(
                os.getenv("RALPH_SHELL") or _to_optional_string(file_config.get("shell"))
            ),
            allow_unsafe=_to_bool(
                os.getenv("RALPH_ALLOW_UNSAFE"),
                default=_to_bool(file_config.get("allow_unsafe"), default=False),
            ),
            request_timeout=_to_positive_float(
                os.getenv("RALPH_REQUEST_TIMEOUT") or file_config.get("request_timeout"),
                default=DEFAULT_REQUEST_TIMEOUT,
            ),
            command_timeout=_to_positive_float(
                os.getenv("RALPH_COMMAND_TIMEOUT") or file_config.get("command_timeout"),
                default=DEFAULT_COMMAND_TIMEOUT,
            ),
            available_tools=_to_string_list(
                os.getenv("RALPH_AVAILABLE_TOOLS") or file_config.get("available_tools")
            ),
            excluded_tools=_to_string_list(
                os.getenv("RALPH_EXCLUDED_TOOLS") or file_config.get("excluded_tools")
            ),
        )


def _to_optional_string(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _to_string_list(value: object, *, separator: str = ",") -> list[str] | None:
    """Accept a JSON list or a separator-delimited string; ``None`` when unset."""
    if isinstance(value, str):
        items = [item.strip() for item in value.split(separator)]
    elif isinstance(value, list):
        items = [item.strip() for item in value if isinstance(item, str)]
    else:
        return None
    cleaned = [item for item in items if item]
    return cleaned or None


def _load_file_config(path_value: str) -> dict[str, object]:
    path = Path(path_value)
    if not path.exists() or not path.is_file():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            parsed = json.load(fh)
    except (OSError, json.JSONDecodeError):
        return {}
    if isinstance(parsed, dict):
        return parsed
    return {}


def _load_preferred_file_config() -> dict[str, object]:
    explicit_path = os.getenv("RALPH_CONFIG_FILE")
    if explicit_path:
        return _load_file_config(explicit_path)

    shared_config = _load_file_config("ralph.config.json")
    local_override = _load_file_config("ralph.config.local.json")
    return _merge_dicts(shared_config, local_override)


def _merge_dicts(base: dict[str, object], override: dict[str, object]) -> dict[str, object]:
    merged: dict[str, object] = dict(base)
    for key, value in override.items():
        base_value = merged.get(key)
        if isinstance(base_value, dict) and isinstance(value, dict):
            merged[key] = _merge_dicts(base_value, value)
        else:
            merged[key] = value
    return merged


def _default_reasoning_effort(model: str) -> str | None:
    """Provide practical defaults for reasoning-capable model families."""
    normalized = model.strip().lower()
    if normalized.startswith("gpt-5") or normalized.startswith("o"):
        return "medium"
    return None


def _shell_value(value: str | None) -> str:
    if value is None:
        return "bash"
    normalized = value.strip().lower()
    return "sh" if normalized == "sh" else "bash"


def _choice(value: object, choices: tuple[str, ...], *, default: str) -> str:
    if isinstance(value, str) and value.strip().lower() in choices:
        return value.strip().lower()
    return default


def _to_non_negative_int(value: object, *, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value if value >= 0 else default
    if isinstance(value, str):
        try:
            parsed = int(value.strip())
        except ValueError:
            return default
        return parsed if parsed >= 0 else default
    return default


def _to_float(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _to_non_negative_float(value: object, *, default: float) -> float:
    parsed = _to_float(value)
    return parsed if parsed is not None and parsed >= 0 else default


def _to_positive_float(value: object, *, default: float) -> float:
    parsed = _to_float(value)
    return parsed if parsed is not None and parsed > 0 else default
