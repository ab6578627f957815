"""Runtime settings loader and related helpers."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from app.constants import (
    DEFAULT_MAX_CHAT_HISTORY,
    DEFAULT_MAX_TOKENS,
    DEFAULT_MODEL_FILE,
    DEFAULT_MODEL_REPO,
    DEFAULT_SERVER_HOST,
    DEFAULT_SERVER_PORT,
    DEFAULT_SERVER_TIMEOUT_MINUTES,
    DEFAULT_TEMPERATURE,
    DEFAULT_TICK_INTERVAL,
    READINESS_PROBE_ATTEMPTS,
    READINESS_PROBE_INTERVAL,
)
from utils.settings import load_settings, save_settings


def _parse_float(value: Any, default: float) -> float:
    if value in (None, ""):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _parse_int(value: Any, default: int) -> int:
    if value in (None, ""):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _parse_bool(value: Any, default: bool = False) -> bool:
    if value in (None, ""):
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on", "enable", "enabled"}:
            return True
        if normalized in {"0", "false", "no", "off", "disable", "disabled"}:
            return False
    return default


def _get_setting(settings: Mapping[str, Any], key: str, env_var: str, default: Any = None) -> Any:
    value = settings.get(key)
    if value not in (None, ""):
        return value
    env_value = os.getenv(env_var)
    if env_value not in (None, ""):
        return env_value
    return default


@dataclass
class UserSettings:
    """Persisted preferences the lifecycle controller reads but never writes."""

    auto_start_server: bool = True
    auto_stop_server: bool = True
    server_timeout_minutes: float = DEFAULT_SERVER_TIMEOUT_MINUTES
    max_chat_history: int = DEFAULT_MAX_CHAT_HISTORY
    default_runtime: str | None = None

    @property
    def server_timeout_seconds(self) -> float:
        return float(self.server_timeout_minutes) * 60.0

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "UserSettings":
        default_runtime = data.get("default_runtime")
        return cls(
            auto_start_server=_parse_bool(data.get("auto_start_server"), True),
            auto_stop_server=_parse_bool(data.get("auto_stop_server"), True),
            server_timeout_minutes=_parse_float(
                data.get("server_timeout_minutes"),
                DEFAULT_SERVER_TIMEOUT_MINUTES,
            ),
            max_chat_history=max(1, _parse_int(data.get("max_chat_history"), DEFAULT_MAX_CHAT_HISTORY)),
            default_runtime=str(default_runtime) if default_runtime else None,
        )

    def to_mapping(self) -> dict[str, Any]:
        return {
            "auto_start_server": self.auto_start_server,
            "auto_stop_server": self.auto_stop_server,
            "server_timeout_minutes": self.server_timeout_minutes,
            "max_chat_history": self.max_chat_history,
            "default_runtime": self.default_runtime,
        }

    @classmethod
    def load(cls) -> "UserSettings":
        return cls.from_mapping(load_settings())

    def save(self) -> None:
        """Merge these preferences into the settings file."""
        merged = dict(load_settings())
        merged.update(self.to_mapping())
        save_settings(merged)


@dataclass(frozen=True)
class RuntimeSettings:
    raw: dict[str, Any]
    server_host: str
    server_port: int
    backend: str
    server_args: list[str]
    temperature: float
    max_tokens: int
    probe_interval: float
    probe_attempts: int
    tick_interval: float
    model_repo: str
    model_file: str
    user: UserSettings

    @property
    def server_url(self) -> str:
        return f"http://{self.server_host}:{self.server_port}"

    @classmethod
    def load(cls) -> "RuntimeSettings":
        settings = load_settings()

        def getter(key: str, env: str, default: Any = None) -> Any:
            return _get_setting(settings, key, env, default)

        server_host = str(getter("server_host", "MERCURY_SERVER_HOST", DEFAULT_SERVER_HOST))
        server_port = _parse_int(getter("server_port", "MERCURY_SERVER_PORT"), DEFAULT_SERVER_PORT)
        backend = str(getter("backend", "MERCURY_BACKEND", "auto") or "auto").strip().lower()
        server_args = getter("server_args", "MERCURY_SERVER_ARGS", "")
        if isinstance(server_args, str):
            parsed_args: list[str] = shlex.split(server_args)
        elif isinstance(server_args, Sequence):
            parsed_args = [str(arg) for arg in server_args]
        else:
            parsed_args = []
        temperature = _parse_float(getter("temperature", "MERCURY_TEMPERATURE"), DEFAULT_TEMPERATURE)
        max_tokens = _parse_int(getter("max_tokens", "MERCURY_MAX_TOKENS"), DEFAULT_MAX_TOKENS)
        probe_interval = _parse_float(
            getter("probe_interval", "MERCURY_PROBE_INTERVAL"),
            READINESS_PROBE_INTERVAL,
        )
        probe_attempts = _parse_int(
            getter("probe_attempts", "MERCURY_PROBE_ATTEMPTS"),
            READINESS_PROBE_ATTEMPTS,
        )
        tick_interval = _parse_float(getter("tick_interval", "MERCURY_TICK_INTERVAL"), DEFAULT_TICK_INTERVAL)
        model_repo = str(getter("model_repo", "MERCURY_MODEL_REPO", DEFAULT_MODEL_REPO) or "").strip()
        model_file = str(getter("model_file", "MERCURY_MODEL_FILE", DEFAULT_MODEL_FILE) or "").strip()

        return cls(
            raw=settings,
            server_host=server_host,
            server_port=server_port,
            backend=backend,
            server_args=parsed_args,
            temperature=temperature,
            max_tokens=max_tokens,
            probe_interval=probe_interval,
            probe_attempts=probe_attempts,
            tick_interval=tick_interval,
            model_repo=model_repo,
            model_file=model_file,
            user=UserSettings.from_mapping(settings),
        )


def clear_settings_cache() -> None:
    """Reset the cached settings loader."""
    load_settings.cache_clear()


__all__ = ["RuntimeSettings", "UserSettings", "clear_settings_cache"]
