"""Helpers for resolving the on-disk layout used by the runtime."""

from __future__ import annotations

import os
from pathlib import Path

from app.constants import LOGS_DIRNAME, MODELS_DIRNAME, RUNTIME_BIN_DIRNAME, SETTINGS_FILENAME


def data_dir() -> Path:
    """Return the root directory holding runtimes, models, logs and settings."""
    override = os.getenv("MERCURY_DATA_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".mercury-lm"


def runtime_dir() -> Path:
    return data_dir()


def runtime_bin_dir() -> Path:
    """Directory the runtime archive is unpacked into."""
    return runtime_dir() / RUNTIME_BIN_DIRNAME


def models_dir() -> Path:
    override = os.getenv("MERCURY_MODELS_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return data_dir() / MODELS_DIRNAME


def log_dir() -> Path:
    override = os.getenv("MERCURY_LOG_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return data_dir() / LOGS_DIRNAME


def settings_path() -> Path:
    """Return the settings file location, honouring MERCURY_SETTINGS_PATH."""
    override = os.getenv("MERCURY_SETTINGS_PATH", "").strip()
    if override:
        return Path(override).expanduser()
    return data_dir() / SETTINGS_FILENAME


def ensure_layout() -> None:
    """Create the data and models directories if they are missing."""
    data_dir().mkdir(parents=True, exist_ok=True)
    models_dir().mkdir(parents=True, exist_ok=True)


__all__ = [
    "data_dir",
    "ensure_layout",
    "log_dir",
    "models_dir",
    "runtime_bin_dir",
    "runtime_dir",
    "settings_path",
]
