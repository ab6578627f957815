"""Utility helpers for loading and persisting the project settings file."""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any, Dict, Mapping

from app.config import settings_path
from app.errors import StorageError

logger = logging.getLogger("mercury.settings")


@lru_cache(maxsize=1)
def load_settings() -> Dict[str, Any]:
    """Load settings from the configured settings file if present."""
    config_path = settings_path()
    if not config_path.exists():
        return {}
    try:
        raw_text = config_path.read_text(encoding="utf-8")
        data = json.loads(raw_text)
    except Exception as exc:
        logger.warning("Failed to load settings file %s: %s", config_path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Settings file %s must contain a JSON object.", config_path)
        return {}
    return data


def save_settings(data: Mapping[str, Any]) -> None:
    """Write the settings mapping back to disk, replacing the cached copy."""
    config_path = settings_path()
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(json.dumps(dict(data), indent=2, sort_keys=True), encoding="utf-8")
    except OSError as exc:
        raise StorageError(f"could not write settings to {config_path}: {exc}") from exc
    load_settings.cache_clear()
    logger.info("Saved settings to %s", config_path)


__all__ = ["load_settings", "save_settings"]
