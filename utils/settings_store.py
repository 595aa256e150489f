"""In-memory cache for app settings with environment overrides."""

from __future__ import annotations

import os
import threading
from typing import Any

from utils.file_utils import load_json
from utils.log_utils import tprint

SETTINGS_PATH = "config/app_settings.json"

# settings key -> environment variable that overrides it
_ENV_OVERRIDES = {
    "log_level": "GESTURE_LOG_LEVEL",
    "bridge_command_timeout_ms": "BRIDGE_COMMAND_TIMEOUT_MS",
    "bridge_ping_interval_ms": "BRIDGE_PING_INTERVAL_MS",
    "user_id": "GESTURE_USER_ID",
    "api_host": "GESTURE_API_HOST",
    "api_port": "GESTURE_API_PORT",
}

_DEFAULTS: dict[str, Any] = {
    "log_level": "INFO",
    "bridge_command_timeout_ms": 15_000,
    "bridge_ping_interval_ms": 10_000,
    "user_id": "default",
    "api_host": "127.0.0.1",
    "api_port": 4173,
    "http_access_log": False,
}

_lock = threading.Lock()
_settings_cache: dict[str, Any] = {}


def refresh_settings(path: str = SETTINGS_PATH) -> dict[str, Any]:
    """Reload settings from disk and env, then replace the cache."""
    try:
        data = load_json(path)
    except (OSError, ValueError) as exc:
        tprint(f"[SETTINGS][WARN] Ignoring unreadable {path}: {exc}")
        data = {}
    if not isinstance(data, dict):
        data = {}
    merged = dict(_DEFAULTS)
    merged.update(data)
    for key, env_name in _ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is not None and raw.strip():
            merged[key] = raw.strip()
    with _lock:
        _settings_cache.clear()
        _settings_cache.update(merged)
        return dict(_settings_cache)


def get_settings() -> dict[str, Any]:
    """Return a copy of the cached settings."""
    with _lock:
        cached = dict(_settings_cache)
    if not cached:
        return refresh_settings()
    return cached


def get_int_setting(key: str, default: int) -> int:
    """Read an integer setting, falling back to ``default`` on bad input."""
    raw = get_settings().get(key, default)
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def is_deep_logging() -> bool:
    """Return True when log_level requests deep tracing."""
    level = str(get_settings().get("log_level", "")).upper()
    return level in {"DEEP"}


def deep_log(message: str) -> None:
    if is_deep_logging():
        tprint(message)


def bridge_timeout_secs() -> float:
    return get_int_setting("bridge_command_timeout_ms", 15_000) / 1000.0


def bridge_ping_interval_secs() -> float:
    return get_int_setting("bridge_ping_interval_ms", 10_000) / 1000.0
