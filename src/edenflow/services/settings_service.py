from __future__ import annotations

import threading
from typing import Any

from ..config import _deep_copy, _deep_merge
from ..errors import ValidationError
from ..quality import DEFAULT_GENERATION_RULES, DEFAULT_SCORING, DEFAULT_THRESHOLDS
from ..storage import get_account_setting, get_account_setting_stamp, set_account_setting

DEFAULT_ACCOUNT_SETTINGS: dict[str, dict[str, Any]] = {
    "content_quality": {
        "thresholds": dict(DEFAULT_THRESHOLDS),
        "scoring": dict(DEFAULT_SCORING),
        "generation_rules": dict(DEFAULT_GENERATION_RULES),
        "ui_display": {
            "show_quality_warnings": True,
            "show_quality_scores": True,
            "highlight_poor_quality": True,
            "disable_regenerate_on_poor_quality": True,
        },
    },
    "prompt_templates": {
        "template_preferences": {
            "default_temperature": 0.7,
            "default_max_tokens": 2000,
        },
        "generation_limits": {
            "max_concurrent_generations": 3,
            "daily_generation_limit": 100,
            "enable_rate_limiting": True,
        },
    },
    "image_generation": {
        "defaults": {
            "enabled": True,
            "orientation": "landscape",
            "per_page": 5,
        },
        "quality_requirements": {
            "min_width": 1200,
            "min_height": 630,
        },
    },
}

SETTING_TYPES = tuple(DEFAULT_ACCOUNT_SETTINGS.keys())


class SettingsCache:
    """Read-mostly cache of merged account settings.

    Entries are keyed to the ``updated_at`` of the stored row, so a change
    written by another process is picked up on the next read. Writers in this
    process still call ``invalidate``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, str], tuple[str | None, dict[str, Any]]] = {}

    def get(
        self, account_id: str, setting_type: str, stamp: str | None = None
    ) -> dict[str, Any] | None:
        with self._lock:
            entry = self._entries.get((account_id, setting_type))
            if entry is None or entry[0] != stamp:
                return None
            return _deep_copy(entry[1])

    def put(
        self, account_id: str, setting_type: str, value: dict[str, Any], stamp: str | None = None
    ) -> None:
        with self._lock:
            self._entries[(account_id, setting_type)] = (stamp, _deep_copy(value))

    def invalidate(self, account_id: str | None = None) -> None:
        with self._lock:
            if account_id is None:
                self._entries.clear()
                return
            for key in [key for key in self._entries if key[0] == account_id]:
                del self._entries[key]


def get_settings(
    conn: Any,
    account_id: str,
    setting_type: str,
    cache: SettingsCache | None = None,
) -> dict[str, Any]:
    _check_type(setting_type)
    stamp = None
    if cache is not None:
        stamp = get_account_setting_stamp(conn, account_id, setting_type)
        cached = cache.get(account_id, setting_type, stamp)
        if cached is not None:
            return cached
    stored = get_account_setting(conn, account_id, setting_type) or {}
    merged = _deep_merge(_deep_copy(DEFAULT_ACCOUNT_SETTINGS[setting_type]), stored)
    if cache is not None:
        cache.put(account_id, setting_type, merged, stamp)
    return merged


def get_all_settings(
    conn: Any, account_id: str, cache: SettingsCache | None = None
) -> dict[str, dict[str, Any]]:
    return {name: get_settings(conn, account_id, name, cache) for name in SETTING_TYPES}


def update_settings(
    conn: Any,
    account_id: str,
    setting_type: str,
    value: dict[str, Any],
    updated_by: str | None = None,
    cache: SettingsCache | None = None,
) -> dict[str, Any]:
    _check_type(setting_type)
    if not isinstance(value, dict):
        raise ValidationError("settings must be an object")
    errors: list[str] = []
    _validate_partial(value, DEFAULT_ACCOUNT_SETTINGS[setting_type], setting_type, errors)
    if errors:
        raise ValidationError("; ".join(errors))
    current = get_account_setting(conn, account_id, setting_type) or {}
    merged = _deep_merge(current, value)
    set_account_setting(conn, account_id, setting_type, merged, updated_by)
    if cache is not None:
        cache.invalidate(account_id)
    return get_settings(conn, account_id, setting_type)


def generation_limits(conn: Any, account_id: str, cache: SettingsCache | None = None) -> dict[str, Any]:
    return get_settings(conn, account_id, "prompt_templates", cache)["generation_limits"]


def _check_type(setting_type: str) -> None:
    if setting_type not in DEFAULT_ACCOUNT_SETTINGS:
        raise ValidationError(f"unknown_setting_type {setting_type}")


def _validate_partial(value: Any, schema: Any, path: str, errors: list[str]) -> None:
    if isinstance(schema, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        for key, item in value.items():
            if key not in schema:
                errors.append(f"unknown {path}.{key}")
                continue
            _validate_partial(item, schema[key], f"{path}.{key}", errors)
        return
    if isinstance(schema, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(schema, (int, float)):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append(f"{path} must be a number")
        return
    if isinstance(schema, str) and not isinstance(value, str):
        errors.append(f"{path} must be a string")
