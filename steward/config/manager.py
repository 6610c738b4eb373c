"""Layered steward configuration and hot reload into a running engine."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, ClassVar

from steward.config.loader import YAMLConfigLoader
from steward.config.models import StewardConfig

ConfigListener = Callable[[StewardConfig, StewardConfig], None]

logger = logging.getLogger(__name__)

# Spellings the CLI and migrations already use, outside the nested STEWARD_SECTION__KEY scheme.
_ENV_ALIASES: dict[str, tuple[str, ...]] = {
    "STEWARD_DATABASE_URL": ("database", "url"),
}

# Config path -> part of a running engine that picks the change up in apply_config.
HOT_PATHS: dict[str, str] = {
    "budget": "daily ceilings",
    "approval": "approval deadlines and reaper",
    "classifier": "denial-rate window",
    "rules": "seed rules",
    "api.reviewers": "reviewer roles",
    "api.reviewer_tiers": "reviewer roles",
    "api.admins": "admin roles",
    "logging": "log level",
}


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged: dict[str, Any] = dict(base)
    for key, value in updates.items():
        if (
            key in merged
            and isinstance(merged[key], dict)
            and isinstance(value, dict)
        ):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _coerce_env_value(raw: str) -> Any:
    value = raw.strip()
    lowered = value.lower()
    if lowered in {"true", "false"}:
        return lowered == "true"
    if lowered in {"null", "none"}:
        return None
    try:
        if "." in value:
            return float(value)
        return int(value)
    except ValueError:
        pass
    if value.startswith("[") or value.startswith("{"):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


def _collect_env_overrides(prefix: str = "STEWARD_") -> dict[str, Any]:
    """STEWARD_SECTION__KEY=value becomes {"section": {"key": value}}."""
    overrides: dict[str, Any] = {}
    for key, raw_value in os.environ.items():
        if key in _ENV_ALIASES:
            _set_path(overrides, ".".join(_ENV_ALIASES[key]), raw_value.strip())
            continue
        if not key.startswith(prefix):
            continue
        path = [p.strip().lower() for p in key[len(prefix) :].split("__") if p.strip()]
        if path:
            _set_path(overrides, ".".join(path), _coerce_env_value(raw_value))
    return overrides


def _dict_diff(old: dict[str, Any], new: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    changes: dict[str, Any] = {}
    keys = set(old.keys()) | set(new.keys())
    for key in keys:
        path = f"{prefix}.{key}" if prefix else key
        old_val = old.get(key)
        new_val = new.get(key)
        if isinstance(old_val, dict) and isinstance(new_val, dict):
            changes.update(_dict_diff(old_val, new_val, path))
            continue
        if old_val != new_val:
            changes[path] = new_val
    return changes


def _set_path(target: dict[str, Any], path: str, value: Any) -> None:
    parts = [p for p in path.split(".") if p]
    if not parts:
        return
    cursor = target
    for part in parts[:-1]:
        existing = cursor.get(part)
        if not isinstance(existing, dict):
            existing = {}
            cursor[part] = existing
        cursor = existing
    cursor[parts[-1]] = value


def _get_path(source: dict[str, Any], path: str) -> Any:
    cursor: Any = source
    for part in path.split("."):
        cursor = cursor[part]
    return cursor


def _hot_path(path: str) -> str | None:
    """The :data:`HOT_PATHS` entry covering a changed config path, if any."""
    for prefix in HOT_PATHS:
        if path == prefix or path.startswith(prefix + "."):
            return prefix
    return None


@dataclass(frozen=True)
class ReloadResult:
    """Result for configuration hot reload."""

    applied: dict[str, Any]
    skipped: dict[str, Any]

    @property
    def engine_sections(self) -> list[str]:
        """Engine settings the applied changes touched, in :data:`HOT_PATHS` order."""
        touched = {HOT_PATHS[prefix] for prefix in map(_hot_path, self.applied) if prefix is not None}
        return [label for label in dict.fromkeys(HOT_PATHS.values()) if label in touched]


class ConfigManager:
    """Thread-safe singleton for typed configuration access."""

    _instance: ClassVar[ConfigManager | None] = None
    _class_lock: ClassVar[Lock] = Lock()

    def __init__(self) -> None:
        self._lock = Lock()
        self._config = StewardConfig()
        self._listeners: list[ConfigListener] = []
        self._config_path: str | None = None
        self._runtime_overrides: dict[str, Any] = {}

    @classmethod
    def instance(cls) -> ConfigManager:
        """Get singleton instance."""
        if cls._instance is not None:
            return cls._instance
        with cls._class_lock:
            if cls._instance is None:
                cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset_for_tests(cls) -> None:
        """Reset singleton state for isolated unit tests."""
        with cls._class_lock:
            cls._instance = None

    @staticmethod
    def _build(config_path: str | None, runtime_overrides: dict[str, Any]) -> StewardConfig:
        yaml_data = YAMLConfigLoader.load_dict(config_path)
        merged = _deep_merge(yaml_data, _collect_env_overrides())
        merged = _deep_merge(merged, runtime_overrides)
        return StewardConfig.model_validate(merged)

    @classmethod
    def load(
        cls,
        config_path: str | None = None,
        overrides: dict[str, Any] | None = None,
    ) -> ConfigManager:
        """Load configuration from defaults + YAML + env + runtime overrides."""
        manager = cls.instance()
        runtime_overrides = overrides or {}
        new_config = cls._build(config_path, runtime_overrides)
        with manager._lock:
            old = manager._config
            manager._config = new_config
            manager._config_path = config_path
            manager._runtime_overrides = runtime_overrides
            listeners = list(manager._listeners)
        for callback in listeners:
            callback(old, new_config)
        logger.info("config loaded from %s (%d rule seeds)", config_path or "defaults", len(new_config.rules))
        return manager

    def get(self) -> StewardConfig:
        """Return current config snapshot."""
        with self._lock:
            return self._config

    def on_change(self, callback: ConfigListener) -> None:
        """Register change listener."""
        with self._lock:
            self._listeners.append(callback)

    def reload(self, config_path: str | None = None) -> ReloadResult:
        """Reload config and hand the engine-facing changes to listeners.

        Changes under :data:`HOT_PATHS` are applied; everything else (database,
        API bind address, tokens, retry and audit settings) waits for a restart.
        A touched hot path is replaced wholesale so removed entries, such as an
        owner ceiling or a reviewer tier, disappear too.
        """
        with self._lock:
            old_cfg = self._config
            current_path = self._config_path
            runtime_overrides = dict(self._runtime_overrides)
            listeners = list(self._listeners)

        target_path = config_path if config_path is not None else current_path
        candidate = self._build(target_path, runtime_overrides)

        old_dump = old_cfg.model_dump(mode="python")
        new_dump = candidate.model_dump(mode="python")
        changes = _dict_diff(old_dump, new_dump)

        applied: dict[str, Any] = {}
        skipped: dict[str, Any] = {}
        touched: set[str] = set()
        for path, value in changes.items():
            prefix = _hot_path(path)
            if prefix is None:
                skipped[path] = value
                continue
            applied[path] = value
            touched.add(prefix)

        next_cfg = old_cfg
        if touched:
            next_dump = old_cfg.model_dump(mode="python")
            for prefix in touched:
                _set_path(next_dump, prefix, _get_path(new_dump, prefix))
            next_cfg = StewardConfig.model_validate(next_dump)
        with self._lock:
            self._config = next_cfg
            self._config_path = target_path
        result = ReloadResult(applied=applied, skipped=skipped)
        if touched:
            for callback in listeners:
                callback(old_cfg, next_cfg)
            logger.info("config reloaded into engine: %s", ", ".join(result.engine_sections))
        if skipped:
            logger.warning("config changes need a restart: %s", ", ".join(sorted(skipped)))
        return result
