"""Configuration controller for YAML-based settings."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Any

import yaml


# camelCase keys from the legacy JSON config, mapped onto the reboot section.
_LEGACY_REBOOT_KEYS = {
    "active": "enabled",
    "interval": "interval_s",
    "maxConcurrentReboots": "max_concurrent_per_node",
    "rebootRetryLimit": "retry_limit",
    "serverStartupTimeout": "startup_timeout_min",
    "batchingStrategy": "batching_strategy",
    "maxBatchSize": "max_batch_size",
    "playerThreshold": "player_threshold",
}

_LEGACY_CRASH_KEYS = {
    "historyRetentionTime": "history_retention_min",
    "crashLoopThreshold": "crash_loop_threshold",
    "crashLoopTimeWindow": "crash_loop_window_min",
    "startingTimeout": "starting_timeout_min",
    "stoppingTimeout": "stopping_timeout_min",
    "minimumUptimeBeforeCrash": "minimum_uptime_before_crash_min",
}

_LEGACY_NOTIFICATION_KEYS = {
    "rateLimitWindow": "rate_limit_window_s",
    "maxNotificationsPerWindow": "rate_limit_max",
}


CONFIG_DIR_ENV = "FLEETWARDEN_CONFIG_DIR"


def _read_yaml(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as file:
        loaded = yaml.safe_load(file) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"{path} must contain a mapping")
    return loaded


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively overlay ``override`` onto ``base`` without mutating either."""

    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


@dataclass(frozen=True)
class ConfigPaths:
    """Filesystem paths for configuration files."""

    config_dir: Path
    config_file: Path
    override_file: Path

    def archive_file(self, index: int) -> Path:
        return self.config_dir / f"override_{index:04d}.yaml"


class ConfigController:
    """Singleton holding the merged default and override configuration.

    ``default.yaml`` ships with the package; operator changes (for example
    enabling or disabling automatic reboots) land in ``override.yaml`` and the
    previous override is archived next to it.
    """

    _instance: "ConfigController | None" = None

    def __init__(self, config_file: str = "default.yaml") -> None:
        if ConfigController._instance is not None:
            raise RuntimeError("You cannot create another ConfigController class")

        config_dir = Path(os.getenv(CONFIG_DIR_ENV, "config"))
        self.paths = ConfigPaths(
            config_dir=config_dir,
            config_file=config_dir / config_file,
            override_file=config_dir / "override.yaml",
        )
        self.config: dict[str, Any] = {}
        self.load_config()

    @classmethod
    def get_instance(cls) -> "ConfigController":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def load_config(self) -> None:
        config = _read_yaml(self.paths.config_file)
        if self.paths.override_file.exists():
            config = deep_merge(config, self._read_override())
        self.config = self._normalize_legacy_config(config)

    def _read_override(self) -> dict[str, Any]:
        if not self.paths.override_file.exists():
            return {}
        return _read_yaml(self.paths.override_file)

    def get_config(self) -> dict[str, Any]:
        return dict(self.config)

    def get_section(self, section: str) -> dict[str, Any]:
        value = self.config.get(section)
        return dict(value) if isinstance(value, dict) else {}

    def save_override(self, override: dict[str, Any]) -> None:
        """Write ``override.yaml``, archiving the previous file first."""

        if self.paths.override_file.exists():
            index = 1
            while self.paths.archive_file(index).exists():
                index += 1
            self.paths.override_file.rename(self.paths.archive_file(index))
        with self.paths.override_file.open("w", encoding="utf-8") as file:
            yaml.safe_dump(override, file, sort_keys=True)

    def update_section(self, section: str, values: dict[str, Any]) -> None:
        """Persist ``values`` into one override section and reload."""

        override = self._read_override()
        current = override.get(section)
        merged = dict(current) if isinstance(current, dict) else {}
        merged.update(values)
        override[section] = merged
        self.save_override(override)
        self.load_config()

    def _normalize_legacy_config(self, config: dict[str, Any]) -> dict[str, Any]:
        """Normalize config while accepting the legacy camelCase scheduler keys."""

        normalized = dict(config)

        legacy_reboot = normalized.pop("rebootScheduler", None)
        reboot_cfg = dict(normalized.get("reboot") or {})
        if isinstance(legacy_reboot, dict):
            for legacy_key, key in _LEGACY_REBOOT_KEYS.items():
                if legacy_key in legacy_reboot and key not in reboot_cfg:
                    reboot_cfg[key] = legacy_reboot[legacy_key]
        if "batching_strategy" in reboot_cfg:
            reboot_cfg["batching_strategy"] = str(reboot_cfg["batching_strategy"]).lower()
        normalized["reboot"] = reboot_cfg

        legacy_crash = normalized.pop("crashMonitoring", None)
        crash_cfg = dict(normalized.get("crash_detection") or {})
        notification_cfg = dict(normalized.get("notifications") or {})
        if isinstance(legacy_crash, dict):
            if "active" in legacy_crash and "enabled" not in crash_cfg:
                crash_cfg["enabled"] = legacy_crash["active"] is not False
            detection = legacy_crash.get("crashDetection") or {}
            for legacy_key, key in _LEGACY_CRASH_KEYS.items():
                if legacy_key in detection and key not in crash_cfg:
                    crash_cfg[key] = detection[legacy_key]
            legacy_notifications = legacy_crash.get("notifications") or {}
            for legacy_key, key in _LEGACY_NOTIFICATION_KEYS.items():
                if legacy_key in legacy_notifications and key not in notification_cfg:
                    notification_cfg[key] = legacy_notifications[legacy_key]
        normalized["crash_detection"] = crash_cfg
        normalized["notifications"] = notification_cfg
        return normalized
