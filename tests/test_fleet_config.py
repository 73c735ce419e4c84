"""Tests for config normalization and typed fleet settings."""

from __future__ import annotations

from pathlib import Path

import yaml

from config.controller import ConfigController
from config.settings import (
    CrashDetectionSettings,
    NotifierSettings,
    RebootSettings,
    resolve_db_path,
)
from core.fleet_models import BatchStrategy


def _reset_singletons() -> None:
    ConfigController._instance = None


def _write_config(tmp_path: Path, lines: list[str]) -> None:
    config_dir = tmp_path / "config"
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "default.yaml").write_text("\n".join(lines), encoding="utf-8")


def test_config_controller_maps_legacy_scheduler_keys(tmp_path: Path, monkeypatch) -> None:
    _write_config(
        tmp_path,
        [
            "rebootScheduler:",
            "  active: false",
            "  interval: 120",
            "  maxConcurrentReboots: 2",
            "  rebootRetryLimit: 5",
            "  serverStartupTimeout: 10",
            "  batchingStrategy: FIXED",
            "  maxBatchSize: 6",
            "  playerThreshold: 40",
            "crashMonitoring:",
            "  active: true",
            "  crashDetection:",
            "    historyRetentionTime: 60",
            "    crashLoopThreshold: 4",
            "    crashLoopTimeWindow: 20",
            "    startingTimeout: 5",
            "    minimumUptimeBeforeCrash: 3",
            "  notifications:",
            "    rateLimitWindow: 120",
            "    maxNotificationsPerWindow: 7",
        ],
    )
    monkeypatch.chdir(tmp_path)
    _reset_singletons()

    config = ConfigController.get_instance().get_config()
    assert "rebootScheduler" not in config
    assert config["reboot"]["enabled"] is False
    assert config["reboot"]["batching_strategy"] == "fixed"
    assert config["crash_detection"]["crash_loop_threshold"] == 4
    assert config["notifications"]["rate_limit_max"] == 7

    reboot = RebootSettings.from_config(config)
    assert reboot.enabled is False
    assert reboot.interval_s == 120.0
    assert reboot.max_concurrent_per_node == 2
    assert reboot.retry_limit == 5
    assert reboot.startup_timeout_s == 600.0
    assert reboot.batching_strategy is BatchStrategy.FIXED
    assert reboot.max_batch_size == 6
    assert reboot.player_threshold == 40

    crash = CrashDetectionSettings.from_config(config)
    assert crash.enabled is True
    assert crash.history_retention_s == 3600.0
    assert crash.crash_loop_threshold == 4
    assert crash.crash_loop_window_s == 1200.0
    assert crash.starting_timeout_s == 300.0
    assert crash.minimum_uptime_before_crash_s == 180.0

    notifier = NotifierSettings.from_config(config)
    assert notifier.rate_limit_window_s == 120.0
    assert notifier.rate_limit_max == 7


def test_modern_keys_win_over_legacy_keys(tmp_path: Path, monkeypatch) -> None:
    _write_config(
        tmp_path,
        [
            "reboot:",
            "  player_threshold: 10",
            "rebootScheduler:",
            "  playerThreshold: 99",
        ],
    )
    monkeypatch.chdir(tmp_path)
    _reset_singletons()

    assert RebootSettings.from_config().player_threshold == 10


def test_reboot_settings_defaults() -> None:
    settings = RebootSettings.from_config({})

    assert settings.enabled is True
    assert settings.interval_s == 300.0
    assert settings.player_threshold == 25
    assert settings.max_concurrent_per_node == 4
    assert settings.retry_limit == 3
    assert settings.startup_timeout_s == 20 * 60.0
    assert settings.batching_strategy is BatchStrategy.AUTO
    assert settings.max_batch_size == 12
    assert settings.excluded_tags == frozenset({"BINGO", "ALP", "PLUS"})
    assert settings.min_uptime_hours == 6.0
    assert [node.id for node in settings.fallback_nodes] == [
        "lithium-fallback",
        "uranium-fallback",
        "neptunium-fallback",
    ]
    assert settings.warning_steps[-1].command == "save-all"
    assert settings.warning_steps[-1].delay_s == 45.0


def test_reboot_settings_parse_lists_and_unknown_strategy() -> None:
    settings = RebootSettings.from_config(
        {
            "reboot": {
                "batching_strategy": "sideways",
                "excluded_tags": ["TEST"],
                "fallback_nodes": [{"id": "n1", "capacity": 2}, {"name": "no id"}],
                "warning_steps": [{"command": "say bye", "delay_s": 1}, {"delay_s": 5}],
            }
        }
    )

    assert settings.batching_strategy is BatchStrategy.AUTO
    assert settings.excluded_tags == frozenset({"TEST"})
    assert [(node.id, node.name, node.capacity) for node in settings.fallback_nodes] == [("n1", "n1", 2)]
    assert [(step.command, step.delay_s) for step in settings.warning_steps] == [("say bye", 1.0)]


def test_notifier_settings_resolve_webhooks_from_env(monkeypatch) -> None:
    monkeypatch.setenv("STAFF_HOOK", "https://hooks.example/staff")
    monkeypatch.delenv("SERVER_HOOK", raising=False)

    settings = NotifierSettings.from_config(
        {
            "notifications": {"webhook_envs": {"staff": "STAFF_HOOK", "server": "SERVER_HOOK"}},
            "alerts": {"cooldown_s": 5},
        }
    )

    assert dict(settings.webhooks) == {"staff": "https://hooks.example/staff"}
    assert settings.cooldown_s == 5.0


def test_update_section_persists_override(tmp_path: Path, monkeypatch) -> None:
    _write_config(tmp_path, ["reboot:", "  enabled: true", "  player_threshold: 25"])
    monkeypatch.chdir(tmp_path)
    _reset_singletons()

    controller = ConfigController.get_instance()
    controller.update_section("reboot", {"enabled": False})

    override = yaml.safe_load((tmp_path / "config" / "override.yaml").read_text(encoding="utf-8"))
    assert override == {"reboot": {"enabled": False}}
    assert controller.get_section("reboot") == {"enabled": False, "player_threshold": 25}

    _reset_singletons()
    assert RebootSettings.from_config().enabled is False


def test_default_yaml_matches_builtin_defaults() -> None:
    default_yaml = Path(__file__).resolve().parents[1] / "config" / "default.yaml"
    config = yaml.safe_load(default_yaml.read_text(encoding="utf-8"))

    from_yaml = RebootSettings.from_config(config)
    builtin = RebootSettings()
    assert from_yaml.player_threshold == builtin.player_threshold
    assert from_yaml.warning_steps == builtin.warning_steps
    assert from_yaml.fallback_nodes == builtin.fallback_nodes
    assert resolve_db_path(config).name.endswith(".db")


def test_second_update_archives_previous_override(tmp_path: Path, monkeypatch) -> None:
    _write_config(tmp_path, ["reboot:", "  enabled: true"])
    monkeypatch.chdir(tmp_path)
    _reset_singletons()

    controller = ConfigController.get_instance()
    controller.update_section("reboot", {"enabled": False})
    controller.update_section("reboot", {"player_threshold": 30})

    config_dir = tmp_path / "config"
    assert (config_dir / "override_0001.yaml").exists()
    override = yaml.safe_load((config_dir / "override.yaml").read_text(encoding="utf-8"))
    assert override == {"reboot": {"enabled": False, "player_threshold": 30}}
