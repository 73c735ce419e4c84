"""Typed settings built from the loaded YAML configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Any, Mapping

from config.controller import ConfigController
from core.fleet_models import BatchStrategy, WorkerNode


def _section(config: Mapping[str, Any] | None, name: str) -> Mapping[str, Any]:
    if config is None:
        config = ConfigController.get_instance().get_config()
    section = config.get(name)
    return section if isinstance(section, Mapping) else {}


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


@dataclass(frozen=True)
class WarningStep:
    """One broadcast command of the pre-reboot warning sequence."""

    command: str
    delay_s: float


DEFAULT_WARNING_STEPS = (
    WarningStep("say SCHEDULED REBOOT INCOMING NEXT 15 MINUTES. This process is automated.", 300.0),
    WarningStep("say SCHEDULED REBOOT INCOMING NEXT 10 MINUTES. This process is automated.", 300.0),
    WarningStep("say SCHEDULED REBOOT INCOMING NEXT 5 MINUTES. This process is automated.", 120.0),
    WarningStep("say SCHEDULED REBOOT INCOMING NEXT 3 MINUTES. This process is automated.", 120.0),
    WarningStep("say SCHEDULED REBOOT INCOMING NEXT ONE MINUTE. This process is automated.", 45.0),
    WarningStep("say SCHEDULED REBOOT INCOMING NEXT 15 SECONDS. FINAL SAY", 15.0),
    WarningStep("save-all", 45.0),
)

DEFAULT_FALLBACK_NODES = (
    WorkerNode(id="lithium-fallback", name="Lithium (Fallback)", capacity=4),
    WorkerNode(id="uranium-fallback", name="Uranium (Fallback)", capacity=4),
    WorkerNode(id="neptunium-fallback", name="Neptunium (Fallback)", capacity=4),
)


@dataclass(frozen=True)
class RebootSettings:
    """Settings for the reboot orchestrator and job executor."""

    enabled: bool = True
    interval_s: float = 300.0
    player_threshold: int = 25
    max_concurrent_per_node: int = 4
    retry_limit: int = 3
    retry_backoff_s: float = 10.0
    startup_timeout_s: float = 20 * 60.0
    max_job_duration_s: float = 45 * 60.0
    stop_timeout_s: float = 60.0
    stop_attempts: int = 3
    batching_strategy: BatchStrategy = BatchStrategy.AUTO
    max_batch_size: int = 12
    batch_cooldown_s: float = 30.0
    sub_batch_pause_s: float = 5.0
    excluded_tags: frozenset[str] = frozenset({"BINGO", "ALP", "PLUS"})
    exclude_early_access: bool = True
    min_uptime_hours: float = 6.0
    utc_offset_hours: float = 3.0
    window_start_hour: int | None = None
    window_end_hour: int | None = None
    default_node_capacity: int = 4
    fallback_nodes: tuple[WorkerNode, ...] = DEFAULT_FALLBACK_NODES
    warning_steps: tuple[WarningStep, ...] = DEFAULT_WARNING_STEPS

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None = None) -> "RebootSettings":
        cfg = _section(config, "reboot")
        defaults = cls()

        strategy_name = str(cfg.get("batching_strategy", defaults.batching_strategy.value)).lower()
        try:
            strategy = BatchStrategy(strategy_name)
        except ValueError:
            strategy = BatchStrategy.AUTO

        capacity = int(cfg.get("default_node_capacity", defaults.default_node_capacity))
        fallback_nodes = defaults.fallback_nodes
        if isinstance(cfg.get("fallback_nodes"), list):
            fallback_nodes = tuple(
                WorkerNode(
                    id=str(node["id"]),
                    name=str(node.get("name", node["id"])),
                    capacity=int(node.get("capacity", capacity)),
                )
                for node in cfg["fallback_nodes"]
                if isinstance(node, Mapping) and node.get("id")
            )

        warning_steps = defaults.warning_steps
        if isinstance(cfg.get("warning_steps"), list):
            warning_steps = tuple(
                WarningStep(command=str(step["command"]), delay_s=float(step.get("delay_s", 0.0)))
                for step in cfg["warning_steps"]
                if isinstance(step, Mapping) and step.get("command")
            )

        excluded = cfg.get("excluded_tags")
        excluded_tags = (
            frozenset(str(tag) for tag in excluded)
            if isinstance(excluded, list)
            else defaults.excluded_tags
        )

        return cls(
            enabled=bool(cfg.get("enabled", defaults.enabled)),
            interval_s=max(1.0, float(cfg.get("interval_s", defaults.interval_s))),
            player_threshold=int(cfg.get("player_threshold", defaults.player_threshold)),
            max_concurrent_per_node=max(
                1, int(cfg.get("max_concurrent_per_node", defaults.max_concurrent_per_node))
            ),
            retry_limit=max(1, int(cfg.get("retry_limit", defaults.retry_limit))),
            retry_backoff_s=float(cfg.get("retry_backoff_s", defaults.retry_backoff_s)),
            startup_timeout_s=float(cfg.get("startup_timeout_min", 20)) * 60.0,
            max_job_duration_s=float(cfg.get("max_job_duration_min", 45)) * 60.0,
            stop_timeout_s=float(cfg.get("stop_timeout_s", defaults.stop_timeout_s)),
            stop_attempts=max(1, int(cfg.get("stop_attempts", defaults.stop_attempts))),
            batching_strategy=strategy,
            max_batch_size=max(1, int(cfg.get("max_batch_size", defaults.max_batch_size))),
            batch_cooldown_s=float(cfg.get("batch_cooldown_s", defaults.batch_cooldown_s)),
            sub_batch_pause_s=float(cfg.get("sub_batch_pause_s", defaults.sub_batch_pause_s)),
            excluded_tags=excluded_tags,
            exclude_early_access=bool(
                cfg.get("exclude_early_access", defaults.exclude_early_access)
            ),
            min_uptime_hours=float(cfg.get("min_uptime_hours", defaults.min_uptime_hours)),
            utc_offset_hours=float(cfg.get("utc_offset_hours", defaults.utc_offset_hours)),
            window_start_hour=_optional_int(cfg.get("window_start_hour")),
            window_end_hour=_optional_int(cfg.get("window_end_hour")),
            default_node_capacity=capacity,
            fallback_nodes=fallback_nodes,
            warning_steps=warning_steps,
        )


@dataclass(frozen=True)
class CrashDetectionSettings:
    """Settings for the crash detector, all durations in seconds."""

    enabled: bool = True
    poll_interval_s: float = 30.0
    cleanup_interval_s: float = 300.0
    history_retention_s: float = 30 * 60.0
    crash_loop_threshold: int = 3
    crash_loop_window_s: float = 10 * 60.0
    starting_timeout_s: float = 15 * 60.0
    minimum_uptime_before_crash_s: float = 2 * 60.0
    recently_crashed_s: float = 5 * 60.0
    recovery_notify_min_crashes: int = 2

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None = None) -> "CrashDetectionSettings":
        cfg = _section(config, "crash_detection")
        defaults = cls()
        return cls(
            enabled=bool(cfg.get("enabled", defaults.enabled)),
            poll_interval_s=float(cfg.get("poll_interval_s", defaults.poll_interval_s)),
            cleanup_interval_s=float(cfg.get("cleanup_interval_s", defaults.cleanup_interval_s)),
            history_retention_s=float(cfg.get("history_retention_min", 30)) * 60.0,
            crash_loop_threshold=max(
                1, int(cfg.get("crash_loop_threshold", defaults.crash_loop_threshold))
            ),
            crash_loop_window_s=float(cfg.get("crash_loop_window_min", 10)) * 60.0,
            starting_timeout_s=float(cfg.get("starting_timeout_min", 15)) * 60.0,
            minimum_uptime_before_crash_s=float(cfg.get("minimum_uptime_before_crash_min", 2))
            * 60.0,
            recently_crashed_s=float(cfg.get("recently_crashed_min", 5)) * 60.0,
            recovery_notify_min_crashes=int(
                cfg.get("recovery_notify_min_crashes", defaults.recovery_notify_min_crashes)
            ),
        )


@dataclass(frozen=True)
class TelemetrySettings:
    """Settings for live telemetry subscriptions."""

    stale_after_s: float = 30.0
    reconnect_delay_s: float = 5.0
    poll_interval_s: float = 5.0

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None = None) -> "TelemetrySettings":
        cfg = _section(config, "telemetry")
        defaults = cls()
        return cls(
            stale_after_s=float(cfg.get("stale_after_s", defaults.stale_after_s)),
            reconnect_delay_s=float(cfg.get("reconnect_delay_s", defaults.reconnect_delay_s)),
            poll_interval_s=max(0.1, float(cfg.get("poll_interval_s", defaults.poll_interval_s))),
        )


@dataclass(frozen=True)
class NotifierSettings:
    """Settings for outbound notifications."""

    webhooks: Mapping[str, str] = field(default_factory=dict)
    timeout_s: float = 10.0
    cooldown_s: float = 60.0
    rate_limit_max: int = 3
    rate_limit_window_s: float = 60.0
    retry_attempts: int = 3
    retry_delay_s: float = 2.0
    breaker_threshold: int = 5
    breaker_reset_s: float = 300.0

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None = None) -> "NotifierSettings":
        cfg = _section(config, "notifications")
        alerts_cfg = _section(config, "alerts")
        defaults = cls()
        webhooks: dict[str, str] = {}
        for audience, env_name in dict(cfg.get("webhook_envs") or {}).items():
            url = os.getenv(str(env_name), "").strip()
            if url:
                webhooks[str(audience)] = url
        for audience, url in dict(cfg.get("webhooks") or {}).items():
            if url:
                webhooks[str(audience)] = str(url)
        return cls(
            webhooks=webhooks,
            timeout_s=float(cfg.get("timeout_s", defaults.timeout_s)),
            cooldown_s=float(alerts_cfg.get("cooldown_s", defaults.cooldown_s)),
            rate_limit_max=int(cfg.get("rate_limit_max", defaults.rate_limit_max)),
            rate_limit_window_s=float(cfg.get("rate_limit_window_s", defaults.rate_limit_window_s)),
            retry_attempts=max(1, int(cfg.get("retry_attempts", defaults.retry_attempts))),
            retry_delay_s=float(cfg.get("retry_delay_s", defaults.retry_delay_s)),
            breaker_threshold=max(1, int(cfg.get("breaker_threshold", defaults.breaker_threshold))),
            breaker_reset_s=float(cfg.get("breaker_reset_s", defaults.breaker_reset_s)),
        )


@dataclass(frozen=True)
class PanelSettings:
    """Connection settings for the control-plane API."""

    base_url: str = ""
    client_key: str = ""
    application_key: str = ""
    timeout_s: float = 15.0

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None = None) -> "PanelSettings":
        cfg = _section(config, "panel")
        base_url = str(cfg.get("base_url") or os.getenv(str(cfg.get("base_url_env", "PANEL_URL")), ""))
        return cls(
            base_url=base_url.strip().rstrip("/"),
            client_key=os.getenv(str(cfg.get("client_key_env", "PANEL_CLIENT_KEY")), "").strip(),
            application_key=os.getenv(
                str(cfg.get("application_key_env", "PANEL_APPLICATION_KEY")), ""
            ).strip(),
            timeout_s=max(1.0, float(cfg.get("timeout_s", 15.0))),
        )


@dataclass(frozen=True)
class MetricsSettings:
    """Where to read the aggregate player load from."""

    players_url: str = ""
    timeout_s: float = 10.0

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None = None) -> "MetricsSettings":
        cfg = _section(config, "metrics")
        url = str(
            cfg.get("players_url") or os.getenv(str(cfg.get("players_url_env", "PROXY_METRICS_URL")), "")
        )
        return cls(players_url=url.strip(), timeout_s=float(cfg.get("timeout_s", 10.0)))


def resolve_db_path(config: Mapping[str, Any] | None = None) -> Path:
    storage_cfg = _section(config, "storage")
    return Path(str(storage_cfg.get("db_path", "./var/fleetwarden.db"))).expanduser()


def resolve_log_path(config: Mapping[str, Any] | None = None) -> Path:
    if config is None:
        config = ConfigController.get_instance().get_config()
    return Path(str(config.get("log_file", "./log/fleetwarden.log"))).expanduser()
