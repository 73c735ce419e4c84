"""Fleet services: telemetry, crash detection, reboot orchestration and alerts."""

__all__ = [
    "CrashDetector",
    "Notifier",
    "PlayerMetricsClient",
    "RebootJobExecutor",
    "RebootOrchestrator",
    "TelemetryMonitor",
]


def __getattr__(name: str):
    if name == "CrashDetector":
        from services.crash_detector import CrashDetector

        return CrashDetector
    if name == "Notifier":
        from services.notifier import Notifier

        return Notifier
    if name == "PlayerMetricsClient":
        from services.player_metrics import PlayerMetricsClient

        return PlayerMetricsClient
    if name == "RebootJobExecutor":
        from services.reboot_executor import RebootJobExecutor

        return RebootJobExecutor
    if name == "RebootOrchestrator":
        from services.reboot_orchestrator import RebootOrchestrator

        return RebootOrchestrator
    if name == "TelemetryMonitor":
        from services.telemetry_monitor import TelemetryMonitor

        return TelemetryMonitor
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
