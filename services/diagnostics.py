"""Diagnostics routines for the services subsystem."""

from __future__ import annotations

from typing import Any, Mapping

from config.settings import MetricsSettings, NotifierSettings
from diagnostics.models import DiagnosticResult, DiagnosticStatus


def probe(config: Mapping[str, Any] | None = None) -> DiagnosticResult:
    """Check that the load source and notification sinks are configured.

    Args:
        config: Optional configuration mapping for offline testing.

    Returns:
        Diagnostic result indicating service readiness.
    """

    name = "services"
    metrics = MetricsSettings.from_config(config)
    notifier = NotifierSettings.from_config(config)

    if not metrics.players_url:
        return DiagnosticResult(
            name=name,
            status=DiagnosticStatus.FAIL,
            details="No player metrics URL; automatic triggers are disabled",
        )

    if not notifier.webhooks:
        return DiagnosticResult(
            name=name,
            status=DiagnosticStatus.WARN,
            details="No notification webhooks configured; alerts go to the log only",
        )

    return DiagnosticResult(
        name=name,
        status=DiagnosticStatus.PASS,
        details=f"Notification audiences: {', '.join(sorted(notifier.webhooks))}",
    )
