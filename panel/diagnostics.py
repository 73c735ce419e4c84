"""Diagnostics routines for the control-panel connection."""

from __future__ import annotations

import importlib.util

from config.settings import PanelSettings
from diagnostics.models import DiagnosticResult, DiagnosticStatus


def probe(
    settings: PanelSettings | None = None,
    require_websockets: bool = True,
) -> DiagnosticResult:
    """Check that panel credentials are configured and the stream library exists.

    Args:
        settings: Optional settings override for testing.
        require_websockets: Whether to require websockets availability.

    Returns:
        Diagnostic result indicating panel readiness.
    """

    name = "panel"
    resolved = settings or PanelSettings.from_config()
    if not resolved.base_url:
        return DiagnosticResult(
            name=name,
            status=DiagnosticStatus.FAIL,
            details="Missing panel URL",
        )
    if not resolved.client_key:
        return DiagnosticResult(
            name=name,
            status=DiagnosticStatus.FAIL,
            details="Missing panel client API key",
        )

    if require_websockets and importlib.util.find_spec("websockets") is None:
        return DiagnosticResult(
            name=name,
            status=DiagnosticStatus.FAIL,
            details="Missing websockets dependency",
        )

    if not resolved.application_key:
        return DiagnosticResult(
            name=name,
            status=DiagnosticStatus.WARN,
            details="No application API key; node discovery will use fallback nodes",
        )

    return DiagnosticResult(
        name=name,
        status=DiagnosticStatus.PASS,
        details=f"Panel configured at {resolved.base_url}",
    )
