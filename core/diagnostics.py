"""Diagnostics routines for the core subsystem."""

from __future__ import annotations

import importlib.util

from diagnostics.models import DiagnosticResult, DiagnosticStatus


def probe() -> DiagnosticResult:
    """Check logger setup and that the clock produces usable day keys.

    Returns:
        Diagnostic result indicating core readiness.
    """

    name = "core"
    from core import logging as core_logging
    from core.clock import SystemClock, day_key

    if core_logging.logger is None:
        return DiagnosticResult(
            name=name,
            status=DiagnosticStatus.FAIL,
            details="Core logger failed to initialize",
        )

    today = day_key(SystemClock().time())
    rich_available = importlib.util.find_spec("rich") is not None
    logging_details = "Rich logging enabled" if rich_available else "Rich logging not available (fallback)"
    return DiagnosticResult(
        name=name,
        status=DiagnosticStatus.PASS if rich_available else DiagnosticStatus.WARN,
        details=f"{logging_details}; today is {today} UTC",
    )
