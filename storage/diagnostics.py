"""Diagnostics routines for the storage subsystem."""

from __future__ import annotations

from pathlib import Path
import sqlite3

from diagnostics.models import DiagnosticResult, DiagnosticStatus


EXPECTED_TABLES = {"instances", "daily_stats", "state_transitions", "crash_events"}


def probe(base_dir: Path | None = None) -> DiagnosticResult:
    """Create the fleet schema in a scratch database next to the real one.

    Args:
        base_dir: Optional base directory for offline testing.

    Returns:
        Diagnostic result indicating storage readiness.
    """

    from config.settings import resolve_db_path, resolve_log_path
    from storage.fleet_store import FleetStore

    name = "storage"
    if base_dir is None:
        db_dir = resolve_db_path().parent
        log_dir = resolve_log_path().parent
    else:
        db_dir = base_dir / "var"
        log_dir = base_dir / "log"

    scratch = db_dir / "diagnostics_probe.db"
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        if not log_dir.is_dir():
            raise OSError(f"{log_dir} is not a directory")

        store = FleetStore(scratch)
        try:
            conn = sqlite3.connect(scratch)
            try:
                tables = {
                    row[0]
                    for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
                }
            finally:
                conn.close()
        finally:
            store.close()
    except OSError as exc:
        return DiagnosticResult(
            name=name,
            status=DiagnosticStatus.FAIL,
            details=f"Filesystem access failed: {exc}",
        )
    except sqlite3.Error as exc:
        return DiagnosticResult(
            name=name,
            status=DiagnosticStatus.FAIL,
            details=f"SQLite probe failed: {exc}",
        )
    finally:
        scratch.unlink(missing_ok=True)

    missing = EXPECTED_TABLES - tables
    if missing:
        return DiagnosticResult(
            name=name,
            status=DiagnosticStatus.FAIL,
            details=f"Schema incomplete, missing: {', '.join(sorted(missing))}",
        )
    return DiagnosticResult(
        name=name,
        status=DiagnosticStatus.PASS,
        details=f"Fleet database writable at {db_dir}",
    )
