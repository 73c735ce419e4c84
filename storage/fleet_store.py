"""SQLite-backed storage for instances, daily reboot stats and crash history."""

from __future__ import annotations

import json
import logging
from pathlib import Path
import sqlite3
import threading
from typing import Iterable

import yaml

from config.settings import resolve_db_path
from core.fleet_models import (
    CrashEvent,
    CrashType,
    DailyRebootStats,
    InstanceState,
    ManagedInstance,
    StateTransition,
)


LOGGER = logging.getLogger(__name__)


def load_instances_file(path: Path) -> list[ManagedInstance]:
    """Read instance definitions from a YAML or JSON file.

    The document is either a list of entries or a mapping with an ``instances``
    list. Each entry needs ``id`` and ``tag``; ``name``, ``exclude_from_fleet``
    and ``early_access`` are optional.
    """

    with path.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle)
    if isinstance(payload, dict):
        payload = payload.get("instances")
    if not isinstance(payload, list):
        raise ValueError(f"{path} does not contain a list of instances")
    instances = []
    for entry in payload:
        if not isinstance(entry, dict):
            raise ValueError(f"Instance entry must be a mapping: {entry!r}")
        instances.append(ManagedInstance.from_dict(entry))
    return instances


class FleetStore:
    """Persist fleet metadata and reboot bookkeeping."""

    def __init__(self, db_path: Path | None = None) -> None:
        if db_path is None:
            db_path = resolve_db_path()
        db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db_path = db_path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._initialize_db()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _initialize_db(self) -> None:
        cursor = self._conn.cursor()
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS instances (
                instance_id TEXT PRIMARY KEY,
                tag TEXT NOT NULL,
                name TEXT,
                exclude_from_fleet INTEGER DEFAULT 0,
                early_access INTEGER DEFAULT 0
            )
            """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS daily_stats (
                date TEXT PRIMARY KEY,
                data JSON
            )
            """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS state_transitions (
                record_id INTEGER PRIMARY KEY AUTOINCREMENT,
                instance_id TEXT,
                from_state TEXT,
                to_state TEXT,
                timestamp REAL,
                uptime REAL
            )
            """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS crash_events (
                record_id INTEGER PRIMARY KEY AUTOINCREMENT,
                instance_id TEXT,
                type TEXT,
                timestamp REAL,
                metadata JSON
            )
            """
        )
        self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def get_instances(self) -> list[ManagedInstance]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT instance_id, tag, name, exclude_from_fleet, early_access
                FROM instances
                ORDER BY rowid
                """
            ).fetchall()
        return [
            ManagedInstance(
                id=str(row[0]),
                tag=str(row[1]),
                name=str(row[2] or ""),
                exclude_from_fleet=bool(row[3]),
                early_access=bool(row[4]),
            )
            for row in rows
        ]

    def upsert_instance(self, instance: ManagedInstance) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO instances (instance_id, tag, name, exclude_from_fleet, early_access)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(instance_id) DO UPDATE SET
                    tag = excluded.tag,
                    name = excluded.name,
                    exclude_from_fleet = excluded.exclude_from_fleet,
                    early_access = excluded.early_access
                """,
                (
                    instance.id,
                    instance.tag,
                    instance.name,
                    int(instance.exclude_from_fleet),
                    int(instance.early_access),
                ),
            )
            self._conn.commit()

    def upsert_instances(self, instances: Iterable[ManagedInstance]) -> None:
        for instance in instances:
            self.upsert_instance(instance)

    def get_daily_stats(self, date: str) -> DailyRebootStats | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT data FROM daily_stats WHERE date = ?",
                (date,),
            ).fetchone()
        if row is None:
            return None
        try:
            return DailyRebootStats.from_dict(json.loads(row[0]))
        except (json.JSONDecodeError, TypeError, ValueError) as exc:
            LOGGER.warning("[Store] Unreadable daily stats for %s: %s", date, exc)
            return None

    def put_daily_stats(self, stats: DailyRebootStats) -> None:
        payload = json.dumps(stats.to_dict())
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO daily_stats (date, data) VALUES (?, ?)
                ON CONFLICT(date) DO UPDATE SET data = excluded.data
                """,
                (stats.date, payload),
            )
            self._conn.commit()

    def list_daily_stats(self, limit: int = 7) -> list[DailyRebootStats]:
        """Return the most recent daily stats, newest first."""

        with self._lock:
            rows = self._conn.execute(
                "SELECT data FROM daily_stats ORDER BY date DESC LIMIT ?",
                (max(1, int(limit)),),
            ).fetchall()
        results: list[DailyRebootStats] = []
        for row in rows:
            try:
                results.append(DailyRebootStats.from_dict(json.loads(row[0])))
            except (json.JSONDecodeError, TypeError, ValueError) as exc:
                LOGGER.warning("[Store] Skipping unreadable daily stats row: %s", exc)
        return results

    def append_state_transition(self, transition: StateTransition) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO state_transitions (instance_id, from_state, to_state, timestamp, uptime)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    transition.instance_id,
                    transition.from_state.value,
                    transition.to_state.value,
                    transition.timestamp,
                    transition.uptime,
                ),
            )
            self._conn.commit()

    def recent_state_transitions(self, instance_id: str, limit: int = 20) -> list[StateTransition]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT instance_id, from_state, to_state, timestamp, uptime
                FROM state_transitions
                WHERE instance_id = ?
                ORDER BY timestamp DESC, record_id DESC
                LIMIT ?
                """,
                (instance_id, max(1, int(limit))),
            ).fetchall()
        return [
            StateTransition(
                instance_id=str(row[0]),
                from_state=InstanceState.parse(row[1]),
                to_state=InstanceState.parse(row[2]),
                timestamp=float(row[3]),
                uptime=row[4],
            )
            for row in rows
        ]

    def append_crash_event(self, event: CrashEvent) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO crash_events (instance_id, type, timestamp, metadata)
                VALUES (?, ?, ?, ?)
                """,
                (
                    event.instance_id,
                    event.type.value,
                    event.timestamp,
                    json.dumps(dict(event.metadata), default=str),
                ),
            )
            self._conn.commit()

    def recent_crash_events(self, since: float, instance_id: str | None = None) -> list[CrashEvent]:
        query_parts = [
            "SELECT instance_id, type, timestamp, metadata",
            "FROM crash_events",
            "WHERE timestamp >= ?",
        ]
        params: list[object] = [since]
        if instance_id is not None:
            query_parts.append("AND instance_id = ?")
            params.append(instance_id)
        query_parts.append("ORDER BY timestamp ASC")
        with self._lock:
            rows = self._conn.execute("\n".join(query_parts), params).fetchall()
        events: list[CrashEvent] = []
        for row in rows:
            try:
                crash_type = CrashType(row[1])
            except ValueError:
                continue
            events.append(
                CrashEvent(
                    type=crash_type,
                    timestamp=float(row[2]),
                    instance_id=str(row[0]),
                    metadata=json.loads(row[3] or "{}"),
                )
            )
        return events
