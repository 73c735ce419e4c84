"""Tests for the sqlite fleet store."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from core.fleet_models import (
    CrashEvent,
    CrashType,
    DailyRebootStats,
    InstanceState,
    ManagedInstance,
    StateTransition,
)
from storage.fleet_store import FleetStore, load_instances_file


def test_instances_round_trip_in_insert_order(tmp_path: Path) -> None:
    store = FleetStore(tmp_path / "var" / "fleet.db")
    store.upsert_instances(
        [
            ManagedInstance(id="b", tag="SKY", name="Skyblock"),
            ManagedInstance(id="a", tag="ALP", early_access=True),
        ]
    )
    store.upsert_instance(ManagedInstance(id="b", tag="SKY", name="Skyblock 2", exclude_from_fleet=True))

    instances = store.get_instances()
    store.close()

    assert [instance.id for instance in instances] == ["b", "a"]
    assert instances[0].name == "Skyblock 2"
    assert instances[0].exclude_from_fleet is True
    assert instances[1].early_access is True
    assert instances[1].display_name == "ALP"


def test_daily_stats_persist_and_list_newest_first(tmp_path: Path) -> None:
    store = FleetStore(tmp_path / "fleet.db")
    for date in ("2026-01-01", "2026-01-03", "2026-01-02"):
        store.put_daily_stats(DailyRebootStats(date=date, total=3))

    stats = store.get_daily_stats("2026-01-03")
    assert stats is not None
    stats.triggered = True
    stats.retry_attempts["x"] = 2
    stats.notes.append("manual")
    store.put_daily_stats(stats)

    reloaded = store.get_daily_stats("2026-01-03")
    assert reloaded == stats
    assert [item.date for item in store.list_daily_stats(2)] == ["2026-01-03", "2026-01-02"]
    assert store.get_daily_stats("2025-12-31") is None
    store.close()


def test_crash_and_transition_history(tmp_path: Path) -> None:
    store = FleetStore(tmp_path / "fleet.db")
    store.append_state_transition(
        StateTransition("i1", InstanceState.RUNNING, InstanceState.OFFLINE, timestamp=10.0, uptime=30.0)
    )
    store.append_state_transition(
        StateTransition("i1", InstanceState.OFFLINE, InstanceState.STARTING, timestamp=20.0)
    )
    store.append_crash_event(CrashEvent(CrashType.UNEXPECTED_STOP, 10.0, "i1", {"uptime_s": 30.0}))
    store.append_crash_event(CrashEvent(CrashType.FAILED_START, 50.0, "i2"))

    transitions = store.recent_state_transitions("i1")
    assert [t.to_state for t in transitions] == [InstanceState.STARTING, InstanceState.OFFLINE]
    assert transitions[1].uptime == 30.0

    assert [event.instance_id for event in store.recent_crash_events(since=0.0)] == ["i1", "i2"]
    only_i1 = store.recent_crash_events(since=0.0, instance_id="i1")
    assert only_i1[0].type is CrashType.UNEXPECTED_STOP
    assert only_i1[0].metadata == {"uptime_s": 30.0}
    assert store.recent_crash_events(since=20.0) == [
        CrashEvent(CrashType.FAILED_START, 50.0, "i2", {})
    ]
    store.close()


def test_daily_stats_from_dict_ignores_unknown_keys() -> None:
    stats = DailyRebootStats.from_dict({"date": "2026-02-01", "legacy": 1, "skipped": None})
    assert stats.date == "2026-02-01"
    assert stats.skipped == []

    assert stats.record_load(40, 1.0) is True
    assert stats.record_load(50, 2.0) is False
    assert stats.record_load(12, 3.0) is True
    assert (stats.lowest_load, stats.lowest_load_time) == (12, 3.0)


def test_load_instances_file_reads_yaml_and_json(tmp_path: Path) -> None:
    yaml_path = tmp_path / "instances.yaml"
    yaml_path.write_text(
        "instances:\n"
        "  - id: sky-1\n"
        "    tag: SKY\n"
        "    name: Skyblock\n"
        "  - id: beta-1\n"
        "    tag: NEW\n"
        "    early_access: true\n",
        encoding="utf-8",
    )
    json_path = tmp_path / "instances.json"
    json_path.write_text('[{"id": "alp-1", "tag": "ALP", "exclude_from_fleet": true}]', encoding="utf-8")

    assert load_instances_file(yaml_path) == [
        ManagedInstance(id="sky-1", tag="SKY", name="Skyblock"),
        ManagedInstance(id="beta-1", tag="NEW", early_access=True),
    ]
    assert load_instances_file(json_path) == [
        ManagedInstance(id="alp-1", tag="ALP", exclude_from_fleet=True)
    ]


def test_load_instances_file_rejects_malformed_documents(tmp_path: Path) -> None:
    not_a_list = tmp_path / "scalar.yaml"
    not_a_list.write_text("just text\n", encoding="utf-8")
    missing_tag = tmp_path / "missing.yaml"
    missing_tag.write_text("- id: sky-1\n", encoding="utf-8")
    bad_entry = tmp_path / "entry.yaml"
    bad_entry.write_text("- sky-1\n", encoding="utf-8")
    broken = tmp_path / "broken.yaml"
    broken.write_text("instances: [\n", encoding="utf-8")

    with pytest.raises(ValueError, match="does not contain a list"):
        load_instances_file(not_a_list)
    with pytest.raises(ValueError, match="needs id and tag"):
        load_instances_file(missing_tag)
    with pytest.raises(ValueError, match="must be a mapping"):
        load_instances_file(bad_entry)
    with pytest.raises(yaml.YAMLError):
        load_instances_file(broken)
    with pytest.raises(OSError):
        load_instances_file(tmp_path / "absent.yaml")
