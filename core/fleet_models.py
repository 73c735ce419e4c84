"""Models for fleet reboot orchestration and instance health tracking."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
import math
from typing import Any, Mapping


class InstanceState(str, Enum):
    """Lifecycle state reported by the control plane for an instance."""

    UNKNOWN = "unknown"
    OFFLINE = "offline"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"

    @classmethod
    def parse(cls, value: object) -> "InstanceState":
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.UNKNOWN


class RebootStage(str, Enum):
    """Stage of a reboot job."""

    WARNING = "warning"
    STOPPING = "stopping"
    STARTING = "starting"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in {RebootStage.COMPLETED, RebootStage.FAILED}


class CrashType(str, Enum):
    """Classification of an abnormal instance lifecycle."""

    UNEXPECTED_STOP = "unexpected_stop"
    CRASH_LOOP = "crash_loop"
    FAILED_START = "failed_start"


class JobResult(str, Enum):
    """Outcome of a reboot job run."""

    COMPLETED = "completed"
    FAILED = "failed"
    DUPLICATE = "duplicate"


class BatchStrategy(str, Enum):
    """Batch sizing strategy."""

    FIXED = "fixed"
    AUTO = "auto"


@dataclass(frozen=True)
class WorkerNode:
    """Host machine that runs instances."""

    id: str
    name: str
    capacity: int
    fqdn: str | None = None
    memory_total: int | None = None
    memory_allocated: int | None = None
    disk_total: int | None = None
    disk_allocated: int | None = None


@dataclass(frozen=True)
class ManagedInstance:
    """Game-server instance known to the store."""

    id: str
    tag: str
    name: str = ""
    exclude_from_fleet: bool = False
    early_access: bool = False

    @property
    def display_name(self) -> str:
        return self.name or self.tag

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ManagedInstance":
        instance_id = payload.get("id")
        tag = payload.get("tag")
        if not instance_id or not tag:
            raise ValueError(f"Instance entry needs id and tag: {dict(payload)!r}")
        return cls(
            id=str(instance_id),
            tag=str(tag),
            name=str(payload.get("name") or ""),
            exclude_from_fleet=bool(payload.get("exclude_from_fleet", False)),
            early_access=bool(payload.get("early_access", False)),
        )


@dataclass
class RebootJob:
    """Mutable record for an in-flight reboot."""

    instance: ManagedInstance
    node_id: str | None
    start_time: float
    stage: RebootStage = RebootStage.WARNING
    attempts: int = 0
    last_error: str | None = None
    warning_step: int = 0


@dataclass(frozen=True)
class StateTransition:
    """Observed change of instance state."""

    instance_id: str
    from_state: InstanceState
    to_state: InstanceState
    timestamp: float
    uptime: float | None = None


@dataclass(frozen=True)
class CrashEvent:
    """Classified crash occurrence."""

    type: CrashType
    timestamp: float
    instance_id: str
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BatchPlan:
    """Batch sizing computed for a reboot queue."""

    strategy: BatchStrategy
    batch_size: int
    total_batches: int
    nodes_used: int
    max_per_node: int
    total_capacity: int


@dataclass(frozen=True)
class TelemetrySnapshot:
    """Latest telemetry for one instance."""

    state: InstanceState = InstanceState.UNKNOWN
    uptime: float | None = None
    resource_usage: Mapping[str, Any] = field(default_factory=dict)
    last_update: float | None = None
    connected: bool = False
    error: str | None = None


@dataclass(frozen=True)
class InstanceHealth:
    """Health summary exposed by the crash detector."""

    current_state: InstanceState
    recent_crashes: int
    status_text: str
    last_update: float | None = None
    last_crash: CrashEvent | None = None
    is_online: bool = False


@dataclass
class DailyRebootStats:
    """Per-day reboot bookkeeping, persisted as JSON."""

    date: str
    triggered: bool = False
    completed: bool = False
    trigger_reason: str | None = None
    trigger_load: int | None = None
    lowest_load: int | None = None
    lowest_load_time: float | None = None
    start_time: float | None = None
    end_time: float | None = None
    total_duration_s: float | None = None
    total: int = 0
    successful: int = 0
    failed: int = 0
    retry_attempts: dict[str, int] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    def record_load(self, load: int, timestamp: float) -> bool:
        """Track the lowest observed load, returning True when it improved."""

        if self.lowest_load is None or load < self.lowest_load:
            self.lowest_load = load
            self.lowest_load_time = timestamp
            return True
        return False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "DailyRebootStats":
        known = {name for name in cls.__dataclass_fields__}
        values = {key: value for key, value in payload.items() if key in known}
        if "date" not in values:
            raise ValueError("Daily stats payload missing date")
        values["retry_attempts"] = dict(values.get("retry_attempts") or {})
        values["skipped"] = list(values.get("skipped") or [])
        values["notes"] = list(values.get("notes") or [])
        return cls(**values)


def ceil_div(numerator: int, denominator: int) -> int:
    if denominator <= 0:
        return 0
    return int(math.ceil(numerator / denominator))
