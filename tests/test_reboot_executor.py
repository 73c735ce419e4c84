"""Tests for the per-instance reboot sequence."""

from __future__ import annotations

import asyncio

from config.settings import NotifierSettings, RebootSettings, WarningStep
from core.fleet_models import DailyRebootStats, InstanceState, JobResult, ManagedInstance, RebootJob
from panel.client import PanelError
from services.notifier import Notifier
from services.reboot_executor import OrchestrationContext, RebootJobExecutor


SKY = ManagedInstance(id="sky-1", tag="SKY", name="Skyblock")


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def time(self) -> float:
        return 1_700_000_000.0 + self.now

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)

    async def wait_event(self, event: asyncio.Event, timeout: float) -> bool:
        self.now += timeout
        return event.is_set()


class _FakePanel:
    def __init__(self, failing_commands: set[str] | None = None, start_error: bool = False) -> None:
        self.commands: list[str] = []
        self.power: list[str] = []
        self._failing_commands = failing_commands or set()
        self._start_error = start_error

    async def send_command(self, instance_id: str, command: str) -> None:
        self.commands.append(command)
        if command in self._failing_commands:
            raise PanelError("HTTP 502", status=502)

    async def power_action(self, instance_id: str, signal: str) -> None:
        self.power.append(signal)
        if signal == "start" and self._start_error:
            raise PanelError("HTTP 409", status=409)


class _FakeTelemetry:
    """Scripted ``wait_for_state`` answers per target state."""

    def __init__(self, clock: _FakeClock, state=InstanceState.RUNNING, offline=None, running=None) -> None:
        self._clock = clock
        self._state = state
        self._answers = {
            InstanceState.OFFLINE: list(offline or [True]),
            InstanceState.RUNNING: list(running or [True]),
        }
        self.started: list[str] = []
        self.stopped = 0

    def start(self, instance_id: str) -> str:
        self.started.append(instance_id)
        return instance_id

    def stop(self, handle: str) -> None:
        self.stopped += 1

    async def current_state(self, instance_id: str) -> InstanceState:
        return self._state

    async def wait_for_state(self, instance_id: str, target: InstanceState, timeout_s: float) -> bool:
        answers = self._answers[target]
        reached = answers.pop(0) if len(answers) > 1 else answers[0]
        if not reached:
            self._clock.now += timeout_s
        return reached


class _FakeNotifier:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, dict]] = []

    async def notify(self, audience: str, message: str, **kwargs) -> bool:
        self.calls.append((audience, message, kwargs))
        return True


class _RecordingSink:
    def __init__(self) -> None:
        self.sent = []

    def send(self, alert) -> None:
        self.sent.append(alert)


def _settings(**overrides) -> RebootSettings:
    values = {
        "warning_steps": (WarningStep("say reboot soon", 1.0), WarningStep("save-all", 2.0)),
        "retry_limit": 3,
        "retry_backoff_s": 10.0,
        "stop_attempts": 3,
        "stop_timeout_s": 60.0,
        "startup_timeout_s": 1_200.0,
        "max_job_duration_s": 45 * 60.0,
    }
    values.update(overrides)
    return RebootSettings(**values)


def _executor(panel, telemetry, clock, notifier=None, context=None, **overrides):
    context = context or OrchestrationContext()
    if context.today is None:
        context.today = DailyRebootStats(date="2026-03-01")
    executor = RebootJobExecutor(
        panel,
        telemetry,
        notifier or _FakeNotifier(),
        context,
        clock=clock,
        settings=_settings(**overrides),
    )
    return executor, context


def test_happy_path_warns_stops_and_starts() -> None:
    clock = _FakeClock()
    panel = _FakePanel()
    telemetry = _FakeTelemetry(clock)
    executor, context = _executor(panel, telemetry, clock)

    result = asyncio.run(executor.run(SKY, "node-a"))

    assert result is JobResult.COMPLETED
    assert panel.commands == ["say reboot soon", "save-all"]
    assert panel.power == ["stop", "start"]
    assert clock.sleeps == [1.0, 2.0]
    assert context.today.successful == 1
    assert context.today.retry_attempts == {}
    assert context.active_count() == 0
    assert telemetry.started == ["sky-1"]
    assert telemetry.stopped == 1


def test_offline_instance_skips_stop_and_failed_warning_continues() -> None:
    clock = _FakeClock()
    panel = _FakePanel(failing_commands={"say reboot soon"})
    telemetry = _FakeTelemetry(clock, state=InstanceState.OFFLINE)
    executor, _ = _executor(panel, telemetry, clock)

    assert asyncio.run(executor.run(SKY)) is JobResult.COMPLETED
    assert panel.commands == ["say reboot soon", "save-all"]
    assert panel.power == ["start"]


def test_stop_escalates_to_kill() -> None:
    clock = _FakeClock()
    panel = _FakePanel()
    telemetry = _FakeTelemetry(clock, offline=[False, True])
    executor, _ = _executor(panel, telemetry, clock)

    assert asyncio.run(executor.run(SKY)) is JobResult.COMPLETED
    assert panel.power == ["stop", "kill", "start"]


def test_retry_limit_bounds_attempts_and_alerts_once() -> None:
    clock = _FakeClock()
    panel = _FakePanel()
    telemetry = _FakeTelemetry(clock, offline=[False])
    notifier = _FakeNotifier()
    executor, context = _executor(panel, telemetry, clock, notifier=notifier)

    result = asyncio.run(executor.run(SKY, "node-a"))

    assert result is JobResult.FAILED
    assert panel.power == ["stop", "kill", "kill"] * 3
    assert "start" not in panel.power
    assert [s for s in clock.sleeps if s >= 10.0] == [10.0, 20.0]
    assert context.today.failed == 1
    assert context.today.retry_attempts == {"sky-1": 3}
    assert len(notifier.calls) == 1
    audience, message, kwargs = notifier.calls[0]
    assert audience == "staff"
    assert "after 3 attempt(s)" in message
    assert kwargs["key"].startswith("reboot_failed:sky-1:")
    assert context.active_count() == 0


def test_start_timeout_is_retried() -> None:
    clock = _FakeClock()
    panel = _FakePanel()
    telemetry = _FakeTelemetry(clock, running=[False, True])
    executor, context = _executor(panel, telemetry, clock)

    assert asyncio.run(executor.run(SKY)) is JobResult.COMPLETED
    assert panel.power == ["stop", "start", "stop", "start"]
    assert context.today.retry_attempts == {"sky-1": 1}


def test_start_request_error_fails_stage() -> None:
    clock = _FakeClock()
    panel = _FakePanel(start_error=True)
    telemetry = _FakeTelemetry(clock)
    notifier = _FakeNotifier()
    executor, _ = _executor(panel, telemetry, clock, notifier=notifier, retry_limit=1)

    assert asyncio.run(executor.run(SKY)) is JobResult.FAILED
    assert "start request failed" in notifier.calls[0][1]


def test_max_job_duration_stops_retries() -> None:
    clock = _FakeClock()
    panel = _FakePanel()
    telemetry = _FakeTelemetry(clock, running=[False])
    executor, context = _executor(panel, telemetry, clock, max_job_duration_s=600.0)

    assert asyncio.run(executor.run(SKY)) is JobResult.FAILED
    assert panel.power.count("start") == 1
    assert context.today.retry_attempts == {"sky-1": 1}


def test_aborted_run_does_not_retry() -> None:
    clock = _FakeClock()
    panel = _FakePanel()
    telemetry = _FakeTelemetry(clock, running=[False])
    context = OrchestrationContext()
    context.aborted = True
    executor, _ = _executor(panel, telemetry, clock, context=context)

    assert asyncio.run(executor.run(SKY)) is JobResult.FAILED
    assert panel.power == ["stop", "start"]


def test_second_job_for_same_instance_is_rejected() -> None:
    clock = _FakeClock()
    panel = _FakePanel()
    telemetry = _FakeTelemetry(clock)
    executor, context = _executor(panel, telemetry, clock)

    async def _run():
        return await asyncio.gather(executor.run(SKY, "node-a"), executor.run(SKY, "node-a"))

    results = asyncio.run(_run())
    assert sorted(result.value for result in results) == ["completed", "duplicate"]
    assert panel.power == ["stop", "start"]
    assert telemetry.stopped == 1


def test_preclaimed_instance_is_duplicate() -> None:
    clock = _FakeClock()
    panel = _FakePanel()
    context = OrchestrationContext()
    assert context.claim(RebootJob(instance=SKY, node_id="node-a", start_time=0.0))
    executor, _ = _executor(panel, _FakeTelemetry(clock), clock, context=context)

    assert asyncio.run(executor.run(SKY)) is JobResult.DUPLICATE
    assert panel.commands == []
    assert context.active_count("node-a") == 1


class _BrokenTelemetry(_FakeTelemetry):
    async def wait_for_state(self, instance_id: str, target: InstanceState, timeout_s: float) -> bool:
        raise RuntimeError("stats stream closed")


def test_unexpected_error_takes_failure_path() -> None:
    clock = _FakeClock()
    panel = _FakePanel()
    telemetry = _BrokenTelemetry(clock)
    notifier = _FakeNotifier()
    executor, context = _executor(panel, telemetry, clock, notifier=notifier)

    result = asyncio.run(executor.run(SKY, "node-a"))

    assert result is JobResult.FAILED
    assert context.today.failed == 1
    assert context.today.retry_attempts == {"sky-1": 3}
    assert len(notifier.calls) == 1
    assert "unexpected error: stats stream closed" in notifier.calls[0][1]
    assert notifier.calls[0][2]["severity"] == "high"
    assert context.active_count() == 0
    assert telemetry.stopped == 1


def test_release_keeps_a_newer_job_for_the_same_instance() -> None:
    context = OrchestrationContext()
    stale = RebootJob(instance=SKY, node_id="node-a", start_time=0.0)
    fresh = RebootJob(instance=SKY, node_id="node-a", start_time=5.0)
    assert context.claim(stale)
    context.clear_jobs()
    assert context.claim(fresh)

    assert context.release("sky-1", stale) is None
    assert context.snapshot_jobs() == [fresh]
    assert context.release("sky-1", fresh) is fresh
    assert context.active_count() == 0


def test_failure_alerts_are_not_rate_limited() -> None:
    clock = _FakeClock()
    sink = _RecordingSink()
    notifier = Notifier(
        NotifierSettings(rate_limit_max=3, retry_attempts=1),
        sinks={"staff": sink},
        clock=clock,
    )
    panel = _FakePanel()
    telemetry = _FakeTelemetry(clock, offline=[False])
    executor, context = _executor(panel, telemetry, clock, notifier=notifier, retry_limit=1)
    instances = [ManagedInstance(id=f"i{index}", tag=f"T{index}") for index in range(5)]

    async def _run():
        return await asyncio.gather(*(executor.run(instance, "node-a") for instance in instances))

    results = asyncio.run(_run())

    assert results == [JobResult.FAILED] * 5
    assert context.today.failed == 5
    assert sorted(alert.fields["instance"] for alert in sink.sent) == ["T0", "T1", "T2", "T3", "T4"]
    assert notifier.dropped_count == 0


def test_stage_logs_number_attempts_from_one(monkeypatch) -> None:
    logged: list[tuple[str, int]] = []
    monkeypatch.setattr(
        "services.reboot_executor.log_stage_transition",
        lambda name, stage, attempt: logged.append((stage, attempt)),
    )
    clock = _FakeClock()
    telemetry = _FakeTelemetry(clock, running=[False, True])
    executor, _ = _executor(_FakePanel(), telemetry, clock)

    assert asyncio.run(executor.run(SKY)) is JobResult.COMPLETED
    assert logged == [
        ("warning", 1),
        ("stopping", 1),
        ("starting", 1),
        ("stopping", 2),
        ("starting", 2),
        ("completed", 2),
    ]
