"""Run one instance through the warn, stop, start reboot sequence."""

from __future__ import annotations

import threading
from typing import Any, Protocol

from config.settings import RebootSettings
from core.clock import Clock, SystemClock
from core.fleet_models import (
    DailyRebootStats,
    InstanceState,
    JobResult,
    ManagedInstance,
    RebootJob,
    RebootStage,
)
from core.logging import log_stage_transition, logger as LOGGER
from panel.client import PanelError


class StageFailure(RuntimeError):
    """A reboot stage did not reach its target state."""


class PanelLike(Protocol):
    async def send_command(self, instance_id: str, command: str) -> None: ...

    async def power_action(self, instance_id: str, signal: str) -> None: ...


class TelemetryLike(Protocol):
    def start(self, instance_id: str) -> Any: ...

    def stop(self, handle: Any) -> None: ...

    async def current_state(self, instance_id: str) -> InstanceState: ...

    async def wait_for_state(self, instance_id: str, target: InstanceState, timeout_s: float) -> bool: ...


class NotifierLike(Protocol):
    async def notify(self, audience: str, message: str, **kwargs: Any) -> bool: ...


class OrchestrationContext:
    """Shared run state: the active job set, the queue and today's counters."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.active_jobs: dict[str, RebootJob] = {}
        self.queue: list[ManagedInstance] = []
        self.in_progress = False
        self.aborted = False
        self.run_started_at: float | None = None
        self.today: DailyRebootStats | None = None

    def claim(self, job: RebootJob) -> bool:
        """Insert ``job`` unless its instance already has an active job."""

        with self._lock:
            if job.instance.id in self.active_jobs:
                return False
            self.active_jobs[job.instance.id] = job
            return True

    def release(self, instance_id: str, job: RebootJob | None = None) -> RebootJob | None:
        """Drop the active entry for ``instance_id``; with ``job``, only if it still owns the slot."""

        with self._lock:
            current = self.active_jobs.get(instance_id)
            if current is None or (job is not None and current is not job):
                return None
            return self.active_jobs.pop(instance_id)

    def active_count(self, node_id: str | None = None) -> int:
        with self._lock:
            if node_id is None:
                return len(self.active_jobs)
            return sum(1 for job in self.active_jobs.values() if job.node_id == node_id)

    def snapshot_jobs(self) -> list[RebootJob]:
        with self._lock:
            return list(self.active_jobs.values())

    def clear_jobs(self) -> int:
        with self._lock:
            count = len(self.active_jobs)
            self.active_jobs.clear()
            return count

    def record_result(self, job: RebootJob, success: bool) -> None:
        with self._lock:
            if self.today is None:
                return
            if success:
                self.today.successful += 1
            else:
                self.today.failed += 1
            if job.attempts:
                self.today.retry_attempts[job.instance.id] = job.attempts


class RebootJobExecutor:
    """Drive a single reboot job to completion or failure."""

    def __init__(
        self,
        panel: PanelLike,
        telemetry: TelemetryLike,
        notifier: NotifierLike,
        context: OrchestrationContext,
        *,
        clock: Clock | None = None,
        settings: RebootSettings | None = None,
    ) -> None:
        self._panel = panel
        self._telemetry = telemetry
        self._notifier = notifier
        self._context = context
        self._clock = clock or SystemClock()
        self._settings = settings or RebootSettings.from_config()

    async def run(self, instance: ManagedInstance, node_id: str | None = None) -> JobResult:
        job = RebootJob(instance=instance, node_id=node_id, start_time=self._clock.monotonic())
        if not self._context.claim(job):
            LOGGER.warning("[Reboot] %s already has an active job; skipping", instance.display_name)
            return JobResult.DUPLICATE

        handle = self._telemetry.start(instance.id)
        try:
            return await self._run_claimed(job)
        finally:
            self._context.release(instance.id, job)
            self._telemetry.stop(handle)

    def _enter(self, job: RebootJob, stage: RebootStage) -> None:
        job.stage = stage
        log_stage_transition(job.instance.display_name, stage.value, job.attempts + 1)

    async def _run_claimed(self, job: RebootJob) -> JobResult:
        await self._warn(job)

        while True:
            try:
                await self._stop(job)
                await self._start(job)
            except StageFailure as exc:
                failure = str(exc)
            except Exception as exc:  # noqa: BLE001 - unexpected errors take the failure path
                LOGGER.exception(
                    "[Reboot] Unexpected error rebooting %s: %s",
                    job.instance.display_name,
                    exc,
                )
                failure = f"unexpected error: {exc}"
            else:
                self._enter(job, RebootStage.COMPLETED)
                self._context.record_result(job, success=True)
                return JobResult.COMPLETED

            job.attempts += 1
            job.last_error = failure
            elapsed = self._clock.monotonic() - job.start_time
            if self._context.aborted:
                LOGGER.warning("[Reboot] %s failed after abort; not retrying", job.instance.display_name)
                break
            if (
                job.attempts < self._settings.retry_limit
                and elapsed < self._settings.max_job_duration_s
            ):
                backoff = self._settings.retry_backoff_s * job.attempts
                LOGGER.warning(
                    "[Reboot] %s attempt %s failed (%s); retrying in %.0fs",
                    job.instance.display_name,
                    job.attempts,
                    failure,
                    backoff,
                )
                await self._clock.sleep(backoff)
                continue
            break

        self._enter(job, RebootStage.FAILED)
        self._context.record_result(job, success=False)
        await self._notifier.notify(
            "staff",
            f"Reboot failed for {job.instance.display_name} after {job.attempts} attempt(s): "
            f"{job.last_error}",
            key=f"reboot_failed:{job.instance.id}:{job.start_time}",
            severity="high",
            title="Reboot failed",
            fields={
                "instance": job.instance.display_name,
                "attempts": job.attempts,
                "node": job.node_id or "unknown",
            },
        )
        return JobResult.FAILED

    async def _warn(self, job: RebootJob) -> None:
        self._enter(job, RebootStage.WARNING)
        for index, step in enumerate(self._settings.warning_steps):
            job.warning_step = index
            try:
                await self._panel.send_command(job.instance.id, step.command)
            except Exception as exc:  # noqa: BLE001 - a failed warning never blocks the reboot
                LOGGER.warning(
                    "[Reboot] Warning %s/%s failed for %s: %s",
                    index + 1,
                    len(self._settings.warning_steps),
                    job.instance.display_name,
                    exc,
                )
            await self._clock.sleep(step.delay_s)

    async def _stop(self, job: RebootJob) -> None:
        self._enter(job, RebootStage.STOPPING)
        instance_id = job.instance.id
        if await self._telemetry.current_state(instance_id) == InstanceState.OFFLINE:
            return

        for stop_attempt in range(1, self._settings.stop_attempts + 1):
            signal = "stop" if stop_attempt == 1 else "kill"
            try:
                await self._panel.power_action(instance_id, signal)
            except PanelError as exc:
                LOGGER.warning(
                    "[Reboot] %s %s request failed: %s",
                    job.instance.display_name,
                    signal,
                    exc,
                )
            if await self._telemetry.wait_for_state(
                instance_id, InstanceState.OFFLINE, self._settings.stop_timeout_s
            ):
                return
            LOGGER.warning(
                "[Reboot] %s not offline after %s (%s/%s)",
                job.instance.display_name,
                signal,
                stop_attempt,
                self._settings.stop_attempts,
            )
        raise StageFailure(f"did not stop after {self._settings.stop_attempts} attempt(s)")

    async def _start(self, job: RebootJob) -> None:
        self._enter(job, RebootStage.STARTING)
        instance_id = job.instance.id
        try:
            await self._panel.power_action(instance_id, "start")
        except PanelError as exc:
            raise StageFailure(f"start request failed: {exc}") from exc
        if not await self._telemetry.wait_for_state(
            instance_id, InstanceState.RUNNING, self._settings.startup_timeout_s
        ):
            raise StageFailure(
                f"did not reach running within {int(self._settings.startup_timeout_s // 60)} minutes"
            )
