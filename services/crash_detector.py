"""Per-instance lifecycle tracking and crash classification."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Protocol

from config.settings import CrashDetectionSettings
from core.clock import Clock, SystemClock
from core.fleet_models import (
    CrashEvent,
    CrashType,
    InstanceHealth,
    InstanceState,
    ManagedInstance,
    StateTransition,
)
from core.logging import log_crash, logger as LOGGER
from panel.client import PanelError, PanelStatus


class StatusSource(Protocol):
    async def get_status(self, instance_id: str) -> PanelStatus: ...


class NotifierLike(Protocol):
    async def notify(self, audience: str, message: str, **kwargs: Any) -> bool: ...


class CrashStore(Protocol):
    def append_state_transition(self, transition: StateTransition) -> None: ...

    def append_crash_event(self, event: CrashEvent) -> None: ...

    def recent_state_transitions(self, instance_id: str, limit: int = 20) -> list[StateTransition]: ...

    def recent_crash_events(self, since: float, instance_id: str | None = None) -> list[CrashEvent]: ...


@dataclass
class _TrackedState:
    state: InstanceState
    timestamp: float
    uptime: float | None
    is_online: bool


class CrashDetector:
    """Classify abnormal instance lifecycles from observed state changes.

    Every public entry point logs and swallows its own failures so a broken store
    or notifier never stops observation of the rest of the fleet.
    """

    def __init__(
        self,
        *,
        store: CrashStore | None = None,
        notifier: NotifierLike | None = None,
        clock: Clock | None = None,
        settings: CrashDetectionSettings | None = None,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._clock = clock or SystemClock()
        self._settings = settings or CrashDetectionSettings.from_config()
        self._states: dict[str, _TrackedState] = {}
        self._history: dict[str, list[StateTransition]] = {}
        self._crashes: dict[str, list[CrashEvent]] = {}
        self._labels: dict[str, str] = {}
        self._timeout_tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def settings(self) -> CrashDetectionSettings:
        return self._settings

    def history(self, instance_id: str) -> list[StateTransition]:
        return list(self._history.get(instance_id, []))

    def crashes(self, instance_id: str) -> list[CrashEvent]:
        return list(self._crashes.get(instance_id, []))

    def _label(self, instance_id: str) -> str:
        return self._labels.get(instance_id, instance_id)

    async def process_transition(
        self,
        instance_id: str,
        new_state: InstanceState,
        *,
        timestamp: float | None = None,
        uptime: float | None = None,
        label: str | None = None,
        is_online: bool | None = None,
    ) -> list[CrashEvent]:
        """Feed an observed state; returns the crash events this observation produced."""

        try:
            return await self._process(instance_id, new_state, timestamp, uptime, label, is_online)
        except Exception as exc:  # noqa: BLE001 - detector must keep observing
            LOGGER.exception("[Crash] Error processing update for %s: %s", instance_id, exc)
            return []

    async def observe(self, transition: StateTransition) -> None:
        """Listener entry point for transitions streamed by the telemetry monitor."""

        await self.process_transition(
            transition.instance_id,
            transition.to_state,
            timestamp=transition.timestamp,
            uptime=transition.uptime,
        )

    async def _process(
        self,
        instance_id: str,
        new_state: InstanceState,
        timestamp: float | None,
        uptime: float | None,
        label: str | None,
        is_online: bool | None,
    ) -> list[CrashEvent]:
        if label:
            self._labels[instance_id] = label
        previous = self._states.get(instance_id)
        previous_state = previous.state if previous is not None else InstanceState.UNKNOWN
        if previous is not None and previous.state == new_state:
            return []

        now = timestamp if timestamp is not None else self._clock.time()
        self._states[instance_id] = _TrackedState(
            state=new_state,
            timestamp=now,
            uptime=uptime,
            is_online=is_online if is_online is not None else new_state == InstanceState.RUNNING,
        )
        transition = StateTransition(
            instance_id=instance_id,
            from_state=previous_state,
            to_state=new_state,
            timestamp=now,
            uptime=uptime,
        )
        self._history.setdefault(instance_id, []).append(transition)
        await self._persist("append_state_transition", transition)
        LOGGER.debug(
            "[Crash] %s: %s -> %s",
            self._label(instance_id),
            previous_state.value,
            new_state.value,
        )

        events: list[CrashEvent] = []
        if previous_state == InstanceState.RUNNING and new_state == InstanceState.OFFLINE:
            event = await self._check_unexpected_stop(instance_id, now)
            if event is not None:
                events.append(event)
        if previous_state == InstanceState.OFFLINE and new_state == InstanceState.STARTING:
            event = await self._check_crash_loop(instance_id, now)
            if event is not None:
                events.append(event)
        if new_state == InstanceState.STARTING:
            self._schedule_starting_timeout(instance_id, now)
        if previous_state == InstanceState.STARTING and new_state == InstanceState.RUNNING:
            await self._check_recovery(instance_id, now)
        return events

    def _recent_crashes(self, instance_id: str, now: float) -> list[CrashEvent]:
        window = self._settings.crash_loop_window_s
        return [
            crash
            for crash in self._crashes.get(instance_id, [])
            if now - crash.timestamp < window
        ]

    async def _check_unexpected_stop(self, instance_id: str, now: float) -> CrashEvent | None:
        last_running = None
        for entry in reversed(self._history.get(instance_id, [])):
            if entry.to_state == InstanceState.RUNNING:
                last_running = entry
                break
        if last_running is None:
            return None

        run_time = now - last_running.timestamp
        if run_time >= self._settings.minimum_uptime_before_crash_s:
            return None

        log_crash(self._label(instance_id), CrashType.UNEXPECTED_STOP.value, f"(uptime: {int(run_time)}s)")
        return await self._record_crash(
            CrashEvent(
                type=CrashType.UNEXPECTED_STOP,
                timestamp=now,
                instance_id=instance_id,
                metadata={"uptime_s": run_time, "previous_state": InstanceState.RUNNING.value},
            )
        )

    async def _check_crash_loop(self, instance_id: str, now: float) -> CrashEvent | None:
        recent = self._recent_crashes(instance_id, now)
        if len(recent) < self._settings.crash_loop_threshold:
            return None

        label = self._label(instance_id)
        window_min = round(self._settings.crash_loop_window_s / 60)
        log_crash(label, CrashType.CRASH_LOOP.value, f"({len(recent)} crashes)")
        await self._notify(
            "critical",
            f"{label} is in a crash loop: {len(recent)} crashes in {window_min} minutes. "
            "Staff has been notified.",
            key=f"crash_loop:{instance_id}",
            severity="critical",
            title="Crash loop detected",
            fields={"instance": label, "crashes": len(recent), "window_min": window_min},
        )
        return await self._record_crash(
            CrashEvent(
                type=CrashType.CRASH_LOOP,
                timestamp=now,
                instance_id=instance_id,
                metadata={"crash_count": len(recent), "window_s": self._settings.crash_loop_window_s},
            )
        )

    async def _check_recovery(self, instance_id: str, now: float) -> None:
        recent = self._recent_crashes(instance_id, now)
        if not recent:
            return
        label = self._label(instance_id)
        LOGGER.info("[Crash] %s restarted after %s recent crash(es)", label, len(recent))
        if len(recent) >= self._settings.recovery_notify_min_crashes:
            await self._notify(
                "server",
                f"{label} has recovered and is now online. Had {len(recent)} crashes recently.",
                key=f"recovery:{instance_id}",
                severity="success",
                title="Instance recovered",
                fields={"instance": label, "crashes": len(recent)},
            )

    def _schedule_starting_timeout(self, instance_id: str, entered_at: float) -> None:
        pending = self._timeout_tasks.pop(instance_id, None)
        if pending is not None and not pending.done():
            pending.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.warning("[Crash] No running loop; start timeout for %s not scheduled", instance_id)
            return
        task = loop.create_task(
            self._starting_timeout(instance_id, entered_at),
            name=f"starting-timeout-{instance_id}",
        )
        self._timeout_tasks[instance_id] = task
        task.add_done_callback(lambda done, key=instance_id: self._forget_timeout(key, done))

    def _forget_timeout(self, instance_id: str, task: asyncio.Task[None]) -> None:
        if self._timeout_tasks.get(instance_id) is task:
            del self._timeout_tasks[instance_id]

    async def _starting_timeout(self, instance_id: str, entered_at: float) -> None:
        await self._clock.sleep(self._settings.starting_timeout_s)
        try:
            current = self._states.get(instance_id)
            if (
                current is None
                or current.state != InstanceState.STARTING
                or current.timestamp != entered_at
            ):
                return
            label = self._label(instance_id)
            log_crash(label, CrashType.FAILED_START.value, "(stuck in starting)")
            await self._record_crash(
                CrashEvent(
                    type=CrashType.FAILED_START,
                    timestamp=self._clock.time(),
                    instance_id=instance_id,
                    metadata={"stuck_s": self._settings.starting_timeout_s},
                )
            )
            await self._notify(
                "critical",
                f"{label} is stuck in starting state. Manual intervention may be required.",
                key=f"failed_start:{instance_id}",
                severity="high",
                title="Failed start",
                fields={"instance": label},
            )
        except Exception as exc:  # noqa: BLE001 - timer failures are logged only
            LOGGER.exception("[Crash] Error in start timeout check for %s: %s", instance_id, exc)

    async def _record_crash(self, event: CrashEvent) -> CrashEvent:
        crashes = self._crashes.setdefault(event.instance_id, [])
        crashes.append(event)
        cutoff = event.timestamp - self._settings.history_retention_s
        self._crashes[event.instance_id] = [crash for crash in crashes if crash.timestamp > cutoff]
        await self._persist("append_crash_event", event)
        return event

    async def _persist(self, method: str, record: object) -> None:
        if self._store is None:
            return
        try:
            await asyncio.to_thread(getattr(self._store, method), record)
        except Exception as exc:  # noqa: BLE001 - storage is best effort here
            LOGGER.warning("[Crash] Failed to persist %s: %s", method, exc)

    async def _notify(self, audience: str, message: str, **kwargs: Any) -> None:
        if self._notifier is None:
            return
        await self._notifier.notify(audience, message, **kwargs)

    async def poll_fleet(
        self,
        status_source: StatusSource,
        instances: Iterable[ManagedInstance],
    ) -> int:
        """Poll each instance once and feed the result in; returns instances observed."""

        observed = 0
        for instance in instances:
            try:
                status = await status_source.get_status(instance.id)
            except PanelError as exc:
                LOGGER.debug("[Crash] Status unavailable for %s: %s", instance.display_name, exc)
                continue
            await self.process_transition(
                instance.id,
                status.state,
                uptime=status.uptime_s,
                label=instance.display_name,
            )
            observed += 1
        return observed

    async def restore(self, instances: Iterable[ManagedInstance]) -> int:
        """Reload persisted transitions and crashes; returns instances with history."""

        if self._store is None:
            return 0
        since = self._clock.time() - self._settings.history_retention_s
        restored = 0
        for instance in instances:
            self._labels.setdefault(instance.id, instance.display_name)
            try:
                transitions = await asyncio.to_thread(self._store.recent_state_transitions, instance.id)
                crashes = await asyncio.to_thread(self._store.recent_crash_events, since, instance.id)
            except Exception as exc:  # noqa: BLE001 - history is best effort
                LOGGER.warning("[Crash] Failed to restore history for %s: %s", instance.display_name, exc)
                continue
            if transitions:
                latest = transitions[0]
                self._states[instance.id] = _TrackedState(
                    state=latest.to_state,
                    timestamp=latest.timestamp,
                    uptime=latest.uptime,
                    is_online=latest.to_state == InstanceState.RUNNING,
                )
                recent = [entry for entry in reversed(transitions) if entry.timestamp > since]
                if recent:
                    self._history[instance.id] = recent
            if crashes:
                self._crashes[instance.id] = list(crashes)
            if transitions or crashes:
                restored += 1
        if restored:
            LOGGER.info("[Crash] Restored history for %s instance(s)", restored)
        return restored

    def status(self, instance_id: str) -> InstanceHealth:
        now = self._clock.time()
        tracked = self._states.get(instance_id)
        crashes = self._crashes.get(instance_id, [])
        recent = self._recent_crashes(instance_id, now)
        return InstanceHealth(
            current_state=tracked.state if tracked is not None else InstanceState.UNKNOWN,
            recent_crashes=len(recent),
            status_text=self._status_text(tracked, recent, now),
            last_update=tracked.timestamp if tracked is not None else None,
            last_crash=crashes[-1] if crashes else None,
            is_online=tracked.is_online if tracked is not None else False,
        )

    def _status_text(
        self,
        tracked: _TrackedState | None,
        recent: list[CrashEvent],
        now: float,
    ) -> str:
        if tracked is None:
            return ""
        if tracked.state == InstanceState.STARTING and recent:
            return " (CRASHED, starting back!)"
        if len(recent) >= self._settings.crash_loop_threshold:
            return " (CRASH LOOP!)"
        if tracked.state == InstanceState.RUNNING and recent:
            if now - recent[-1].timestamp < self._settings.recently_crashed_s:
                return " (recently crashed)"
        return ""

    def cleanup(self, now: float | None = None) -> int:
        """Drop history older than the retention window; returns entries removed."""

        if now is None:
            now = self._clock.time()
        cutoff = now - self._settings.history_retention_s
        removed = 0
        for table in (self._history, self._crashes):
            for instance_id in list(table):
                entries = table[instance_id]
                kept = [entry for entry in entries if entry.timestamp > cutoff]
                removed += len(entries) - len(kept)
                if kept:
                    table[instance_id] = kept
                else:
                    del table[instance_id]
        if removed:
            LOGGER.debug("[Crash] Cleaned up %s old history entries", removed)
        return removed

    def stats(self) -> Mapping[str, int]:
        now = self._clock.time()
        return {
            "total_instances": len(self._states),
            "total_crashes": sum(len(crashes) for crashes in self._crashes.values()),
            "instances_with_recent_crashes": sum(
                1 for instance_id in self._crashes if self._recent_crashes(instance_id, now)
            ),
            "tracked_histories": len(self._history),
        }

    async def close(self) -> None:
        tasks = list(self._timeout_tasks.values())
        self._timeout_tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
