"""Reference-counted live telemetry subscriptions per instance."""

from __future__ import annotations

import asyncio
from dataclasses import replace
import inspect
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

from config.settings import TelemetrySettings
from core.clock import Clock, SystemClock
from core.fleet_models import InstanceState, StateTransition, TelemetrySnapshot
from core.logging import logger as LOGGER
from panel.client import PanelError, PanelStatus
from panel.websocket import TelemetryUpdate


StateListener = Callable[[StateTransition], Awaitable[None] | None]


class StatusSource(Protocol):
    async def get_status(self, instance_id: str) -> PanelStatus: ...


class TelemetryStreamSource(Protocol):
    def stream(self, instance_id: str) -> AsyncIterator[TelemetryUpdate]: ...


class TelemetryHandle:
    """Live view of one instance's telemetry; shared between callers."""

    def __init__(self, instance_id: str, clock: Clock, stale_after_s: float) -> None:
        self.instance_id = instance_id
        self._clock = clock
        self._stale_after_s = stale_after_s
        self._snapshot = TelemetrySnapshot()
        self._refs = 0
        self._task: asyncio.Task[None] | None = None
        self.state_changed = asyncio.Event()
        self.updates = 0
        self.failures = 0

    @property
    def refs(self) -> int:
        return self._refs

    def stats(self) -> TelemetrySnapshot:
        return self._snapshot

    def healthy(self) -> bool:
        snapshot = self._snapshot
        if not snapshot.connected or snapshot.error or snapshot.last_update is None:
            return False
        return (self._clock.time() - snapshot.last_update) <= self._stale_after_s

    def _apply(self, update: TelemetryUpdate) -> StateTransition | None:
        now = self._clock.time()
        previous = self._snapshot.state
        state = update.state if update.state is not None else previous
        resources = dict(update.resources) if update.resources else dict(self._snapshot.resource_usage)
        uptime = update.uptime_s if update.uptime_s is not None else self._snapshot.uptime
        self._snapshot = TelemetrySnapshot(
            state=state,
            uptime=uptime,
            resource_usage=resources,
            last_update=now,
            connected=True,
            error=None,
        )
        self.updates += 1
        if state == previous:
            return None
        self.state_changed.set()
        return StateTransition(
            instance_id=self.instance_id,
            from_state=previous,
            to_state=state,
            timestamp=now,
            uptime=uptime,
        )

    def _note_failure(self, reason: str) -> None:
        self.failures += 1
        self._snapshot = replace(self._snapshot, connected=False, error=reason)

    def _note_disconnect(self) -> None:
        self._snapshot = replace(self._snapshot, connected=False)


class TelemetryMonitor:
    """Own one telemetry subscription per instance while anyone needs it."""

    def __init__(
        self,
        status_source: StatusSource,
        stream_source: TelemetryStreamSource | None,
        *,
        clock: Clock | None = None,
        settings: TelemetrySettings | None = None,
    ) -> None:
        self._status_source = status_source
        self._stream_source = stream_source
        self._clock = clock or SystemClock()
        self._settings = settings or TelemetrySettings.from_config()
        self._handles: dict[str, TelemetryHandle] = {}
        self._listeners: list[StateListener] = []
        self._listener_tasks: set[asyncio.Task[Any]] = set()

    def add_state_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def active_instances(self) -> list[str]:
        return list(self._handles)

    def get_handle(self, instance_id: str) -> TelemetryHandle | None:
        return self._handles.get(instance_id)

    def start(self, instance_id: str) -> TelemetryHandle:
        """Return the shared handle for ``instance_id``, subscribing on first use."""

        handle = self._handles.get(instance_id)
        if handle is None:
            handle = TelemetryHandle(instance_id, self._clock, self._settings.stale_after_s)
            self._handles[instance_id] = handle
            if self._stream_source is not None:
                handle._task = asyncio.get_running_loop().create_task(
                    self._run_subscription(handle),
                    name=f"telemetry-{instance_id}",
                )
            LOGGER.debug("[Telemetry] Subscribed to %s", instance_id)
        handle._refs += 1
        return handle

    def stop(self, handle: TelemetryHandle) -> None:
        """Drop one reference; cancel the subscription on the last one."""

        current = self._handles.get(handle.instance_id)
        if current is not handle:
            return
        handle._refs = max(0, handle._refs - 1)
        if handle._refs == 0:
            self._teardown(handle)

    def stop_all(self) -> int:
        handles = list(self._handles.values())
        for handle in handles:
            handle._refs = 0
            self._teardown(handle)
        if handles:
            LOGGER.info("[Telemetry] Stopped %s subscription(s)", len(handles))
        return len(handles)

    def _teardown(self, handle: TelemetryHandle) -> None:
        self._handles.pop(handle.instance_id, None)
        if handle._task is not None and not handle._task.done():
            handle._task.cancel()
        handle._task = None
        handle._note_disconnect()
        LOGGER.debug("[Telemetry] Unsubscribed from %s", handle.instance_id)

    async def _run_subscription(self, handle: TelemetryHandle) -> None:
        assert self._stream_source is not None
        while self._handles.get(handle.instance_id) is handle:
            try:
                async for update in self._stream_source.stream(handle.instance_id):
                    transition = handle._apply(update)
                    if transition is not None:
                        self._dispatch(transition)
                handle._note_disconnect()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - recorded on the handle instead
                handle._note_failure(str(exc))
                LOGGER.warning(
                    "[Telemetry] Stream error for %s (retrying): %s",
                    handle.instance_id,
                    exc,
                )
            await self._clock.sleep(self._settings.reconnect_delay_s)

    def _dispatch(self, transition: StateTransition) -> None:
        for listener in self._listeners:
            try:
                result = listener(transition)
            except Exception as exc:  # noqa: BLE001 - listeners must not stop the stream
                LOGGER.exception("[Telemetry] State listener failed: %s", exc)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._listener_tasks.add(task)
                task.add_done_callback(self._listener_tasks.discard)

    async def poll_status(self, instance_id: str) -> PanelStatus | None:
        try:
            return await self._status_source.get_status(instance_id)
        except PanelError as exc:
            LOGGER.debug("[Telemetry] Status poll failed for %s: %s", instance_id, exc)
            return None

    async def current_state(self, instance_id: str) -> InstanceState:
        """Return the freshest known state, preferring a healthy live stream."""

        handle = self._handles.get(instance_id)
        if handle is not None and handle.healthy():
            return handle.stats().state
        status = await self.poll_status(instance_id)
        return status.state if status is not None else InstanceState.UNKNOWN

    async def wait_for_state(
        self,
        instance_id: str,
        target: InstanceState,
        timeout_s: float,
    ) -> bool:
        """Wait until the instance reports ``target``; False on timeout."""

        deadline = self._clock.monotonic() + timeout_s
        while True:
            handle = self._handles.get(instance_id)
            if handle is not None and handle.healthy():
                handle.state_changed.clear()
                if handle.stats().state == target:
                    return True
                remaining = deadline - self._clock.monotonic()
                if remaining <= 0:
                    return False
                await self._clock.wait_event(
                    handle.state_changed,
                    min(remaining, self._settings.poll_interval_s),
                )
                continue

            if await self.current_state(instance_id) == target:
                return True
            remaining = deadline - self._clock.monotonic()
            if remaining <= 0:
                return False
            await self._clock.sleep(min(remaining, self._settings.poll_interval_s))

    async def uptime_hours(self, instance_id: str) -> float | None:
        """Uptime in hours, or None when it cannot be determined."""

        handle = self._handles.get(instance_id)
        if handle is not None and handle.healthy() and handle.stats().uptime is not None:
            return float(handle.stats().uptime) / 3600.0
        status = await self.poll_status(instance_id)
        if status is None:
            return None
        if status.state != InstanceState.RUNNING:
            return 0.0
        return status.uptime_hours
