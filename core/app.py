"""Application wiring and the asyncio service loops."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import signal
from typing import Any, Mapping

from config.settings import (
    CrashDetectionSettings,
    MetricsSettings,
    NotifierSettings,
    PanelSettings,
    RebootSettings,
    TelemetrySettings,
)
from core.clock import Clock, SystemClock
from panel.client import PanelClient
from panel.websocket import PanelStatsSubscriber
from services.crash_detector import CrashDetector
from services.notifier import Notifier
from services.player_metrics import PlayerMetricsClient
from services.reboot_executor import OrchestrationContext, RebootJobExecutor
from services.reboot_orchestrator import RebootOrchestrator
from services.telemetry_monitor import TelemetryMonitor
from storage.fleet_store import FleetStore


LOGGER = logging.getLogger(__name__)


@dataclass
class FleetApp:
    """Wired service graph for one process."""

    clock: Clock
    store: FleetStore
    panel: PanelClient
    notifier: Notifier
    telemetry: TelemetryMonitor
    detector: CrashDetector
    context: OrchestrationContext
    executor: RebootJobExecutor
    orchestrator: RebootOrchestrator

    def close(self) -> None:
        self.store.close()


def build_app(
    config: Mapping[str, Any],
    *,
    clock: Clock | None = None,
    store: FleetStore | None = None,
) -> FleetApp:
    """Construct every collaborator from the loaded configuration."""

    clock = clock or SystemClock()
    reboot_settings = RebootSettings.from_config(config)
    panel_settings = PanelSettings.from_config(config)

    store = store or FleetStore()
    panel = PanelClient(panel_settings)
    notifier = Notifier(NotifierSettings.from_config(config), clock=clock)
    subscriber = PanelStatsSubscriber(panel, origin=panel_settings.base_url or None)
    telemetry = TelemetryMonitor(
        panel,
        subscriber,
        clock=clock,
        settings=TelemetrySettings.from_config(config),
    )
    detector = CrashDetector(
        store=store,
        notifier=notifier,
        clock=clock,
        settings=CrashDetectionSettings.from_config(config),
    )
    telemetry.add_state_listener(detector.observe)

    metrics = PlayerMetricsClient(MetricsSettings.from_config(config))
    context = OrchestrationContext()
    executor = RebootJobExecutor(
        panel,
        telemetry,
        notifier,
        context,
        clock=clock,
        settings=reboot_settings,
    )
    orchestrator = RebootOrchestrator(
        store=store,
        node_source=panel,
        telemetry=telemetry,
        executor=executor,
        notifier=notifier,
        load_source=metrics if metrics.enabled else None,
        context=context,
        clock=clock,
        settings=reboot_settings,
    )
    return FleetApp(
        clock=clock,
        store=store,
        panel=panel,
        notifier=notifier,
        telemetry=telemetry,
        detector=detector,
        context=context,
        executor=executor,
        orchestrator=orchestrator,
    )


async def crash_detection_loop(app: FleetApp, stop_event: asyncio.Event) -> None:
    """Poll the fleet for state changes and prune detector history periodically."""

    settings = app.detector.settings
    next_cleanup = app.clock.monotonic() + settings.cleanup_interval_s
    while not stop_event.is_set():
        try:
            instances = await asyncio.to_thread(app.store.get_instances)
            await app.detector.poll_fleet(app.panel, instances)
            if app.clock.monotonic() >= next_cleanup:
                app.detector.cleanup()
                next_cleanup = app.clock.monotonic() + settings.cleanup_interval_s
        except Exception as exc:  # noqa: BLE001 - keep polling
            LOGGER.exception("[Crash] Error in poll loop (retrying): %s", exc)
        if await app.clock.wait_event(stop_event, settings.poll_interval_s):
            break


async def run_daemon(app: FleetApp) -> None:
    """Run the scheduler and crash detector until SIGINT or SIGTERM."""

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    pending: set[asyncio.Task[Any]] = set()

    def _shutdown(signame: str) -> None:
        LOGGER.info("Received %s; shutting down", signame)
        task = loop.create_task(app.orchestrator.abort("shutdown"))
        pending.add(task)
        task.add_done_callback(pending.discard)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _shutdown, sig.name)
        except (NotImplementedError, RuntimeError):
            LOGGER.debug("Signal handlers unavailable for %s", sig.name)

    try:
        await app.detector.restore(await asyncio.to_thread(app.store.get_instances))
    except Exception as exc:  # noqa: BLE001 - start without history
        LOGGER.warning("[Crash] Could not restore detector history: %s", exc)

    tasks = [asyncio.create_task(app.orchestrator.run_forever(stop_event), name="reboot-scheduler")]
    if app.detector.settings.enabled:
        tasks.append(asyncio.create_task(crash_detection_loop(app, stop_event), name="crash-detector"))

    try:
        await stop_event.wait()
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, *pending, return_exceptions=True)
        app.telemetry.stop_all()
        await app.detector.close()
