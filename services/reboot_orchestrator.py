"""Daily reboot orchestration: trigger evaluation, eligibility, batching and recovery."""

from __future__ import annotations

import asyncio
from typing import Any, Iterable, Protocol, Sequence

from config.settings import RebootSettings
from core.clock import Clock, SystemClock, day_key, format_duration, local_hour
from core.fleet_models import DailyRebootStats, ManagedInstance, WorkerNode
from core.logging import log_info, logger as LOGGER
from services.fleet_planner import (
    NodeSource,
    chunk,
    discover_nodes,
    group_by_node,
    map_instances_to_nodes,
    node_cap,
    plan_batches,
    split_batches,
)
from services.reboot_executor import OrchestrationContext, RebootJobExecutor


RECOVERY_NOTE = "Recovered from interrupted run on orchestrator restart"
CLEANUP_NOTE = "Emergency cleanup performed"


class FleetStoreLike(Protocol):
    def get_instances(self) -> list[ManagedInstance]: ...

    def get_daily_stats(self, date: str) -> DailyRebootStats | None: ...

    def put_daily_stats(self, stats: DailyRebootStats) -> None: ...

    def list_daily_stats(self, limit: int = 7) -> list[DailyRebootStats]: ...


class LoadSource(Protocol):
    async def total_players(self) -> int: ...


class UptimeSource(Protocol):
    async def uptime_hours(self, instance_id: str) -> float | None: ...

    def stop_all(self) -> int: ...


class NotifierLike(Protocol):
    async def notify(self, audience: str, message: str, **kwargs: Any) -> bool: ...


def is_eligible(instance: ManagedInstance, settings: RebootSettings) -> bool:
    if instance.exclude_from_fleet:
        return False
    if instance.tag in settings.excluded_tags:
        return False
    if settings.exclude_early_access and instance.early_access:
        return False
    return True


def filter_eligible(
    instances: Iterable[ManagedInstance],
    settings: RebootSettings,
) -> list[ManagedInstance]:
    """Drop excluded-tag, hidden and early-access instances, keeping input order."""

    return [instance for instance in instances if is_eligible(instance, settings)]


class RebootOrchestrator:
    """Own today's reboot run and the batch loop that executes it."""

    def __init__(
        self,
        *,
        store: FleetStoreLike,
        node_source: NodeSource,
        telemetry: UptimeSource,
        executor: RebootJobExecutor,
        notifier: NotifierLike,
        load_source: LoadSource | None,
        context: OrchestrationContext,
        clock: Clock | None = None,
        settings: RebootSettings | None = None,
    ) -> None:
        self._store = store
        self._node_source = node_source
        self._telemetry = telemetry
        self._executor = executor
        self._notifier = notifier
        self._load_source = load_source
        self._context = context
        self._clock = clock or SystemClock()
        self._settings = settings or RebootSettings.from_config()
        self._run_id = 0
        self._active_run: int | None = None
        self.last_plan = None

    @property
    def context(self) -> OrchestrationContext:
        return self._context

    @property
    def settings(self) -> RebootSettings:
        return self._settings

    def today_key(self) -> str:
        return day_key(self._clock.time(), self._settings.utc_offset_hours)

    async def _load_stats(self, date: str) -> DailyRebootStats | None:
        try:
            return await asyncio.to_thread(self._store.get_daily_stats, date)
        except Exception as exc:  # noqa: BLE001 - stats are best effort
            LOGGER.warning("[Reboot] Failed to load stats for %s: %s", date, exc)
            return None

    async def _persist_today(self) -> None:
        stats = self._context.today
        if stats is None:
            return
        try:
            await asyncio.to_thread(self._store.put_daily_stats, stats)
        except Exception as exc:  # noqa: BLE001 - stats are best effort
            LOGGER.warning("[Reboot] Failed to persist stats for %s: %s", stats.date, exc)

    async def ensure_today(self) -> DailyRebootStats:
        """Return today's record, loading or creating it on day rollover."""

        date = self.today_key()
        current = self._context.today
        if current is not None and current.date == date:
            return current
        stats = await self._load_stats(date)
        if stats is None:
            stats = DailyRebootStats(date=date)
        if current is not None:
            LOGGER.info("[Reboot] Day rollover %s -> %s", current.date, date)
        self._context.today = stats
        return stats

    async def initialize(self) -> None:
        await self.ensure_today()
        await self.recover()

    async def recover(self) -> bool:
        """Close out a run left half-finished by a previous process."""

        stats = await self.ensure_today()
        if not stats.triggered or stats.completed:
            return False
        LOGGER.warning("[Reboot] Detected interrupted run for %s; recovering", stats.date)
        self._context.in_progress = False
        self._context.queue = []
        self._context.clear_jobs()
        stats.completed = True
        stats.end_time = self._clock.time()
        stats.notes.append(RECOVERY_NOTE)
        await self._persist_today()
        return True

    def in_reboot_window(self) -> bool:
        start = self._settings.window_start_hour
        end = self._settings.window_end_hour
        if start is None or end is None:
            return True
        hour = local_hour(self._clock.time(), self._settings.utc_offset_hours)
        if start <= end:
            return start <= hour < end
        return hour >= start or hour < end

    def should_trigger(self, load: int) -> bool:
        stats = self._context.today
        if stats is None or stats.completed or self._context.in_progress:
            return False
        if not self._settings.enabled:
            return False
        if load >= self._settings.player_threshold:
            return False
        return self.in_reboot_window()

    async def tick(self) -> bool:
        """Run one trigger evaluation; returns True when a run was started."""

        stats = await self.ensure_today()
        if self._load_source is None:
            return False
        try:
            load = int(await self._load_source.total_players())
        except Exception as exc:  # noqa: BLE001 - missing load skips this tick
            LOGGER.warning("[Reboot] Load unavailable, skipping tick: %s", exc)
            return False

        if stats.record_load(load, self._clock.time()):
            LOGGER.info("[Reboot] New lowest load today: %s", load)
            await self._persist_today()

        if not self.should_trigger(load):
            return False
        reason = f"Low player count ({load} < {self._settings.player_threshold})"
        return await self.trigger(reason, load)

    async def force_trigger(self, reason: str) -> bool:
        load = None
        if self._load_source is not None:
            try:
                load = int(await self._load_source.total_players())
            except Exception as exc:  # noqa: BLE001 - load is informational here
                LOGGER.debug("[Reboot] Load unavailable for forced trigger: %s", exc)
        return await self.trigger(f"Manual: {reason}", load)

    async def unfinished_run_recorded(self) -> bool:
        """True when the stored record for today shows a run this process does not own."""

        if self._context.in_progress or self._active_run is not None:
            return False
        stats = await self._load_stats(self.today_key())
        return stats is not None and stats.triggered and not stats.completed

    def _cancelled(self, run_id: int) -> bool:
        return self._context.aborted or run_id != self._run_id

    async def trigger(self, reason: str, load: int | None = None) -> bool:
        if self._context.in_progress:
            LOGGER.warning("[Reboot] Run already in progress; ignoring trigger (%s)", reason)
            return False
        if self._active_run is not None:
            LOGGER.warning(
                "[Reboot] Run %s is still winding down; ignoring trigger (%s)",
                self._active_run,
                reason,
            )
            return False

        stats = await self.ensure_today()
        self._run_id += 1
        run_id = self._run_id
        self._active_run = run_id
        self._context.in_progress = True
        self._context.aborted = False
        self._context.run_started_at = self._clock.monotonic()
        stats.triggered = True
        stats.completed = False
        stats.trigger_reason = reason
        stats.trigger_load = load
        stats.start_time = self._clock.time()
        stats.end_time = None
        stats.total_duration_s = None
        log_info(f"[Reboot] Triggering reboot run: {reason}", style="bold cyan")

        try:
            await self._run(stats, run_id)
        except Exception as exc:  # noqa: BLE001 - a broken run must not kill the loop
            LOGGER.exception("[Reboot] Run failed unexpectedly: %s", exc)
            stats.notes.append(f"Run error: {exc}")
        finally:
            try:
                await self._finish(run_id)
            finally:
                self._active_run = None
        return True

    async def select_queue(self) -> list[ManagedInstance]:
        stats = await self.ensure_today()
        instances = await asyncio.to_thread(self._store.get_instances)
        eligible = filter_eligible(instances, self._settings)
        LOGGER.info("[Reboot] %s of %s instance(s) eligible", len(eligible), len(instances))
        eligible, skipped = await self.filter_by_uptime(eligible)
        stats.skipped = [instance.display_name for instance in skipped]
        return eligible

    async def filter_by_uptime(
        self,
        instances: Sequence[ManagedInstance],
    ) -> tuple[list[ManagedInstance], list[ManagedInstance]]:
        minimum = self._settings.min_uptime_hours
        if minimum <= 0 or not instances:
            return list(instances), []
        results = await asyncio.gather(
            *(self._telemetry.uptime_hours(instance.id) for instance in instances),
            return_exceptions=True,
        )
        eligible: list[ManagedInstance] = []
        skipped: list[ManagedInstance] = []
        for instance, uptime in zip(instances, results):
            if isinstance(uptime, BaseException) or uptime is None:
                LOGGER.warning(
                    "[Reboot] Uptime unknown for %s; including it",
                    instance.display_name,
                )
                eligible.append(instance)
            elif uptime >= minimum:
                eligible.append(instance)
            else:
                LOGGER.info(
                    "[Reboot] Skipping %s: %.1fh uptime < %.1fh",
                    instance.display_name,
                    uptime,
                    minimum,
                )
                skipped.append(instance)
        return eligible, skipped

    async def _run(self, stats: DailyRebootStats, run_id: int) -> None:
        try:
            queue = await self.select_queue()
        except Exception as exc:  # noqa: BLE001 - store outage ends the run early
            LOGGER.error("[Reboot] Could not load instances: %s", exc)
            stats.notes.append(f"Instance list unavailable: {exc}")
            return

        self._context.queue = list(queue)
        stats.total = len(queue)
        await self._persist_today()
        await self._notifier.notify(
            "staff",
            f"Starting reboot of {len(queue)} instance(s)",
            key=f"reboot_start:{stats.date}:{run_id}",
            severity="info",
            title="Automated reboot run started",
            fields={
                "reason": stats.trigger_reason or "",
                "load": stats.trigger_load if stats.trigger_load is not None else "n/a",
                "instances": len(queue),
            },
        )
        if not queue:
            return

        nodes = await discover_nodes(
            self._node_source,
            self._settings.fallback_nodes,
            self._settings.default_node_capacity,
        )
        if not nodes:
            LOGGER.error("[Reboot] No worker nodes available; ending run")
            stats.notes.append("No worker nodes available")
            return
        mapping = map_instances_to_nodes(queue, nodes)
        plan = plan_batches(
            nodes,
            len(queue),
            strategy=self._settings.batching_strategy,
            max_batch_size=self._settings.max_batch_size,
            max_concurrent_per_node=self._settings.max_concurrent_per_node,
        )
        self.last_plan = plan
        LOGGER.info(
            "[Reboot] %s instance(s) in %s batch(es) of up to %s (%s, %s node(s) x %s)",
            len(queue),
            plan.total_batches,
            plan.batch_size,
            plan.strategy.value,
            plan.nodes_used,
            plan.max_per_node,
        )

        batches = split_batches(queue, plan)
        for index, batch in enumerate(batches, start=1):
            if self._cancelled(run_id):
                LOGGER.warning("[Reboot] Run aborted; %s batch(es) not started", len(batches) - index + 1)
                break
            LOGGER.info("[Reboot] Batch %s/%s: %s instance(s)", index, len(batches), len(batch))
            await self._process_batch(batch, mapping, run_id)
            if index < len(batches) and not self._cancelled(run_id):
                await self._clock.sleep(self._settings.batch_cooldown_s)

    async def _process_batch(
        self,
        batch: list[ManagedInstance],
        mapping: dict[str, WorkerNode],
        run_id: int,
    ) -> None:
        groups = group_by_node(batch, mapping)
        nodes = {node.id: node for node in mapping.values()}
        limit = self._settings.max_concurrent_per_node
        results = await asyncio.gather(
            *(
                self._process_node_group(node_id, group, node_cap(nodes.get(node_id), limit), run_id)
                for node_id, group in groups.items()
            ),
            return_exceptions=True,
        )
        for node_id, result in zip(groups, results):
            if isinstance(result, BaseException):
                LOGGER.error("[Reboot] Node group %s failed: %s", node_id, result)

    async def _process_node_group(
        self,
        node_id: str,
        group: list[ManagedInstance],
        cap: int,
        run_id: int,
    ) -> None:
        sub_batches = chunk(group, cap)
        for index, sub_batch in enumerate(sub_batches, start=1):
            if self._cancelled(run_id):
                return
            results = await asyncio.gather(
                *(self._executor.run(instance, node_id) for instance in sub_batch),
                return_exceptions=True,
            )
            for instance, result in zip(sub_batch, results):
                self._dequeue(instance)
                if isinstance(result, BaseException):
                    LOGGER.error(
                        "[Reboot] Job for %s raised unexpectedly: %s",
                        instance.display_name,
                        result,
                    )
                    stats = self._context.today
                    if stats is not None:
                        stats.failed += 1
            await self._persist_today()
            if index < len(sub_batches) and not self._cancelled(run_id):
                await self._clock.sleep(self._settings.sub_batch_pause_s)

    def _dequeue(self, instance: ManagedInstance) -> None:
        self._context.queue = [queued for queued in self._context.queue if queued.id != instance.id]

    async def _finish(self, run_id: int) -> None:
        stats = self._context.today
        if run_id == self._run_id:
            self._context.in_progress = False
            self._context.queue = []
        if stats is None:
            return
        stats.completed = True
        if stats.end_time is None:
            stats.end_time = self._clock.time()
        if stats.start_time is not None:
            stats.total_duration_s = stats.end_time - stats.start_time
        await self._persist_today()

        retries = ", ".join(
            f"{instance_id}: {attempts}" for instance_id, attempts in stats.retry_attempts.items()
        )
        LOGGER.info(
            "[Reboot] Run finished: %s ok, %s failed in %s",
            stats.successful,
            stats.failed,
            format_duration(stats.total_duration_s),
        )
        await self._notifier.notify(
            "staff",
            f"Reboot run finished: {stats.successful} succeeded, {stats.failed} failed",
            key=f"reboot_complete:{stats.date}:{run_id}",
            severity="warning" if stats.failed else "success",
            title="Automated reboot run completed",
            fields={
                "successful": stats.successful,
                "failed": stats.failed,
                "duration": format_duration(stats.total_duration_s),
                "retries": retries or "None",
            },
        )

    async def abort(self, reason: str = "Manual abort") -> bool:
        """Stop starting new work; in-flight jobs finish on their own."""

        if not self._context.in_progress:
            LOGGER.info("[Reboot] No run in progress to abort")
            return False
        LOGGER.warning("[Reboot] Aborting run: %s", reason)
        self._context.aborted = True
        self._context.in_progress = False
        self._context.queue = []
        self._context.clear_jobs()
        stats = self._context.today
        if stats is not None:
            stats.completed = True
            stats.end_time = self._clock.time()
            stats.notes.append(f"Aborted: {reason}")
            await self._persist_today()
        return True

    async def emergency_cleanup(self) -> bool:
        LOGGER.warning("[Reboot] Performing emergency cleanup")
        try:
            self._context.aborted = True
            self._context.in_progress = False
            self._context.queue = []
            cleared = self._context.clear_jobs()
            stopped = self._telemetry.stop_all()
            stats = await self.ensure_today()
            if stats.triggered and not stats.completed:
                stats.completed = True
                stats.end_time = self._clock.time()
                stats.notes.append(CLEANUP_NOTE)
                await self._persist_today()
            LOGGER.info(
                "[Reboot] Cleanup cleared %s job(s) and %s subscription(s)",
                cleared,
                stopped,
            )
            return True
        except Exception as exc:  # noqa: BLE001 - report failure to the admin surface
            LOGGER.exception("[Reboot] Emergency cleanup failed: %s", exc)
            return False

    def queue_status(self) -> dict[str, Any]:
        stats = self._context.today
        return {
            "in_progress": self._context.in_progress,
            "aborted": self._context.aborted,
            "enabled": self._settings.enabled,
            "queue_length": len(self._context.queue),
            "queued": [instance.display_name for instance in self._context.queue],
            "active_jobs": [
                {
                    "instance": job.instance.display_name,
                    "node": job.node_id,
                    "stage": job.stage.value,
                    "attempts": job.attempts,
                }
                for job in self._context.snapshot_jobs()
            ],
            "today": stats.to_dict() if stats is not None else None,
        }

    async def stats_for(self, date: str) -> DailyRebootStats | None:
        if self._context.today is not None and self._context.today.date == date:
            return self._context.today
        return await self._load_stats(date)

    async def history(self, days: int = 7) -> list[DailyRebootStats]:
        try:
            return await asyncio.to_thread(self._store.list_daily_stats, days)
        except Exception as exc:  # noqa: BLE001 - read-only admin view
            LOGGER.warning("[Reboot] Failed to load history: %s", exc)
            return []

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        await self.initialize()
        LOGGER.info(
            "[Reboot] Scheduler started: every %.0fs, threshold %s, %s per node",
            self._settings.interval_s,
            self._settings.player_threshold,
            self._settings.max_concurrent_per_node,
        )
        while not stop_event.is_set():
            if await self._clock.wait_event(stop_event, self._settings.interval_s):
                break
            try:
                await self.tick()
            except Exception as exc:  # noqa: BLE001 - keep the scheduler alive
                LOGGER.exception("[Reboot] Error in tick loop (retrying): %s", exc)
