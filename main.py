"""Command-line entry point for the fleet reboot scheduler."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
import sys

import yaml

from config import ConfigController
from config.settings import resolve_log_path
from core.logging import enable_file_logging, logger, set_level
from services.reboot_orchestrator import is_eligible
from storage.fleet_store import load_instances_file


def configure_logging(level_name: str) -> None:
    """Configure application logging."""

    level = logging._nameToLevel.get(level_name.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    set_level(level_name)


def parse_args(argv: list[str]) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Raw command-line arguments.

    Returns:
        Parsed arguments namespace.
    """

    parser = argparse.ArgumentParser(
        description="Run the fleet reboot scheduler and crash detector."
    )
    parser.add_argument(
        "--diagnostics",
        action="store_true",
        help="Run diagnostics probes and exit.",
    )
    actions = parser.add_mutually_exclusive_group()
    actions.add_argument(
        "--force-trigger",
        metavar="REASON",
        help="Run a reboot sequence now, ignoring the load threshold.",
    )
    actions.add_argument(
        "--cleanup",
        action="store_true",
        help="Reset orchestration state and close out a stuck run.",
    )
    actions.add_argument(
        "--status",
        action="store_true",
        help="Print the scheduler status for today.",
    )
    actions.add_argument(
        "--stats",
        nargs="?",
        const="",
        metavar="DATE",
        help="Print reboot stats for DATE (YYYY-MM-DD, default today).",
    )
    actions.add_argument(
        "--history",
        type=int,
        metavar="DAYS",
        help="Print reboot stats for the last DAYS days.",
    )
    actions.add_argument(
        "--instances",
        action="store_true",
        help="Print each stored instance with its health status line.",
    )
    actions.add_argument(
        "--import-instances",
        metavar="FILE",
        help="Load instance definitions from a YAML or JSON file into the store.",
    )
    actions.add_argument(
        "--enable",
        action="store_true",
        help="Enable automatic reboots in the override config.",
    )
    actions.add_argument(
        "--disable",
        action="store_true",
        help="Disable automatic reboots in the override config.",
    )
    return parser.parse_args(argv)


def run_diagnostics_cli() -> int:
    from config.diagnostics import probe as config_probe
    from core.diagnostics import probe as core_probe
    from diagnostics.models import exit_code
    from diagnostics.runner import format_results, run_diagnostics
    from panel.diagnostics import probe as panel_probe
    from services.diagnostics import probe as services_probe
    from storage.diagnostics import probe as storage_probe

    results = run_diagnostics(
        [
            config_probe,
            core_probe,
            panel_probe,
            services_probe,
            storage_probe,
        ]
    )
    print(format_results(results))
    return exit_code(results)


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def force_trigger_once(orchestrator, reason: str) -> int:
    """Start a manual run unless today's stored record shows one still running."""

    if await orchestrator.unfinished_run_recorded():
        logger.warning("Refusing forced trigger: today's run is still recorded as in progress")
        print("A reboot run is still in progress for today. Run --cleanup first if it is stuck.")
        return 1
    started = await orchestrator.force_trigger(reason)
    _print_json(orchestrator.queue_status()["today"])
    return 0 if started else 1


async def import_instances(store, path: Path) -> int:
    instances = load_instances_file(path)
    await asyncio.to_thread(store.upsert_instances, instances)
    logger.info("Imported %s instance(s) from %s", len(instances), path)
    return len(instances)


async def instance_status_rows(app) -> list[dict]:
    """Build one status row per stored instance, using persisted crash history."""

    instances = await asyncio.to_thread(app.store.get_instances)
    await app.detector.restore(instances)
    rows = []
    for instance in instances:
        health = app.detector.status(instance.id)
        rows.append(
            {
                "id": instance.id,
                "status": f"{instance.display_name}{health.status_text}",
                "state": health.current_state.value,
                "recent_crashes": health.recent_crashes,
                "eligible": is_eligible(instance, app.orchestrator.settings),
            }
        )
    return rows


async def _run_admin_action(args: argparse.Namespace, config: dict) -> int:
    from core.app import build_app, run_daemon

    app = build_app(config)
    orchestrator = app.orchestrator
    try:
        await orchestrator.ensure_today()
        if args.force_trigger:
            return await force_trigger_once(orchestrator, args.force_trigger)
        if args.import_instances:
            try:
                await import_instances(app.store, Path(args.import_instances))
            except (OSError, ValueError, yaml.YAMLError) as exc:
                logger.error("Instance import failed: %s", exc)
                return 1
            return 0
        if args.instances:
            _print_json(await instance_status_rows(app))
            return 0
        if args.cleanup:
            return 0 if await orchestrator.emergency_cleanup() else 1
        if args.status:
            _print_json(orchestrator.queue_status())
            return 0
        if args.stats is not None:
            stats = await orchestrator.stats_for(args.stats or orchestrator.today_key())
            if stats is None:
                print("No reboot stats recorded for that date.")
                return 1
            _print_json(stats.to_dict())
            return 0
        if args.history is not None:
            _print_json([stats.to_dict() for stats in await orchestrator.history(args.history)])
            return 0
        await run_daemon(app)
        return 0
    finally:
        app.close()


def main(argv: list[str] | None = None) -> int:
    """Application entry point.

    Args:
        argv: Optional list of command-line arguments.

    Returns:
        Process exit code.
    """

    if argv is None:
        argv = sys.argv[1:]

    config_controller = ConfigController.get_instance()
    config = config_controller.get_config()
    configure_logging(config.get("logging_level", "INFO"))
    args = parse_args(argv)
    if args.diagnostics:
        return run_diagnostics_cli()

    if args.enable or args.disable:
        config_controller.update_section("reboot", {"enabled": bool(args.enable)})
        logger.info("Automatic reboots %s", "enabled" if args.enable else "disabled")
        return 0

    if config.get("file_logging_enabled", True):
        log_file_path = resolve_log_path(config)
        enable_file_logging(log_file_path)
        logger.info("Writing logs to %s", log_file_path)

    try:
        return asyncio.run(_run_admin_action(args, config))
    except KeyboardInterrupt:
        logger.info("Program terminated by user")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
