"""Command-line entry point for running diagnostics."""

from __future__ import annotations

import argparse
from pathlib import Path
import tempfile

from config.diagnostics import probe as config_probe
from config.settings import PanelSettings
from core.diagnostics import probe as core_probe
from diagnostics.models import exit_code
from diagnostics.runner import format_results, run_diagnostics
from panel.diagnostics import probe as panel_probe
from services.diagnostics import probe as services_probe
from storage.diagnostics import probe as storage_probe


OFFLINE_CONFIG = {
    "metrics": {"players_url": "http://127.0.0.1:9985/metrics"},
    "notifications": {"webhooks": {"staff": "http://127.0.0.1:9/offline"}},
}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""

    parser = argparse.ArgumentParser(description="Run diagnostics probes.")
    parser.add_argument(
        "--offline",
        action="store_true",
        help="Run probes against a temporary offline directory.",
    )
    parser.add_argument(
        "--base-dir",
        type=Path,
        default=None,
        help="Optional base directory for offline diagnostics.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Run diagnostics and return an exit code."""

    args = parse_args(argv)
    base_dir = args.base_dir

    if args.offline and base_dir is None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            tmp_base = Path(tmp_dir)
            config_dir = tmp_base / "config"
            config_dir.mkdir(parents=True, exist_ok=True)
            (config_dir / "default.yaml").write_text("{}", encoding="utf-8")

            results = run_diagnostics(
                [
                    lambda: config_probe(base_dir=tmp_base),
                    core_probe,
                    lambda: panel_probe(
                        settings=PanelSettings(base_url="https://panel.invalid", client_key="offline"),
                        require_websockets=False,
                    ),
                    lambda: services_probe(config=OFFLINE_CONFIG),
                    lambda: storage_probe(base_dir=tmp_base),
                ]
            )
    else:
        results = run_diagnostics(
            [
                lambda: config_probe(base_dir=base_dir),
                core_probe,
                panel_probe,
                services_probe,
                lambda: storage_probe(base_dir=base_dir),
            ]
        )

    print(format_results(results))
    return exit_code(results)


if __name__ == "__main__":
    raise SystemExit(main())
