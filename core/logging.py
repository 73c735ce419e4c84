"""Logger setup for the scheduler process plus styled lifecycle log helpers."""

from __future__ import annotations

import atexit
import importlib
import importlib.util
import logging
import logging.handlers
from pathlib import Path
import queue
from typing import Any


LOGGER_NAME = "fleetwarden"
FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

if importlib.util.find_spec("rich") is not None:
    RichHandler = importlib.import_module("rich.logging").RichHandler
    Text = importlib.import_module("rich.text").Text
    console = importlib.import_module("rich.console").Console()
else:
    RichHandler = None
    Text = None
    console = None


def setup_logging(name: str = LOGGER_NAME) -> logging.Logger:
    """Return the application logger, attaching a console handler once."""

    app_logger = logging.getLogger(name)
    app_logger.setLevel(logging.INFO)
    if not app_logger.handlers:
        if RichHandler is not None:
            handler: logging.Handler = RichHandler(
                rich_tracebacks=True,
                console=console,
                show_path=False,
            )
            handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
        else:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s: %(message)s"))
        app_logger.addHandler(handler)
    app_logger.propagate = False
    return app_logger


logger = setup_logging()


def set_level(level_name: str) -> None:
    level = logging.getLevelName(str(level_name).upper())
    logger.setLevel(level if isinstance(level, int) else logging.INFO)


class _FileSink:
    """Background file writer fed through a queue so event-loop code never blocks on disk."""

    def __init__(self) -> None:
        self.path: Path | None = None
        self.listener: logging.handlers.QueueListener | None = None
        self.handler: logging.handlers.QueueHandler | None = None
        self._atexit = False

    def start(self, path: Path, level: int) -> None:
        path = path.expanduser()
        if self.listener is not None and self.path == path:
            return
        self.stop()
        path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))

        records: queue.SimpleQueue[logging.LogRecord] = queue.SimpleQueue()
        self.handler = logging.handlers.QueueHandler(records)
        self.handler.setLevel(level)
        for target in (logging.getLogger(), logger):
            target.addHandler(self.handler)

        self.listener = logging.handlers.QueueListener(records, file_handler, respect_handler_level=True)
        self.listener.start()
        self.path = path
        if not self._atexit:
            atexit.register(self.stop)
            self._atexit = True

    def stop(self) -> None:
        if self.handler is not None:
            for target in (logging.getLogger(), logger):
                target.removeHandler(self.handler)
            self.handler = None
        if self.listener is not None:
            self.listener.stop()
            self.listener = None
        self.path = None


_file_sink = _FileSink()


def enable_file_logging(log_path: Path, level: int = logging.INFO) -> None:
    """Mirror application and root log records into ``log_path``."""

    _file_sink.start(Path(log_path), level)


def disable_file_logging() -> None:
    _file_sink.stop()


_STAGE_STYLES = {
    "warning": "bold yellow",
    "stopping": "bold magenta",
    "starting": "bold cyan",
    "completed": "bold green",
    "failed": "bold red",
}


def _styled(message: str, style: str) -> Any:
    return message if Text is None else Text(message, style=style)


def log_stage_transition(tag: str, stage: str, attempt: int) -> None:
    """Log a reboot job entering a new stage."""

    style = _STAGE_STYLES.get(stage, "bold white")
    logger.info(_styled(f"[Reboot] {tag} -> {stage} (attempt {attempt})", style))


def log_crash(tag: str, crash_type: str, detail: str) -> None:
    logger.warning(_styled(f"[Crash] {tag}: {crash_type} {detail}".rstrip(), "bold red"))


def log_info(message: str, style: str = "bold white") -> None:
    logger.info(_styled(message, style))
