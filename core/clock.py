"""Clock abstraction so timing-heavy services can run under a fake clock."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import time
from typing import Protocol


class Clock(Protocol):
    def time(self) -> float: ...

    def monotonic(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...

    async def wait_event(self, event: asyncio.Event, timeout: float) -> bool: ...


class SystemClock:
    """Wall-clock implementation backed by time and asyncio."""

    def time(self) -> float:
        return time.time()

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))

    async def wait_event(self, event: asyncio.Event, timeout: float) -> bool:
        """Wait for ``event`` up to ``timeout`` seconds; return whether it fired."""

        try:
            await asyncio.wait_for(event.wait(), timeout=max(0.0, timeout))
        except asyncio.TimeoutError:
            return event.is_set()
        return True


def day_key(timestamp: float, utc_offset_hours: float = 0.0) -> str:
    """Return the ``YYYY-MM-DD`` key for ``timestamp`` in the given UTC offset."""

    tz = timezone(timedelta(hours=utc_offset_hours))
    return datetime.fromtimestamp(timestamp, tz=tz).strftime("%Y-%m-%d")


def local_hour(timestamp: float, utc_offset_hours: float = 0.0) -> int:
    tz = timezone(timedelta(hours=utc_offset_hours))
    return datetime.fromtimestamp(timestamp, tz=tz).hour


def format_duration(seconds: float | None) -> str:
    if seconds is None:
        return "n/a"
    minutes, secs = divmod(int(max(0.0, seconds)), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
