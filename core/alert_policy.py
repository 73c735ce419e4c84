"""Alert policy utilities for deduplicating staff notifications."""

from __future__ import annotations

from dataclasses import dataclass, field
import threading
import time
from typing import Mapping


_SEVERITY_COLORS = {
    "critical": 0xFF0000,
    "high": 0xFF6600,
    "warning": 0xFFAA00,
    "info": 0x3498DB,
    "success": 0x00FF00,
}


@dataclass(frozen=True)
class Alert:
    """Notification payload definition."""

    key: str
    message: str
    audience: str = "staff"
    severity: str = "warning"
    title: str | None = None
    fields: Mapping[str, object] = field(default_factory=dict)
    cooldown_s: float | None = None

    @property
    def color(self) -> int:
        return _SEVERITY_COLORS.get(self.severity.lower(), _SEVERITY_COLORS["info"])


class AlertPolicy:
    """Per-key cooldown gate for alerts."""

    def __init__(self, *, cooldown_s: float = 60.0) -> None:
        self._cooldown_s = float(cooldown_s)
        self._last_emitted: dict[str, float] = {}
        self._longest_cooldown_s = self._cooldown_s
        self._lock = threading.Lock()

    @property
    def cooldown_s(self) -> float:
        return self._cooldown_s

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> "AlertPolicy":
        alerts_cfg = config.get("alerts") if isinstance(config, Mapping) else None
        if not isinstance(alerts_cfg, Mapping):
            return cls()
        return cls(cooldown_s=float(alerts_cfg.get("cooldown_s", 60.0)))

    def should_emit(self, alert: Alert, now: float | None = None) -> bool:
        """Return True and stamp the key when the alert is outside its cooldown."""

        if now is None:
            now = time.monotonic()
        cooldown = alert.cooldown_s if alert.cooldown_s is not None else self._cooldown_s
        with self._lock:
            self._longest_cooldown_s = max(self._longest_cooldown_s, cooldown)
            self._prune(now)
            last_sent = self._last_emitted.get(alert.key)
            if last_sent is not None and (now - last_sent) < cooldown:
                return False
            self._last_emitted[alert.key] = now
        return True

    def _prune(self, now: float) -> None:
        horizon = now - self._longest_cooldown_s
        stale = [key for key, stamp in self._last_emitted.items() if stamp <= horizon]
        for key in stale:
            del self._last_emitted[key]

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._last_emitted)

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._last_emitted.clear()
            else:
                self._last_emitted.pop(key, None)
