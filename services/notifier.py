"""Centralised notification delivery with cooldown, rate limit and circuit breaker."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import json
from typing import Any, Mapping, Protocol
from urllib import error, request

from config.settings import NotifierSettings
from core.alert_policy import Alert, AlertPolicy
from core.budgeting import RollingWindowBudget
from core.clock import Clock, SystemClock
from core.logging import logger as LOGGER


# Exempt from the shared rate limit; reboot failures and crash loops must reach staff.
URGENT_SEVERITIES = frozenset({"high", "critical"})


class NotificationSink(Protocol):
    def send(self, alert: Alert) -> None: ...


class DeliveryError(RuntimeError):
    """Raised by a sink when a message could not be delivered."""


class LogSink:
    """Sink used when no webhook is configured for an audience."""

    def send(self, alert: Alert) -> None:
        fields = ", ".join(f"{key}={value}" for key, value in alert.fields.items())
        LOGGER.info(
            "[Notify] (%s/%s) %s%s",
            alert.audience,
            alert.severity,
            alert.message,
            f" [{fields}]" if fields else "",
        )


class WebhookSink:
    """Post Discord-compatible embeds to a webhook URL."""

    def __init__(self, url: str, *, timeout_s: float = 10.0, username: str = "fleetwarden") -> None:
        self._url = url
        self._timeout_s = timeout_s
        self._username = username

    def build_payload(self, alert: Alert) -> dict[str, Any]:
        embed: dict[str, Any] = {
            "title": alert.title or alert.key,
            "description": alert.message,
            "color": alert.color,
        }
        if alert.fields:
            embed["fields"] = [
                {"name": str(name), "value": str(value), "inline": True}
                for name, value in alert.fields.items()
            ]
        return {"username": self._username, "embeds": [embed]}

    def send(self, alert: Alert) -> None:
        data = json.dumps(self.build_payload(alert)).encode("utf-8")
        req = request.Request(
            self._url,
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with request.urlopen(req, timeout=self._timeout_s) as response:
                response.read()
        except (error.URLError, OSError) as exc:
            raise DeliveryError(f"Webhook delivery failed: {exc}") from exc


@dataclass
class CircuitBreaker:
    """Open after consecutive failures, close again after ``reset_s``."""

    threshold: int = 5
    reset_s: float = 300.0
    failure_count: int = 0
    opened_at: float | None = None

    def is_open(self, now: float) -> bool:
        if self.opened_at is None:
            return False
        if now - self.opened_at >= self.reset_s:
            self.opened_at = None
            self.failure_count = 0
            return False
        return True

    def record_success(self) -> None:
        self.failure_count = 0
        self.opened_at = None

    def record_failure(self, now: float) -> bool:
        """Count a failure; return True when this failure opened the breaker."""

        self.failure_count += 1
        if self.opened_at is None and self.failure_count >= self.threshold:
            self.opened_at = now
            return True
        return False


class Notifier:
    """Deliver staff and server notifications without ever raising to callers."""

    def __init__(
        self,
        settings: NotifierSettings | None = None,
        *,
        sinks: Mapping[str, NotificationSink] | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._settings = settings or NotifierSettings.from_config()
        self._clock = clock or SystemClock()
        if sinks is None:
            sinks = {
                audience: WebhookSink(url, timeout_s=self._settings.timeout_s)
                for audience, url in self._settings.webhooks.items()
            }
        self._sinks: dict[str, NotificationSink] = dict(sinks)
        self._fallback_sink = LogSink()
        self._policy = AlertPolicy(cooldown_s=self._settings.cooldown_s)
        self._budget = RollingWindowBudget(
            self._settings.rate_limit_max,
            self._settings.rate_limit_window_s,
            name="notifications",
        )
        self._breakers: dict[str, CircuitBreaker] = {}
        self.sent_count = 0
        self.dropped_count = 0

    def _route(self, audience: str) -> tuple[str, NotificationSink]:
        for name in (audience, "staff"):
            sink = self._sinks.get(name)
            if sink is not None:
                return name, sink
        return "log", self._fallback_sink

    def breaker_for(self, audience: str) -> CircuitBreaker:
        """Return the breaker guarding the sink that ``audience`` is routed to."""

        name, _ = self._route(audience)
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                threshold=self._settings.breaker_threshold,
                reset_s=self._settings.breaker_reset_s,
            )
            self._breakers[name] = breaker
        return breaker

    async def notify(
        self,
        audience: str,
        message: str,
        *,
        key: str | None = None,
        severity: str = "warning",
        title: str | None = None,
        fields: Mapping[str, object] | None = None,
        cooldown_s: float | None = None,
    ) -> bool:
        """Send a notification; return True when it was delivered."""

        alert = Alert(
            key=key or f"{audience}:{message}",
            message=message,
            audience=audience,
            severity=severity,
            title=title,
            fields=dict(fields or {}),
            cooldown_s=cooldown_s,
        )
        try:
            return await self._deliver(alert)
        except Exception as exc:  # noqa: BLE001 - notifications must never fail the caller
            LOGGER.exception("[Notify] Unexpected failure for %s: %s", alert.key, exc)
            self.dropped_count += 1
            return False

    async def _deliver(self, alert: Alert) -> bool:
        now = self._clock.monotonic()
        if not self._policy.should_emit(alert, now=now):
            LOGGER.debug("[Notify] Suppressed %s during cooldown", alert.key)
            self.dropped_count += 1
            return False
        urgent = alert.severity.lower() in URGENT_SEVERITIES
        if not urgent and not self._budget.try_consume(now=now):
            LOGGER.warning("[Notify] Rate limit reached; logging %s instead", alert.key)
            self._fallback_sink.send(alert)
            self.dropped_count += 1
            return False
        breaker = self.breaker_for(alert.audience)
        if breaker.is_open(now):
            LOGGER.warning("[Notify] Circuit open; logging instead: %s", alert.message)
            self._fallback_sink.send(alert)
            self.dropped_count += 1
            return False

        _, sink = self._route(alert.audience)
        attempts = self._settings.retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                await asyncio.to_thread(sink.send, alert)
            except Exception as exc:  # noqa: BLE001 - sink failures feed the breaker
                LOGGER.warning(
                    "[Notify] Delivery attempt %s/%s failed for %s: %s",
                    attempt,
                    attempts,
                    alert.key,
                    exc,
                )
                if breaker.record_failure(self._clock.monotonic()):
                    LOGGER.error(
                        "[Notify] Circuit opened after %s failures",
                        breaker.failure_count,
                    )
                    break
                if attempt < attempts:
                    await self._clock.sleep(self._settings.retry_delay_s * attempt)
                continue
            breaker.record_success()
            self.sent_count += 1
            return True

        self._fallback_sink.send(alert)
        self.dropped_count += 1
        return False
