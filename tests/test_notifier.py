"""Tests for notification gating and delivery."""

from __future__ import annotations

import asyncio

from config.settings import NotifierSettings
from core.alert_policy import Alert, AlertPolicy
from core.budgeting import RollingWindowBudget
from services.notifier import DeliveryError, Notifier, WebhookSink


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def time(self) -> float:
        return self.now

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    async def wait_event(self, event: asyncio.Event, timeout: float) -> bool:
        self.now += timeout
        return event.is_set()


class _RecordingSink:
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.sent: list[Alert] = []
        self.calls = 0

    def send(self, alert: Alert) -> None:
        self.calls += 1
        if self.failures:
            self.failures -= 1
            raise DeliveryError("HTTP 500")
        self.sent.append(alert)


def _settings(**overrides) -> NotifierSettings:
    values = {
        "cooldown_s": 60.0,
        "rate_limit_max": 100,
        "rate_limit_window_s": 60.0,
        "retry_attempts": 3,
        "retry_delay_s": 2.0,
        "breaker_threshold": 5,
        "breaker_reset_s": 300.0,
    }
    values.update(overrides)
    return NotifierSettings(**values)


def test_same_key_suppressed_within_cooldown() -> None:
    clock = _FakeClock()
    sink = _RecordingSink()
    notifier = Notifier(_settings(), sinks={"staff": sink}, clock=clock)

    async def _run() -> list[bool]:
        results = [await notifier.notify("staff", "crash loop", key="loop:a")]
        clock.now += 30
        results.append(await notifier.notify("staff", "crash loop", key="loop:a"))
        results.append(await notifier.notify("staff", "other", key="loop:b"))
        clock.now += 31
        results.append(await notifier.notify("staff", "crash loop", key="loop:a"))
        return results

    assert asyncio.run(_run()) == [True, False, True, True]
    assert len(sink.sent) == 3
    assert notifier.dropped_count == 1


def test_rate_limit_drops_excess_within_window() -> None:
    clock = _FakeClock()
    sink = _RecordingSink()
    notifier = Notifier(_settings(rate_limit_max=3), sinks={"staff": sink}, clock=clock)

    async def _run() -> list[bool]:
        results = [await notifier.notify("staff", f"msg {index}", key=f"k{index}") for index in range(5)]
        clock.now += 61
        results.append(await notifier.notify("staff", "later", key="k-later"))
        return results

    assert asyncio.run(_run()) == [True, True, True, False, False, True]
    assert [alert.key for alert in sink.sent] == ["k0", "k1", "k2", "k-later"]


def test_delivery_retries_then_succeeds() -> None:
    clock = _FakeClock()
    sink = _RecordingSink(failures=2)
    notifier = Notifier(_settings(), sinks={"staff": sink}, clock=clock)

    assert asyncio.run(notifier.notify("staff", "hello", key="hello")) is True
    assert sink.calls == 3
    assert clock.sleeps == [2.0, 4.0]
    assert notifier.breaker_for("staff").failure_count == 0


def test_circuit_opens_after_consecutive_failures_and_resets() -> None:
    clock = _FakeClock()
    sink = _RecordingSink(failures=100)
    notifier = Notifier(
        _settings(retry_attempts=1, breaker_threshold=3, breaker_reset_s=300.0),
        sinks={"staff": sink},
        clock=clock,
    )

    async def _run() -> list[bool]:
        return [await notifier.notify("staff", f"m{index}", key=f"k{index}") for index in range(5)]

    assert asyncio.run(_run()) == [False] * 5
    assert sink.calls == 3
    assert notifier.breaker_for("staff").is_open(clock.monotonic())

    sink.failures = 0
    clock.now += 301
    assert asyncio.run(notifier.notify("staff", "back", key="k-back")) is True
    assert notifier.breaker_for("staff").failure_count == 0


def test_unknown_audience_falls_back_to_staff_sink() -> None:
    staff = _RecordingSink()
    notifier = Notifier(_settings(), sinks={"staff": staff}, clock=_FakeClock())

    assert asyncio.run(notifier.notify("server", "recovered", key="r")) is True
    assert staff.sent[0].audience == "server"


def test_notify_without_sinks_logs_only() -> None:
    notifier = Notifier(_settings(), sinks={}, clock=_FakeClock())

    assert asyncio.run(notifier.notify("critical", "stuck", key="s")) is True
    assert notifier.sent_count == 1


def test_webhook_payload_shape() -> None:
    sink = WebhookSink("https://hooks.example/x")
    payload = sink.build_payload(
        Alert(key="k", message="boom", severity="critical", title="Crash", fields={"instance": "SKY"})
    )

    embed = payload["embeds"][0]
    assert embed["title"] == "Crash"
    assert embed["description"] == "boom"
    assert embed["color"] == 0xFF0000
    assert embed["fields"] == [{"name": "instance", "value": "SKY", "inline": True}]


def test_alert_policy_and_budget_primitives() -> None:
    policy = AlertPolicy.from_config({"alerts": {"cooldown_s": 10}})
    alert = Alert(key="a", message="m")
    assert policy.should_emit(alert, now=0.0) is True
    assert policy.should_emit(alert, now=5.0) is False
    assert policy.should_emit(Alert(key="a", message="m", cooldown_s=1.0), now=6.0) is True
    policy.reset("a")
    assert policy.should_emit(alert, now=6.5) is True

    budget = RollingWindowBudget(2, 10.0)
    assert budget.try_consume(now=0.0) is True
    assert budget.try_consume(now=1.0) is True
    assert budget.try_consume(now=2.0) is False
    assert budget.remaining(now=10.0) == 1


def test_urgent_alerts_bypass_the_rate_limit() -> None:
    clock = _FakeClock()
    sink = _RecordingSink()
    notifier = Notifier(_settings(rate_limit_max=2), sinks={"staff": sink}, clock=clock)

    async def _run() -> list[bool]:
        results = [await notifier.notify("staff", f"info {index}", key=f"i{index}") for index in range(3)]
        for severity in ("high", "critical", "HIGH"):
            results.append(
                await notifier.notify("staff", f"{severity} alert", key=f"u-{severity}", severity=severity)
            )
        return results

    assert asyncio.run(_run()) == [True, True, False, True, True, True]
    assert [alert.key for alert in sink.sent] == ["i0", "i1", "u-high", "u-critical", "u-HIGH"]
    assert notifier.dropped_count == 1


def test_open_staff_breaker_does_not_block_server_sink() -> None:
    clock = _FakeClock()
    staff = _RecordingSink(failures=100)
    server = _RecordingSink()
    notifier = Notifier(
        _settings(retry_attempts=1, breaker_threshold=2),
        sinks={"staff": staff, "server": server},
        clock=clock,
    )

    async def _run() -> list[bool]:
        results = [await notifier.notify("staff", f"s{index}", key=f"s{index}") for index in range(3)]
        results.append(await notifier.notify("server", "back online", key="online"))
        return results

    assert asyncio.run(_run()) == [False, False, False, True]
    assert staff.calls == 2
    assert notifier.breaker_for("staff").is_open(clock.monotonic())
    assert not notifier.breaker_for("server").is_open(clock.monotonic())
    assert [alert.key for alert in server.sent] == ["online"]


def test_unrouted_audiences_share_the_staff_breaker() -> None:
    notifier = Notifier(_settings(), sinks={"staff": _RecordingSink()}, clock=_FakeClock())

    assert notifier.breaker_for("critical") is notifier.breaker_for("staff")


def test_alert_policy_forgets_keys_after_cooldown() -> None:
    policy = AlertPolicy(cooldown_s=10.0)
    for index in range(50):
        assert policy.should_emit(Alert(key=f"k{index}", message="m"), now=float(index) * 0.1)
    assert policy.tracked_keys() == 50

    assert policy.should_emit(Alert(key="late", message="m"), now=100.0)
    assert policy.tracked_keys() == 1

    assert policy.should_emit(Alert(key="long", message="m", cooldown_s=600.0), now=200.0)
    assert policy.should_emit(Alert(key="short", message="m"), now=250.0)
    assert policy.tracked_keys() == 3
    assert policy.should_emit(Alert(key="long", message="m", cooldown_s=600.0), now=300.0) is False
