"""Websocket subscriber for live instance telemetry."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
from typing import Any, AsyncIterator, Mapping

from core.fleet_models import InstanceState
from core.logging import logger as LOGGER
from panel.client import PanelClient, PanelError, parse_uptime_seconds


def _require_websockets() -> Any:
    import importlib
    import importlib.util

    if importlib.util.find_spec("websockets") is None:
        raise RuntimeError("websockets is required for PanelStatsSubscriber")

    websockets = importlib.import_module("websockets")
    return websockets


@dataclass(frozen=True)
class TelemetryUpdate:
    """One decoded message from the telemetry stream."""

    state: InstanceState | None = None
    uptime_s: float | None = None
    resources: Mapping[str, Any] = field(default_factory=dict)


def decode_message(raw: str | bytes) -> tuple[str, list[Any]]:
    """Split a raw frame into its event name and argument list."""

    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("Telemetry frame is not an object")
    args = payload.get("args") or []
    return str(payload.get("event") or ""), list(args)


def parse_stats(args: list[Any]) -> TelemetryUpdate | None:
    if not args:
        return None
    stats = args[0]
    if isinstance(stats, str):
        stats = json.loads(stats)
    if not isinstance(stats, dict):
        return None
    state = InstanceState.parse(stats["state"]) if stats.get("state") else None
    resources = {key: value for key, value in stats.items() if key not in {"state", "uptime"}}
    return TelemetryUpdate(state=state, uptime_s=parse_uptime_seconds(stats), resources=resources)


class PanelStatsSubscriber:
    """Open the per-instance telemetry websocket and yield decoded updates.

    The stream ends when the server closes the socket or the token expires; the
    caller owns reconnect policy.
    """

    def __init__(self, panel: PanelClient, *, origin: str | None = None) -> None:
        self._panel = panel
        self._origin = origin

    async def stream(self, instance_id: str) -> AsyncIterator[TelemetryUpdate]:
        websockets = _require_websockets()
        credentials = await self._panel.websocket_credentials(instance_id)
        connect_kwargs: dict[str, Any] = {"ping_interval": 30, "ping_timeout": 10}
        if self._origin:
            connect_kwargs["origin"] = self._origin

        async with websockets.connect(credentials.socket_url, **connect_kwargs) as websocket:
            await websocket.send(json.dumps({"event": "auth", "args": [credentials.token]}))
            async for raw in websocket:
                event, args = decode_message(raw)
                if event == "auth success":
                    await websocket.send(json.dumps({"event": "send stats", "args": [None]}))
                elif event == "token expiring":
                    credentials = await self._panel.websocket_credentials(instance_id)
                    await websocket.send(json.dumps({"event": "auth", "args": [credentials.token]}))
                elif event in {"token expired", "jwt error"}:
                    raise PanelError(f"Telemetry token rejected for {instance_id}: {event}")
                elif event == "stats":
                    update = parse_stats(args)
                    if update is not None:
                        yield update
                elif event == "status" and args:
                    yield TelemetryUpdate(state=InstanceState.parse(args[0]))
                elif event == "daemon error":
                    LOGGER.warning("[Telemetry] Daemon error for %s: %s", instance_id, args)
