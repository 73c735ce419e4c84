"""HTTP client for the game-server control panel."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import json
from typing import Any, Mapping
from urllib import error, request
from urllib.parse import quote, urlparse

from config.settings import PanelSettings
from core.fleet_models import InstanceState, WorkerNode
from core.logging import logger as LOGGER


POWER_SIGNALS = {"start", "stop", "restart", "kill"}
ALLOWED_SCHEMES = {"http", "https"}


class PanelError(RuntimeError):
    """Raised when a control-plane request fails."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


@dataclass(frozen=True)
class PanelStatus:
    """Polled status of one instance."""

    state: InstanceState
    uptime_s: float | None = None
    resources: Mapping[str, Any] = field(default_factory=dict)

    @property
    def uptime_hours(self) -> float | None:
        if self.uptime_s is None:
            return None
        return self.uptime_s / 3600.0


@dataclass(frozen=True)
class WebsocketCredentials:
    token: str
    socket_url: str


def parse_uptime_seconds(resources: Mapping[str, Any]) -> float | None:
    """Return uptime in seconds; the panel reports ``uptime`` in milliseconds."""

    if resources.get("uptime") is not None:
        return float(resources["uptime"]) / 1000.0
    if resources.get("uptime_in_seconds") is not None:
        return float(resources["uptime_in_seconds"])
    return None


class PanelClient:
    """Thin wrapper over the client and application REST APIs."""

    def __init__(self, settings: PanelSettings | None = None) -> None:
        self._settings = settings or PanelSettings.from_config()
        if self._settings.base_url:
            parsed = urlparse(self._settings.base_url)
            if parsed.scheme not in ALLOWED_SCHEMES or not parsed.hostname:
                raise ValueError(f"Invalid panel URL: {self._settings.base_url!r}")

    @property
    def enabled(self) -> bool:
        return bool(self._settings.base_url and self._settings.client_key)

    def _request(
        self,
        method: str,
        path: str,
        *,
        payload: Mapping[str, Any] | None = None,
        application: bool = False,
    ) -> dict[str, Any]:
        if not self._settings.base_url:
            raise PanelError("Panel URL is not configured")
        api_key = self._settings.application_key if application else self._settings.client_key
        if not api_key:
            raise PanelError("Panel API key is not configured")
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        req = request.Request(
            f"{self._settings.base_url}/{path.lstrip('/')}",
            data=data,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            method=method,
        )
        try:
            with request.urlopen(req, timeout=self._settings.timeout_s) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raise PanelError(f"{method} {path} failed with HTTP {exc.code}", status=exc.code) from exc
        except (error.URLError, OSError) as exc:
            raise PanelError(f"{method} {path} failed: {exc}") from exc
        if not body.strip():
            return {}
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError as exc:
            raise PanelError(f"{method} {path} returned invalid JSON") from exc
        return parsed if isinstance(parsed, dict) else {}

    def _server_path(self, instance_id: str, suffix: str) -> str:
        return f"api/client/servers/{quote(instance_id, safe='')}/{suffix}"

    async def send_command(self, instance_id: str, command: str) -> None:
        await asyncio.to_thread(
            self._request,
            "POST",
            self._server_path(instance_id, "command"),
            payload={"command": command},
        )

    async def power_action(self, instance_id: str, signal: str) -> None:
        if signal not in POWER_SIGNALS:
            raise ValueError(f"Unsupported power signal: {signal}")
        LOGGER.debug("[Panel] Power %s -> %s", signal, instance_id)
        await asyncio.to_thread(
            self._request,
            "POST",
            self._server_path(instance_id, "power"),
            payload={"signal": signal},
        )

    async def get_status(self, instance_id: str) -> PanelStatus:
        response = await asyncio.to_thread(
            self._request, "GET", self._server_path(instance_id, "resources")
        )
        attributes = response.get("attributes") or {}
        resources = attributes.get("resources") or {}
        return PanelStatus(
            state=InstanceState.parse(attributes.get("current_state")),
            uptime_s=parse_uptime_seconds(resources),
            resources=dict(resources),
        )

    async def list_nodes(self, default_capacity: int = 4) -> list[WorkerNode]:
        response = await asyncio.to_thread(
            self._request, "GET", "api/application/nodes", application=True
        )
        nodes: list[WorkerNode] = []
        for item in response.get("data") or []:
            attributes = item.get("attributes") or {}
            node_id = attributes.get("uuid") or attributes.get("id")
            if node_id is None:
                continue
            allocated = attributes.get("allocated_resources") or {}
            nodes.append(
                WorkerNode(
                    id=str(node_id),
                    name=str(attributes.get("name") or node_id),
                    capacity=default_capacity,
                    fqdn=attributes.get("fqdn"),
                    memory_total=attributes.get("memory"),
                    memory_allocated=allocated.get("memory"),
                    disk_total=attributes.get("disk"),
                    disk_allocated=allocated.get("disk"),
                )
            )
        return nodes

    async def websocket_credentials(self, instance_id: str) -> WebsocketCredentials:
        response = await asyncio.to_thread(
            self._request, "GET", self._server_path(instance_id, "websocket")
        )
        data = response.get("data") or {}
        token = data.get("token")
        socket_url = data.get("socket")
        if not token or not socket_url:
            raise PanelError(f"Websocket credentials missing for {instance_id}")
        return WebsocketCredentials(token=str(token), socket_url=str(socket_url))
