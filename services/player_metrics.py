"""Aggregate player load read from the proxy's Prometheus metrics endpoint."""

from __future__ import annotations

import asyncio
import re
from urllib import error, request

from config.settings import MetricsSettings


_PLAYER_SAMPLE = re.compile(
    r'bungeecord_online_player\{server="([^"]+)",player="([^"]*)",?\}\s+[0-9.eE+-]+'
)


class MetricsError(RuntimeError):
    """Raised when the load source cannot be read."""


def parse_players(payload: str) -> dict[str, list[str]]:
    """Group online player names by backend server."""

    servers: dict[str, list[str]] = {}
    for match in _PLAYER_SAMPLE.finditer(payload):
        server = match.group(1).strip()
        player = match.group(2).strip()
        players = servers.setdefault(server, [])
        if player:
            players.append(player)
    return servers


class PlayerMetricsClient:
    """Read the online player count used as the reboot trigger signal."""

    def __init__(self, settings: MetricsSettings | None = None) -> None:
        self._settings = settings or MetricsSettings.from_config()

    @property
    def enabled(self) -> bool:
        return bool(self._settings.players_url)

    def _fetch(self) -> str:
        if not self._settings.players_url:
            raise MetricsError("Player metrics URL is not configured")
        try:
            with request.urlopen(self._settings.players_url, timeout=self._settings.timeout_s) as response:
                return response.read().decode("utf-8")
        except (error.URLError, OSError) as exc:
            raise MetricsError(f"Player metrics request failed: {exc}") from exc

    async def players_by_server(self) -> dict[str, list[str]]:
        payload = await asyncio.to_thread(self._fetch)
        return parse_players(payload)

    async def total_players(self) -> int:
        servers = await self.players_by_server()
        return len({player for players in servers.values() for player in players})
