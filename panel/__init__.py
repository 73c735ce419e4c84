"""Control-panel API and telemetry stream clients."""

__all__ = ["PanelClient", "PanelError", "PanelStatsSubscriber", "PanelStatus"]


def __getattr__(name: str):
    if name in {"PanelClient", "PanelError", "PanelStatus"}:
        from panel import client

        return getattr(client, name)
    if name == "PanelStatsSubscriber":
        from panel.websocket import PanelStatsSubscriber

        return PanelStatsSubscriber
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
