"""Storage package utilities."""

__all__ = ["FleetStore", "probe"]


def __getattr__(name: str):
    if name == "FleetStore":
        from storage.fleet_store import FleetStore

        return FleetStore
    if name == "probe":
        from storage.diagnostics import probe

        return probe
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
