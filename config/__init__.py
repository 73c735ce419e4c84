"""Configuration loading and the typed settings built from it."""

__all__ = ["ConfigController", "CrashDetectionSettings", "RebootSettings"]


def __getattr__(name: str):
    if name == "ConfigController":
        from config.controller import ConfigController

        return ConfigController
    if name in {"CrashDetectionSettings", "RebootSettings"}:
        from config import settings

        return getattr(settings, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
