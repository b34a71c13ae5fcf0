from .settings import (
    Settings,
    FollowerSettings,
    CouchSettings,
    CheckpointSettings,
    LoggingSettings,
    get_settings,
    reload_settings,
)

__all__ = [
    "Settings",
    "FollowerSettings",
    "CouchSettings",
    "CheckpointSettings",
    "LoggingSettings",
    "get_settings",
    "reload_settings",
]
