"""Configuration helpers for the client settings file."""

from .settings import DEFAULT_SETTINGS_PATH, Settings, SettingsError

__all__ = [
    "DEFAULT_SETTINGS_PATH",
    "Settings",
    "SettingsError",
]
