"""Configuration loading utilities for MarkRead."""

from .settings import (
    DEFAULT_CONFIG_PATH,
    RemoteSettings,
    Settings,
    bootstrap_settings,
    load_settings,
    save_settings,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "RemoteSettings",
    "Settings",
    "bootstrap_settings",
    "load_settings",
    "save_settings",
]
