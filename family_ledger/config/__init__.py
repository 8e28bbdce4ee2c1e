"""Configuration package."""

from family_ledger.config.settings import (
    AppSettings,
    Settings,
    SyncSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "Settings",
    "SyncSettings",
    "get_settings",
    "validate_all_settings",
]
