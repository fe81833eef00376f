"""Service layer helpers (settings persistence)."""

from .settings import Settings, SettingsStore, validate_settings

__all__ = ["Settings", "SettingsStore", "validate_settings"]
