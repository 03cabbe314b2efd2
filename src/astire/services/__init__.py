"""Service layer helpers (settings, secrets)."""

from .settings import SecretVault, Settings, SettingsStore, redact_secret, to_client_settings

__all__ = [
    "SecretVault",
    "Settings",
    "SettingsStore",
    "redact_secret",
    "to_client_settings",
]
