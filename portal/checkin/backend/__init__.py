"""Clients for the visitor-management backend."""
from .http_client import CheckInOutcome, CheckInStatus, VisitorApi, VisitorApiClient
from .settings_provider import SettingsProvider

__all__ = [
    "CheckInOutcome",
    "CheckInStatus",
    "VisitorApi",
    "VisitorApiClient",
    "SettingsProvider",
]
