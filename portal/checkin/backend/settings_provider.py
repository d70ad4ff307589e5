"""Cached application branding/locale settings."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol

from ..models import AppSettings

logger = logging.getLogger(__name__)


class SettingsSource(Protocol):
    async def get_settings(self) -> Optional[AppSettings]: ...


class SettingsProvider:
    """Fetches `/api/settings` once; failures fall back to defaults and are retried next call."""

    def __init__(self, source: SettingsSource, *, default_app_name: str = "Visitor Management System") -> None:
        self._source = source
        self._default_app_name = default_app_name
        self._cached: Optional[AppSettings] = None
        self._lock = asyncio.Lock()

    @property
    def cached(self) -> Optional[AppSettings]:
        return self._cached

    async def get(self) -> AppSettings:
        if self._cached is not None:
            return self._cached
        async with self._lock:
            if self._cached is not None:
                return self._cached
            fetched = await self._source.get_settings()
            if fetched is None:
                logger.warning("Settings unavailable - using built-in defaults")
                return self._defaults()
            self._cached = self._with_fallbacks(fetched)
            return self._cached

    def invalidate(self) -> None:
        self._cached = None

    def _defaults(self) -> AppSettings:
        return self._with_fallbacks(AppSettings())

    def _with_fallbacks(self, settings: AppSettings) -> AppSettings:
        app_name = settings.app_name or self._default_app_name
        return settings.model_copy(
            update={
                "app_name": app_name,
                "header_app_name": settings.header_app_name or app_name,
                "footer_app_name": settings.footer_app_name or app_name,
            }
        )


__all__ = ["SettingsSource", "SettingsProvider"]
