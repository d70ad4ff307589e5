"""Central configuration for the visitor check-in portal."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ROOT_DIR = Path(__file__).resolve().parents[2]
DEFAULT_ENV_FILE = ROOT_DIR / ".env"


# ============================================================
# Nested Configuration Classes
# ============================================================

class TimerSettings(BaseModel):
    """Idle timeout and auto-redirect configuration (seconds)."""
    idle_timeout: float = Field(120.0, description="Inactivity window before forcing exit to the welcome screen")
    idle_debounce: float = Field(0.3, description="Activity events inside this window collapse to one reset")
    checked_in_countdown: int = Field(6, description="Auto-redirect countdown after a successful check-in")
    already_checked_in_countdown: int = Field(7, description="Auto-redirect countdown after a duplicate check-in")
    countdown_tick: float = Field(1.0, description="Countdown tick interval")


class DisplaySettings(BaseModel):
    """Presentation defaults for the kiosk views."""
    timezone: str = Field("Africa/Kinshasa", description="Timezone used to format check-in times")
    default_app_name: str = Field("Visitor Management System", description="Fallback when settings are unavailable")
    ui_event_queue_size: int = Field(8, description="Max buffered UI events per subscriber")


class Settings(BaseSettings):
    """Environment-driven settings for the portal controller."""

    # Backend & API
    backend_api_url: str = Field("http://localhost:5000", description="Visitor management REST base URL")
    backend_timeout: float = Field(15.0, description="Timeout for backend HTTP calls (seconds)")

    # Portal HTTP Server
    portal_host: str = Field("0.0.0.0", description="Host interface for local FastAPI server")
    portal_port: int = Field(5100, description="Port for FastAPI server")

    # Durable client storage
    state_directory: Path = Field(ROOT_DIR / "state", description="Directory holding the current visitor id")

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    log_directory: Path = Field(ROOT_DIR / "logs", description="Log directory path")
    log_retention_days: int = Field(14, description="Number of log files to retain")

    # Nested Configuration Objects
    timers: TimerSettings = Field(default_factory=TimerSettings, description="Idle and countdown timers")
    display: DisplaySettings = Field(default_factory=DisplaySettings, description="View formatting")

    @field_validator("backend_api_url", mode="before")
    @classmethod
    def _strip_trailing_slash(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().rstrip("/")
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_level(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    model_config = SettingsConfigDict(
        env_file=str(DEFAULT_ENV_FILE),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings(override_env_file: Optional[Path] = None) -> Settings:
    """Cached Settings instance; accepts optional env override for tests."""

    if override_env_file:
        return Settings(_env_file=str(override_env_file))
    return Settings()
