"""Logging bootstrap for the portal controller.

Two rotated files are written: `portal-runtime.log` with everything at the
configured level, and `portal-visits.log` with one line per check-in,
duplicate and check-out from the `checkin.visits` logger.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from pathlib import Path
from typing import Any, Dict, Optional

VISITS_LOGGER = "checkin.visits"
RUNTIME_LOG = "portal-runtime.log"
VISITS_LOG = "portal-visits.log"

# Libraries that log every request at INFO
_CHATTY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def _rotated_file(path: Path, level: str, formatter: str, retention_days: int) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.TimedRotatingFileHandler",
        "formatter": formatter,
        "level": level,
        "filename": str(path),
        "when": "midnight",
        "backupCount": max(int(retention_days), 1),
        "utc": True,
        "delay": True,
        "encoding": "utf-8",
    }


def build_logging_config(level: str, log_dir: Path, retention_days: int) -> Dict[str, Any]:
    level = level.upper()
    loggers: Dict[str, Any] = {name: {"level": "WARNING"} for name in _CHATTY_LOGGERS}
    loggers[VISITS_LOGGER] = {"level": "INFO", "handlers": ["visits_file"]}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {"format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s"},
            "visits": {"format": "%(asctime)s | %(message)s"},
        },
        "handlers": {
            "console": {"class": "logging.StreamHandler", "formatter": "default", "level": level},
            "runtime_file": _rotated_file(log_dir / RUNTIME_LOG, level, "default", retention_days),
            "visits_file": _rotated_file(log_dir / VISITS_LOG, "INFO", "visits", retention_days),
        },
        "loggers": loggers,
        "root": {"level": level, "handlers": ["console", "runtime_file"]},
    }


def configure_logging(level: str = "INFO", log_dir: Optional[Path] = None, retention_days: int = 14) -> Path:
    """Install the portal logging config; returns the directory the log files go to."""
    if log_dir is None:
        log_dir = Path(__file__).resolve().parents[2] / "logs"
    log_dir = Path(log_dir).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)

    dictConfig(build_logging_config(level, log_dir, retention_days))
    logging.getLogger(__name__).debug("Logging configured (level=%s, dir=%s)", level, log_dir)
    return log_dir


__all__ = ["VISITS_LOGGER", "RUNTIME_LOG", "VISITS_LOG", "build_logging_config", "configure_logging"]
