"""Logging bootstrap for the station service."""
from __future__ import annotations

import logging
from logging.config import dictConfig
from pathlib import Path
from typing import Any, Dict, Optional

LOG_FILENAME = "booth-station.log"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Chatty third-party loggers: httpx logs every request at INFO.
QUIET_LOGGERS = ("httpx", "httpcore", "websockets", "uvicorn.access")


def build_logging_config(level: str, log_file: Path, retention_days: int) -> Dict[str, Any]:
    """dictConfig schema: console plus a midnight-rotated file kept ``retention_days`` days."""
    level = level.upper()
    handler_defaults = {"formatter": "default", "level": level}
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": {"format": LOG_FORMAT}},
        "handlers": {
            "console": {"class": "logging.StreamHandler", **handler_defaults},
            "station_file": {
                "class": "logging.handlers.TimedRotatingFileHandler",
                **handler_defaults,
                "filename": str(log_file),
                "when": "midnight",
                "utc": True,
                "backupCount": max(int(retention_days), 1),
                "delay": True,
                "encoding": "utf-8",
            },
        },
        "root": {"level": level, "handlers": ["console", "station_file"]},
        "loggers": {name: {"level": "WARNING"} for name in QUIET_LOGGERS},
    }


def configure_logging(level: str = "INFO", log_dir: Optional[Path] = None, retention_days: int = 14) -> Path:
    """Apply the station logging setup and return the active log file path."""
    if log_dir is None:
        log_dir = Path(__file__).resolve().parents[2] / "logs"
    log_dir = Path(log_dir).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILENAME

    dictConfig(build_logging_config(level, log_file, retention_days))
    logging.getLogger(__name__).debug("Logging to %s at %s", log_file, level.upper())
    return log_file


__all__ = ["configure_logging", "build_logging_config", "LOG_FILENAME"]
