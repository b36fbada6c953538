"""Logging setup for the service."""
from __future__ import annotations

import logging.config

from src.core.config import settings


def setup_logging(level: str | None = None) -> None:
    """Configure the root logger once at application start."""

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                },
            },
            "root": {
                "handlers": ["console"],
                "level": (level or settings.LOG_LEVEL).upper(),
            },
            "loggers": {
                # httpx logs every request URL at INFO, which includes client secrets.
                "httpx": {"level": "WARNING"},
            },
        }
    )
