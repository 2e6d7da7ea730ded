"""Central logging configuration for the honest broker API and CLI."""

from __future__ import annotations

import logging.config
import os
from typing import Optional


_CONFIGURED = False

_SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def configure_logging(default_level: Optional[str] = None) -> None:
    """Send all logs to stdout with one formatter; safe to call repeatedly."""

    global _CONFIGURED
    if _CONFIGURED:
        return

    level_name = (default_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    broker_level = os.getenv("HONEST_BROKER_LOG_LEVEL", level_name).upper()

    loggers = {
        name: {"level": level_name, "handlers": ["stdout"], "propagate": False} for name in _SERVER_LOGGERS
    }
    loggers["honest_broker"] = {"level": broker_level}
    # SQL echo is controlled by DATABASE_ECHO, not by the root level.
    loggers["sqlalchemy.engine"] = {"level": "WARNING"}

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {
                    "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                }
            },
            "handlers": {
                "stdout": {
                    "class": "logging.StreamHandler",
                    "formatter": "standard",
                    "stream": "ext://sys.stdout",
                }
            },
            "root": {
                "level": level_name,
                "handlers": ["stdout"],
            },
            "loggers": loggers,
        }
    )

    _CONFIGURED = True
