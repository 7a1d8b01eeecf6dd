"""Logging configuration shared by watch party clients."""

from __future__ import annotations

import logging.config
from typing import Any

LOGGING_CONFIG: dict[str, Any] = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
        }
    },
    "handlers": {
        "default": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
        }
    },
    "root": {
        "handlers": ["default"],
        "level": "INFO",
    },
    "loggers": {
        "watchparty.realtime.redis_store": {
            "handlers": ["default"],
            "level": "INFO",
            "propagate": False,
        }
    },
}


def configure_logging(level: str = "INFO") -> None:
    config = {**LOGGING_CONFIG, "root": {**LOGGING_CONFIG["root"], "level": level}}
    logging.config.dictConfig(config)
