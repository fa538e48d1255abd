from __future__ import annotations

import logging
import logging.config
from typing import Any, Dict

from acs_dashboard.config import settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def build_logging_config(level: str) -> Dict[str, Any]:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {"format": LOG_FORMAT},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
            },
        },
        "loggers": {
            "acs": {"level": level, "handlers": ["console"], "propagate": False},
            "uvicorn": {"level": "INFO", "handlers": ["console"], "propagate": False},
            "uvicorn.access": {"level": "INFO", "handlers": ["console"], "propagate": False},
            "httpx": {"level": "WARNING", "handlers": ["console"], "propagate": False},
        },
        "root": {"level": level, "handlers": ["console"]},
    }


def configure_logging() -> None:
    """
    Configure process-wide logging before uvicorn starts.

    DEBUG=true lowers every app logger to DEBUG.
    """
    level = "DEBUG" if settings.debug else "INFO"
    logging.config.dictConfig(build_logging_config(level))
    logging.getLogger("acs.dashboard.logging").info(
        "Logging configured (level=%s, env=%s)",
        level,
        settings.environment,
    )
