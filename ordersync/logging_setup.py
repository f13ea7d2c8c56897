"""Process-wide logging for the ordered collection service.

One stdout handler on the root logger; module loggers (``ordersync.*``)
propagate to it. Feed delivery runs on worker threads named
``feed-<entity_type>-<parent_key>``, so the thread name is part of every
record. ``LOG_LEVEL`` sets the level of the ``ordersync`` logger tree.
"""
from __future__ import annotations

import logging
import os
from logging.config import dictConfig
from typing import Any, Dict, Optional

LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"


def build_logging_config(level: Optional[str] = None) -> Dict[str, Any]:
    app_level = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"ordersync": {"format": LOG_FORMAT}},
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "formatter": "ordersync",
                "stream": "ext://sys.stdout",
            }
        },
        "root": {"level": "WARNING", "handlers": ["stdout"]},
        "loggers": {
            "ordersync": {"level": app_level},
            # SQL echo stays off unless explicitly raised
            "sqlalchemy.engine": {"level": "WARNING"},
            "uvicorn.error": {"level": "INFO"},
            "uvicorn.access": {"level": "INFO"},
        },
    }


def configure_logging(level: Optional[str] = None) -> None:
    """Install the stdout handler once; later calls are no-ops.

    Skipped when the root logger already has handlers (reloaders, pytest
    capture).
    """
    if logging.getLogger().handlers:
        return
    dictConfig(build_logging_config(level))


__all__ = ["LOG_FORMAT", "build_logging_config", "configure_logging"]
