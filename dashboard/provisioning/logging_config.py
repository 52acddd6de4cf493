"""Logging bootstrap for the provisioning controller."""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Any, Dict

_QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "uvicorn.access")


def configure_logging(level: str = "INFO") -> None:
    """Apply logging defaults for the operator dashboard host.

    Third-party request/connection chatter is held at WARNING so stream
    reconnect lines stay readable.
    """

    loggers: Dict[str, Dict[str, Any]] = {name: {"level": "WARNING"} for name in _QUIET_LOGGERS}
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "level": level.upper(),
                }
            },
            "loggers": loggers,
            "root": {"level": level.upper(), "handlers": ["console"]},
        }
    )
    logging.getLogger(__name__).debug("Logging configured at %s", level)


__all__ = ["configure_logging"]
