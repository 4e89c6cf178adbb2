"""Logging helpers for mini-ipgate."""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Any, Dict, MutableMapping, Optional, Tuple

from .config import LoggingConfig

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _handler(config: LoggingConfig) -> Dict[str, Any]:
    if config.file:
        # WatchedFileHandler reopens the file after logrotate moved it
        return {
            "class": "logging.handlers.WatchedFileHandler",
            "filename": config.file,
            "encoding": "utf-8",
            "formatter": "plain",
        }
    return {"class": "logging.StreamHandler", "formatter": "plain"}


def configure_logging(config: LoggingConfig) -> None:
    """Route every logger to one handler at the configured level."""
    level = logging.getLevelName(config.level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"plain": {"format": LOG_FORMAT}},
            "handlers": {"main": _handler(config)},
            "root": {"handlers": ["main"], "level": level},
        }
    )
    logging.getLogger("uvicorn.access").disabled = not config.access_log


class MiddlewareLogger(logging.LoggerAdapter):
    """Prefixes every record with the middleware instance it came from."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = self.extra or {}
        kwargs.setdefault("extra", {}).update(extra)
        return f"[{extra.get('middleware')}/{extra.get('middleware_type')}] {msg}", kwargs


def middleware_logger(
    name: str, type_name: str, base: Optional[logging.Logger] = None
) -> MiddlewareLogger:
    logger = base or logging.getLogger("ipgate.middleware")
    return MiddlewareLogger(logger, {"middleware": name, "middleware_type": type_name})


__all__ = ["LOG_FORMAT", "MiddlewareLogger", "configure_logging", "middleware_logger"]
