"""
structlog setup shared by the CLI and host applications.

LOG_LEVEL picks the level (default INFO); LOG_FORMAT=json switches from the
console renderer to one JSON object per line.
"""

import logging
import os
import sys
from typing import Optional

import structlog


def configure_logging(level: Optional[str] = None, *, fmt: Optional[str] = None) -> None:
    level_name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    log_level = getattr(logging, level_name, logging.INFO)
    use_json = (fmt or os.getenv("LOG_FORMAT") or "console").lower() == "json"

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=log_level, force=True)
    # Frame-level websocket chatter is too noisy below WARNING
    logging.getLogger("websockets").setLevel(max(log_level, logging.WARNING))

    renderer = structlog.processors.JSONRenderer() if use_json else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


__all__ = ["configure_logging"]
