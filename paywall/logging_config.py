"""
Structured logging configuration.

structlog on top of the standard library logger, so backend (uvicorn) and
client logs share handlers and levels.
"""
import logging
import sys
from typing import Any

import structlog

from paywall.config import get_settings


def setup_logging(level: str | None = None, json: bool | None = None) -> None:
    settings = get_settings()
    level = (level or settings.log_level).upper()
    json = settings.log_json if json is None else json

    renderer: Any
    if json:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level, logging.INFO))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)

    # Request lines from httpx are noise next to our own events
    logging.getLogger("httpx").setLevel(logging.WARNING)

    structlog.get_logger(__name__).info("logging_configured", log_level=level, json=json)
