import logging
import sys

import structlog

from app.config import settings


def _add_service(_, __, event_dict):
    event_dict.setdefault("service", settings.SERVICE_NAME)
    return event_dict


def configure_logging(level: str = None, fmt: str = None) -> None:
    """Route structlog through the standard library so handlers and caplog see every record."""
    level_name = (level or settings.LOG_LEVEL).upper()
    renderer = (
        structlog.processors.JSONRenderer()
        if (fmt or settings.LOG_FORMAT) == "json"
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(handler)
    root.setLevel(level_name)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _add_service,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


logger = structlog.get_logger("app")
