"""
Logging Configuration for the Price Ingestion Service

structlog renders through the stdlib root logger, so the console handler and
the database sink see the same event dicts. Context bound with
`job_context` (chain, date, job log id) or by the request middleware
(request id) is merged into every entry logged inside it.
"""

import logging
import sys
from contextlib import contextmanager
from datetime import date
from typing import Iterator, List, Optional

import structlog
from structlog.processors import JSONRenderer, TimeStamper
from structlog.stdlib import add_log_level, ProcessorFormatter

from pricefeed.config.settings import get_settings

# Handlers whose name starts with this survive reconfiguration
SINK_HANDLER_PREFIX = "sink:"

# Loggers rerouted to the console handler instead of their own
ROUTED_LOGGERS = ["uvicorn", "uvicorn.error", "uvicorn.access", "sqlalchemy.engine"]

# Floors for chatty client libraries (httpx logs every request at INFO)
LIBRARY_LEVELS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "aiosqlite": logging.WARNING,
}


def shared_processors() -> List:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        add_log_level,
        TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def configure_logging(log_level: Optional[str] = None) -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Override log level (DEBUG, INFO, WARNING, ERROR)
    """
    settings = get_settings()
    level = log_level or settings.monitoring.log_level
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    processors = shared_processors()

    structlog.configure(
        processors=processors + [ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if settings.monitoring.log_format == "json":
        renderer = JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(ProcessorFormatter(processor=renderer, foreign_pre_chain=processors))

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in root_logger.handlers[:]:
        if not (handler.get_name() or "").startswith(SINK_HANDLER_PREFIX):
            root_logger.removeHandler(handler)
    root_logger.addHandler(console_handler)

    for name in ROUTED_LOGGERS:
        routed = logging.getLogger(name)
        routed.handlers = [console_handler]
        routed.propagate = False

    for name, floor in LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(max(numeric_level, floor))

    structlog.get_logger(__name__).info(
        "Logging configured",
        level=level,
        format=settings.monitoring.log_format,
        environment=settings.app_env,
    )


@contextmanager
def job_context(chain: str, day: date, job_log_id: Optional[int] = None) -> Iterator[None]:
    """Bind the ingestion job's identity to every entry logged inside"""
    with structlog.contextvars.bound_contextvars(chain=chain, date=day.isoformat(), job_log_id=job_log_id):
        yield
