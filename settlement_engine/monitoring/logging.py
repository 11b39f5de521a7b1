"""
Structured logging configuration.

structlog events rendered as JSON lines (console output in debug mode),
with money amounts rendered as exact decimal strings and per-run context
carried through contextvars.
"""
import logging
import sys
import uuid
from decimal import Decimal
from typing import Any, Callable, Optional

import structlog
from pythonjsonlogger import jsonlogger

from ..config import Settings, get_settings

EventDict = dict[str, Any]


def render_decimals(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Render Decimal amounts as plain strings ("900.00", not "Decimal('900.00')")."""
    for key, value in event_dict.items():
        if isinstance(value, Decimal):
            event_dict[key] = str(value)
    return event_dict


def app_context_processor(settings: Settings) -> Callable[[Any, str, EventDict], EventDict]:
    """Processor stamping every event with the app name, environment and timezone."""

    def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict["app_name"] = settings.app_name
        event_dict["app_env"] = settings.app_env
        event_dict["operating_timezone"] = settings.operating_timezone
        return event_dict

    return add_app_context


def bind_run_context(worker: str, **context: Any) -> str:
    """
    Start a fresh logging context for one worker run.

    Every event logged until the next call carries ``worker`` and ``run_id``.

    Returns:
        str: The run id
    """
    run_id = str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(worker=worker, run_id=run_id, **context)
    return run_id


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        settings: Settings providing level, environment and debug flag
    """
    settings = settings or get_settings()

    renderer: Any = (
        structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            render_decimals,
            app_context_processor(settings),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Library records (sqlalchemy, httpx) arrive here as plain stdlib records
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
        renderer="console" if settings.debug else "json",
    )
