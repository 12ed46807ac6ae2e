"""
Structured logging configuration.

structlog builds the event (context variables, app context, exception text)
and hands it to the standard library as ``msg`` plus ``extra``; a single
python-json-logger formatter on the root logger then writes one flat JSON
object per line. Records from third-party libraries (uvicorn, SQLAlchemy,
stripe) go through the same formatter, so every line has the same shape:

    {"@timestamp": ..., "level": ..., "logger": ..., "message": <event>, ...}
"""
import logging
import sys
from typing import IO, Any, Optional

import structlog
from pythonjsonlogger import jsonlogger

from problem2profit.config import get_settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"
RENAMED_FIELDS = {"asctime": "@timestamp", "levelname": "level", "name": "logger"}


def add_app_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Stamp every structlog event with the service name and environment."""
    settings = get_settings()
    event_dict["app_name"] = settings.app_name
    event_dict["app_env"] = settings.app_env
    return event_dict


def build_formatter() -> jsonlogger.JsonFormatter:
    """JSON formatter shared by structlog events and plain stdlib records."""
    return jsonlogger.JsonFormatter(
        LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        rename_fields=RENAMED_FIELDS,
    )


def setup_logging(stream: Optional[IO[str]] = None) -> None:
    """
    Configure structlog and the root logger.

    Args:
        stream: Output stream for the root handler (stdout by default)
    """
    settings = get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_app_context,
            structlog.stdlib.render_to_log_kwargs,
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

    json_handler = logging.StreamHandler(stream or sys.stdout)
    json_handler.setFormatter(build_formatter())
    root_logger.addHandler(json_handler)

    # SQL echo is controlled by DATABASE_ECHO, not LOG_LEVEL
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.INFO)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )
