"""
Structured logging configuration.

Uses structlog for JSON-formatted logs with request and order context.
Customer phone numbers and gateway credentials never reach the log stream
in clear text.
"""
import logging
import sys
from typing import Any

import structlog
from pythonjsonlogger import jsonlogger

from order_payments.config import get_settings

# Event keys holding customer phone numbers
PHONE_FIELDS = frozenset({"to", "phone", "phone_number", "customer_phone", "recipient"})

# Event keys holding credentials or signatures
SECRET_FIELDS = frozenset(
    {"api_key", "secret", "secret_key", "token", "access_token", "signature", "verif_hash", "password"}
)


def mask_phone(value: Any) -> Any:
    """Keep the country prefix and last three digits: ``+256******456``."""
    if not isinstance(value, str) or len(value) < 8:
        return value
    return value[:4] + "*" * (len(value) - 7) + value[-3:]


def redact_sensitive(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Mask phone numbers and drop credential values from an event."""
    for key in list(event_dict):
        if key in SECRET_FIELDS and event_dict[key]:
            event_dict[key] = "[redacted]"
        elif key in PHONE_FIELDS:
            event_dict[key] = mask_phone(event_dict[key])
    return event_dict


def add_app_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    settings = get_settings()
    event_dict["app_name"] = settings.app_name
    event_dict["app_env"] = settings.app_env
    return event_dict


def setup_logging() -> None:
    """
    Configure structlog over stdlib logging.

    Production emits one JSON object per line on stdout; the development
    environment gets structlog's console renderer instead.
    """
    settings = get_settings()
    renderer: Any = (
        structlog.dev.ConsoleRenderer()
        if settings.app_env == "development"
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            redact_sensitive,
            add_app_context,
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

    # Third-party records (uvicorn, SQLAlchemy) share the JSON shape
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured", log_level=settings.log_level, app_env=settings.app_env
    )
