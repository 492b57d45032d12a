"""
Structured logging configuration.

Every log line is a JSON event. Queue workers bind the job they are running
(queue, job id, attempt) into contextvars, so lines emitted deep inside the
payment service or an OCR provider still say which job produced them.
Receipt images and API credentials never reach the output.
"""
import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import structlog
from pythonjsonlogger import jsonlogger

from payment_verification.config import Settings, get_settings

# Filled by setup_logging from the settings it was given
_app_context: dict[str, Any] = {}

SENSITIVE_FIELDS = frozenset(
    {
        "image_base64",
        "api_token",
        "api_key",
        "messaging_api_token",
        "google_vision_api_key",
        "azure_vision_key",
    }
)


def add_app_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    event_dict.update(_app_context)
    return event_dict


def mask_sensitive_fields(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Replace receipt images and credentials with a short marker.

    A base64 receipt can run to megabytes; its size is all a log reader needs.
    """
    for key in SENSITIVE_FIELDS & event_dict.keys():
        value = event_dict[key]
        if key == "image_base64" and isinstance(value, str):
            event_dict[key] = f"<{len(value)} base64 chars>"
        elif value is not None:
            event_dict[key] = "<masked>"
    return event_dict


@contextmanager
def job_log_context(queue: str, job_id: str, attempt: int) -> Iterator[None]:
    """Bind a running job to every log line emitted until the block exits."""
    with structlog.contextvars.bound_contextvars(queue=queue, job_id=job_id, attempt=attempt):
        yield


def setup_logging(settings: Settings | None = None) -> None:
    """
    Configure structlog and the stdlib root logger for JSON output on stdout.

    Args:
        settings: Optional settings (defaults to the cached environment settings)
    """
    settings = settings or get_settings()
    _app_context.update(app_name=settings.app_name, app_env=settings.app_env)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            mask_sensitive_fields,
            add_app_context,
            structlog.processors.JSONRenderer(),
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

    # Third-party stdlib loggers (sqlalchemy, httpx, tenacity) share the format
    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(json_handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.INFO)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
        job_store=settings.job_store,
        ocr_provider=settings.ocr_provider,
    )
