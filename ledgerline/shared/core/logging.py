import sys
import structlog
import logging
from ledgerline.shared.core.config import get_settings


def pii_redactor(logger, method_name, event_dict):
    """
    Redact PII and payment secrets from logs before they reach the sink.
    """
    pii_fields = {
        "email", "customer_email", "phone", "password", "token", "secret",
        "api_key", "signature", "payment_method", "authorization_code",
    }

    for field in pii_fields:
        if field in event_dict:
            event_dict[field] = "[REDACTED]"

    for container in ["metadata", "payload", "details", "extra"]:
        if container in event_dict and isinstance(event_dict[container], dict):
            for field in pii_fields:
                if field in event_dict[container]:
                    event_dict[container][field] = "[REDACTED]"

    return event_dict


def setup_logging():
    settings = get_settings()

    if settings.DEBUG:
        renderer = structlog.dev.ConsoleRenderer()
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        min_level = logging.INFO

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        pii_redactor,
        renderer
    ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Route stdlib loggers (uvicorn, apscheduler, sqlalchemy) to stdout as well
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=min_level,
    )
