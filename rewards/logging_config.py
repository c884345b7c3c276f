import logging

import structlog

from .config import Settings

REDACTED = "[REDACTED]"
SECRET_FIELDS = frozenset(
    {"key", "secret", "secret_key", "custody_key", "sealed_key", "private_key"}
)


def redact_secrets(logger, method_name, event_dict):
    for field in SECRET_FIELDS.intersection(event_dict):
        event_dict[field] = REDACTED
    return event_dict


def configure_logging(settings: Settings) -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            redact_secrets,
            structlog.processors.JSONRenderer()
            if settings.log_format == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(settings.log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
