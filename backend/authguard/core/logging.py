"""
Structured logging configuration.

Provides JSON-structured logging with request ids for production and a
readable format for development. Sensitive values are redacted before
anything is rendered.
"""
import logging
import re
import sys
from typing import Any

import structlog

from authguard.core.config import Settings

# Logger that receives security events the store could not persist
FALLBACK_LOGGER_NAME = "authguard.security.fallback"

SENSITIVE_FIELDS = [
    "password",
    "token",
    "api_key",
    "secret",
    "session_id",
    "authorization",
    "cookie",
    "x-admin-key",
]

EMAIL_PATTERN = re.compile(r"([A-Za-z0-9._%+-])[A-Za-z0-9._%+-]*@([A-Za-z0-9.-]+\.[A-Za-z]{2,})")


def setup_logging(settings: Settings) -> None:
    """
    Configure logging for the application.

    In production: JSON format with timestamps and request ids
    In development: Readable text format
    """
    log_level = getattr(logging, settings.LOG_LEVEL)

    if settings.DEBUG:
        configure_development_logging(log_level)
    else:
        configure_production_logging(log_level)


def configure_development_logging(level: int) -> None:
    """Configure logging for development (readable format)."""
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        stream=sys.stdout,
        force=True,
    )

    # Silence noisy SQLAlchemy engine logs
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.pool').setLevel(logging.WARNING)


def configure_production_logging(level: int) -> None:
    """Configure logging for production (JSON format)."""
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.ExtraAdder(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        redact_sensitive_data,
    ]

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Route stdlib loggers through the same processor chain
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.JSONRenderer(),
            ],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)


def redact_sensitive_data(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """
    Redact sensitive data from logs.

    Removes or masks:
    - API keys and tokens
    - Passwords
    - Session ids
    - E-mail addresses
    """
    redacted = event_dict.copy()

    for key, value in redacted.items():
        if isinstance(key, str):
            key_lower = key.lower()
            if any(sensitive in key_lower for sensitive in SENSITIVE_FIELDS):
                redacted[key] = "***REDACTED***"
            elif isinstance(value, str):
                redacted[key] = redact_string(value)

    return redacted


def redact_string(value: str) -> str:
    """
    Redact sensitive patterns from strings.

    Patterns:
    - E-mail addresses (keep first character and domain)
    - API keys and tokens (long alphanumeric strings)
    """
    if '@' in value:
        value = EMAIL_PATTERN.sub(r"\1***@\2", value)

    if len(value) > 20 and value.replace('_', '').replace('-', '').isalnum():
        return f"{value[:8]}...{value[-4:]}"

    return value


def get_fallback_logger() -> logging.Logger:
    """Logger used when a security event cannot be written to the store."""
    return logging.getLogger(FALLBACK_LOGGER_NAME)
