"""
Structured Logging with Structlog.

Provides JSON-formatted logs with request context. Provider secrets never reach
the output: Stripe keys, webhook secrets and API keys are masked by a processor
that runs before rendering.
"""

import logging
import re
import sys
from typing import Any
from uuid import UUID

import structlog
from structlog.types import EventDict, Processor

from inspect_billing.config import settings

# Keys whose values are always masked
SENSITIVE_KEYS = frozenset(
    {"api_key", "x_api_key", "stripe_api_key", "stripe_webhook_secret", "signature", "client_secret"}
)

# sk_live_..., rk_test_..., whsec_...
_SECRET_PATTERN = re.compile(r"\b(?:sk|rk)_(?:live|test)_[A-Za-z0-9]+|\bwhsec_[A-Za-z0-9]+")

# Libraries that are chatty at INFO
_QUIET_LOGGERS = ("stripe", "sqlalchemy.engine", "httpx")


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application-level context to all log entries."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


def stringify_identifiers(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Organization, entry and session ids render as plain strings."""
    for key, value in event_dict.items():
        if isinstance(value, UUID):
            event_dict[key] = str(value)
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask credential-looking values."""
    for key, value in event_dict.items():
        if key in SENSITIVE_KEYS and value:
            event_dict[key] = "***"
        elif isinstance(value, str) and ("_test_" in value or "_live_" in value or "whsec_" in value):
            event_dict[key] = _SECRET_PATTERN.sub("***", value)
    return event_dict


def setup_logging() -> None:
    """
    Configure structured logging with structlog.

    Logs are formatted as JSON for machine parsing with the following structure:
    {
        "event": "checkout_session_reconciled",
        "level": "info",
        "timestamp": "2026-10-19T12:00:00.123456Z",
        "logger": "inspect_billing.services.reconciler",
        "service": "inspection-billing-api",
        "version": "0.1.0",
        "request_id": "req-123",
        "organization_id": "5b0c...",
        ...additional context
    }
    """
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        stringify_identifiers,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.log_level.upper() == "DEBUG":
        processors.append(structlog.processors.ExceptionRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("ledger_entry_appended", organization_id=org_id, kind="grant")
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Bind organization or request context for every log line inside the block.

    Usage:
        with log_context(request_id="req-123", organization_id=str(org_id)):
            logger.info("checkout_started")
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs

    def __enter__(self) -> None:
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context.keys())
