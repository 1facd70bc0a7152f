"""
Structured logging with JSON output for production observability.

Features:
- JSON output for log aggregation
- Request context propagation (request_id, user_id, event_id)
- Secret and signature redaction

Architecture:
- structlog for structured logging
- Context variables for request-scoped data
- Processors for formatting and enrichment
- JSON for production, console renderer for development
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar

import structlog
from structlog.types import EventDict, Processor

# Context variables for request-scoped data
# These propagate across async boundaries automatically
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
event_id_var: ContextVar[str | None] = ContextVar("event_id", default=None)


# ============================================================================
# CUSTOM PROCESSORS
# ============================================================================


def add_request_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Add request context to log events.

    Injects:
    - request_id: Unique ID for each HTTP request or job run
    - user_id: Billing subject of the current operation (if known)
    - event_id: Provider event being processed (webhooks only)
    """
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id

    user_id = user_id_var.get()
    if user_id and "user_id" not in event_dict:
        event_dict["user_id"] = user_id

    event_id = event_id_var.get()
    if event_id and "event_id" not in event_dict:
        event_dict["event_id"] = event_id

    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add ISO 8601 UTC timestamp with microsecond precision."""
    now = time.time()
    event_dict["timestamp"] = (
        time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(now)) + f".{int((now % 1) * 1000000):06d}Z"
    )
    return event_dict


def add_service_metadata(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Add service metadata for log aggregation.

    Configured via LOGGING_SERVICE_NAME, LOGGING_SERVICE_VERSION and
    LOGGING_ENVIRONMENT.
    """
    # Import here to avoid circular dependency
    try:
        from tollgate.config import get_settings

        settings = get_settings()
        event_dict["service"] = settings.logging.service_name
        event_dict["version"] = settings.logging.service_version
        event_dict["environment"] = settings.logging.environment
    except Exception:
        # Fallback if config not available
        event_dict["service"] = "tollgate"
        event_dict["version"] = "0.1.0"
        event_dict["environment"] = "development"
    return event_dict


SENSITIVE_FIELDS = frozenset(
    {
        "api_key",
        "authorization",
        "secret",
        "webhook_secret",
        "signature",
        "token",
        "cron_secret",
    }
)


def redact_sensitive_fields(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Redact credentials and signatures.

    Long values keep a short prefix for correlation; short values are fully
    masked. Email addresses keep only their domain.
    """
    for key in list(event_dict.keys()):
        value = event_dict[key]
        if key.lower() in SENSITIVE_FIELDS and isinstance(value, str):
            if len(value) > 12:
                event_dict[key] = f"{value[:6]}***"
            else:
                event_dict[key] = "***REDACTED***"

        if key.lower() == "email" and isinstance(value, str) and "@" in value:
            event_dict[key] = f"***@{value.split('@')[1]}"

    return event_dict


# ============================================================================
# LOGGER CONFIGURATION
# ============================================================================


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    colorized: bool = False,
) -> None:
    """
    Configure structured logging.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Use JSON output (True for production, False for development)
        colorized: Colorize console output (only for development)

    JSON output:
        {
          "timestamp": "2025-01-15T10:30:45.123456Z",
          "level": "info",
          "event": "Webhook event processed",
          "service": "tollgate",
          "request_id": "req_abc123",
          "event_id": "subscription_created:1234:2025-01-15T10:30:00Z",
          "event_type": "subscription_created"
        }
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_request_context,
        add_service_metadata,
        redact_sensitive_fields,
        add_timestamp,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
    ]

    if json_output:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=colorized),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("Usage reported", user_id="u_1", action_id="a_1")
    """
    return structlog.get_logger(name)


# ============================================================================
# CONTEXT MANAGERS
# ============================================================================


class RequestContext:
    """
    Context manager for request-scoped logging.

    Generates a request_id when none is supplied and propagates user_id and
    event_id to every log line emitted inside the block.

    Usage:
        with RequestContext(event_id=envelope.event_id):
            logger.info("Processing webhook")
    """

    def __init__(
        self,
        user_id: str | None = None,
        event_id: str | None = None,
        request_id: str | None = None,
    ):
        self.request_id = request_id or f"req_{uuid.uuid4().hex[:16]}"
        self.user_id = user_id
        self.event_id = event_id

        self._request_id_token = None
        self._user_id_token = None
        self._event_id_token = None

    def __enter__(self):
        self._request_id_token = request_id_var.set(self.request_id)
        # Always set (even None) so the reset below cannot leak a value set
        # later in the block into the next request.
        self._user_id_token = user_id_var.set(self.user_id)
        self._event_id_token = event_id_var.set(self.event_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._request_id_token is not None:
            request_id_var.reset(self._request_id_token)
        if self._user_id_token is not None:
            user_id_var.reset(self._user_id_token)
        if self._event_id_token is not None:
            event_id_var.reset(self._event_id_token)


def set_event_id(event_id: str) -> None:
    """Set provider event ID for current context."""
    event_id_var.set(event_id)


def get_request_id() -> str | None:
    return request_id_var.get()


def get_user_id() -> str | None:
    return user_id_var.get()


def get_event_id() -> str | None:
    return event_id_var.get()
