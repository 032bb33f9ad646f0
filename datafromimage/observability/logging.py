"""
Structured logging for the datafromimage service.

structlog renders every record (ours and stdlib `logging` calls routed
through it) as JSON in production or as console lines in development.
Each record carries the request's correlation ids and the authenticated
account, and is scrubbed of payment secrets, bearer tokens, webhook
signatures, email local parts and inline image payloads.
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Any

import structlog
from structlog.types import EventDict, Processor

# Request-scoped values; asyncio tasks inherit them from the request handler
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
account_id_var: ContextVar[str | None] = ContextVar("account_id", default=None)
trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)

_CONTEXT_VARS = (
    ("request_id", request_id_var),
    ("account_id", account_id_var),
    ("trace_id", trace_id_var),
)

SECRET_KEYS = frozenset(
    {
        "api_key",
        "authorization",
        "secret",
        "secret_key",
        "webhook_secret",
        "token",
        "access_token",
        "signature",
        "stripe_signature",
    }
)

# Longer values keep this many leading/trailing characters for debugging
_MASK_MIN_LENGTH = 12
_MASK_PREFIX = 8
_MASK_SUFFIX = 3


def add_request_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Copy request_id, account_id and trace_id from the current context."""
    for key, var in _CONTEXT_VARS:
        value = var.get()
        if value:
            event_dict.setdefault(key, value)
    return event_dict


class ServiceMetadata:
    """Processor stamping service name, version and environment on every record."""

    def __init__(self, service: str, version: str, environment: str):
        self._fields = {"service": service, "version": version, "environment": environment}

    def __call__(self, logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        for key, value in self._fields.items():
            event_dict.setdefault(key, value)
        return event_dict


def _mask(value: str) -> str:
    if len(value) > _MASK_MIN_LENGTH:
        return f"{value[:_MASK_PREFIX]}***{value[-_MASK_SUFFIX:]}"
    return "***REDACTED***"


def redact_sensitive_fields(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Scrub secrets and personal data before rendering.

    - Secret-bearing keys (SECRET_KEYS): masked, e.g. sk_live_***nop
    - email: local part dropped (alice@example.com -> ***@example.com)
    - data: URLs (inline images): replaced by their size
    """
    for key, value in event_dict.items():
        if not isinstance(value, str):
            continue

        lowered = key.lower()
        if lowered in SECRET_KEYS:
            event_dict[key] = _mask(value)
        elif lowered == "email" and "@" in value:
            event_dict[key] = f"***@{value.rsplit('@', 1)[1]}"
        elif value.startswith("data:") and ";base64," in value:
            event_dict[key] = f"<data url, {len(value)} chars>"

    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    colorized: bool = False,
    service_name: str = "datafromimage",
    service_version: str = "0.1.0",
    environment: str = "development",
) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: JSON lines (production) or console rendering (development)
        colorized: Colorize console output
        service_name, service_version, environment: Stamped on every record

    A JSON record looks like:
        {"event": "Payment reconciled", "level": "info",
         "timestamp": "2025-01-15T10:30:45.123456Z", "service": "datafromimage",
         "request_id": "req_4f1c...", "account_id": "user-alice", "credits": 100}
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_request_context,
        ServiceMetadata(service_name, service_version, environment),
        redact_sensitive_fields,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=colorized))

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
    return structlog.get_logger(name)


class RequestContext:
    """
    Bind correlation ids (and optionally the account) for one request.

    Ids are generated when not supplied. account_id is always set, even to
    None, so a previous request's account can never leak into this one.
    """

    def __init__(
        self,
        account_id: str | None = None,
        trace_id: str | None = None,
        request_id: str | None = None,
    ):
        self.request_id = request_id or f"req_{uuid.uuid4().hex[:16]}"
        self.account_id = account_id
        self.trace_id = trace_id or f"trace_{uuid.uuid4().hex[:16]}"
        self._tokens: list = []

    def __enter__(self):
        values = {
            "request_id": self.request_id,
            "account_id": self.account_id,
            "trace_id": self.trace_id,
        }
        self._tokens = [(var, var.set(values[key])) for key, var in _CONTEXT_VARS]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens = []


class OperationContext:
    """
    Time a block and log its outcome.

        with OperationContext("vision_extraction", images=3):
            texts = await vision.extract_batch(...)

    Logs "<operation> completed" (info) or "<operation> failed" (error) with
    latency_ms and the given fields.
    """

    def __init__(self, operation: str, **fields):
        self.operation = operation
        self.fields = fields
        self.logger = get_logger(f"operation.{operation}")
        self.start_time = 0.0

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.logger.debug(f"{self.operation} started", **self.fields)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        latency_ms = round((time.perf_counter() - self.start_time) * 1000, 2)

        if exc_type is None:
            self.logger.info(f"{self.operation} completed", latency_ms=latency_ms, **self.fields)
        else:
            self.logger.error(
                f"{self.operation} failed",
                latency_ms=latency_ms,
                exception_type=exc_type.__name__,
                **self.fields,
            )


def set_account_id(account_id: str) -> None:
    """Attach the authenticated account to the current request's logs."""
    account_id_var.set(account_id)
