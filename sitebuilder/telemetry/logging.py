"""Structured logging configuration.

Configures structlog with JSON output in production and a console
renderer in development. Every entry carries the request_id bound by
RequestIdMiddleware and, once authentication has resolved it, the
tenant_id / api_key_id of the caller.

Log format (production):
    {
        "timestamp": "2026-02-17T10:30:45.123456Z",
        "level": "info",
        "event": "webhook.delivered",
        "request_id": "req_789...",
        "tenant_id": "tenant_uuid",
        "webhook_id": "webhook_uuid",
        "status_code": 200
    }

Secrets, full API keys and hashes are never passed to the logger; keys
are identified by prefix or id. ``redact_secrets`` masks any that slip
through anyway.
"""

from __future__ import annotations

import logging
import re
import sys
import uuid
from typing import Any

import structlog
from structlog.types import EventDict, Processor

REDACTED = "[redacted]"

# Field names whose values are never written out
SENSITIVE_FIELDS = frozenset(
    {"secret", "raw_key", "key", "key_hash", "signature", "authorization", "x-api-key"}
)

# A full API key; the 12-char prefix is safe to keep
_FULL_KEY = re.compile(r"\b(sb_(?:live|test)_[0-9a-f]{4})[0-9a-f]{60}\b")


def _scrub(value: Any) -> Any:
    if isinstance(value, str):
        return _FULL_KEY.sub(r"\1...", value)
    if isinstance(value, dict):
        return {
            k: REDACTED if str(k).lower() in SENSITIVE_FIELDS else _scrub(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(_scrub(v) for v in value)
    return value


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask webhook secrets, key hashes and full API keys in log entries.

    Args:
        logger: Logger instance
        method_name: Method name being called
        event_dict: Event dictionary to scrub

    Returns:
        The event dictionary with sensitive values replaced
    """
    for field, value in event_dict.items():
        if field.lower() in SENSITIVE_FIELDS:
            event_dict[field] = REDACTED
        else:
            event_dict[field] = _scrub(value)
    return event_dict


def configure_logging(
    *,
    json_logs: bool = False,
    log_level: str = "INFO",
) -> None:
    """Configure structured logging for the application.

    Args:
        json_logs: Use JSON format (True for production, False for dev)
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        redact_secrets,
    ]

    if json_logs:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ------------------------------------------------------------------ #
# Request ID Middleware
# ------------------------------------------------------------------ #


class RequestIdMiddleware:
    """Pure ASGI middleware that generates and propagates request IDs.

    Binds a unique request_id into the structlog context variables for
    the duration of the request and echoes it in the X-Request-ID
    response header.
    """

    def __init__(self, app: Any) -> None:
        self.app = app

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = f"req_{uuid.uuid4().hex[:16]}"

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        async def send_with_request_id(message: dict[str, Any]) -> None:
            if message["type"] == "http.response.start":
                headers = list(message.get("headers", []))
                headers.append((b"x-request-id", request_id.encode()))
                message["headers"] = headers
            await send(message)

        await self.app(scope, receive, send_with_request_id)


# ------------------------------------------------------------------ #
# Context Binding Helpers
# ------------------------------------------------------------------ #


def bind_tenant_context(tenant_id: str | uuid.UUID) -> None:
    """Bind tenant ID to log context for this request."""
    structlog.contextvars.bind_contextvars(tenant_id=str(tenant_id))


def bind_api_key_context(api_key_id: str | uuid.UUID) -> None:
    """Bind the authenticating API key to log context for this request."""
    structlog.contextvars.bind_contextvars(api_key_id=str(api_key_id))


def clear_context() -> None:
    """Clear all context variables (useful for testing)."""
    structlog.contextvars.clear_contextvars()
