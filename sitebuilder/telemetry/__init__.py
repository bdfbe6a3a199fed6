"""Structured logging and request correlation."""

from __future__ import annotations

from sitebuilder.telemetry.logging import (
    RequestIdMiddleware,
    bind_api_key_context,
    bind_tenant_context,
    clear_context,
    configure_logging,
    redact_secrets,
)

__all__ = [
    "RequestIdMiddleware",
    "bind_api_key_context",
    "bind_tenant_context",
    "clear_context",
    "configure_logging",
    "redact_secrets",
]
