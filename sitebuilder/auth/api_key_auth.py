"""API key authentication stage.

API keys can be provided via:
1. Authorization: Bearer sb_... header (preferred)
2. X-API-Key header (fallback)

A Bearer value that is not shaped like an API key is left for session
token validation. Absence of a key is not an error here; the caller
decides whether to fall back to session auth.

Failures are terminal for the request:
- 401 "Invalid or expired API key" for every credential problem, so the
  response never tells an unknown key from a wrong one
- 403 "Tenant account is suspended" when the key is fine but its tenant
  is not
"""

from __future__ import annotations

import structlog
from fastapi import HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from sitebuilder.services.api_keys import APIKeyService, InvalidAPIKeyError, ResolvedAuth
from sitebuilder.telemetry.logging import bind_api_key_context, bind_tenant_context

log = structlog.get_logger(__name__)

API_KEY_MARKER = "sb_"
API_KEY_HEADER = "X-API-Key"


def extract_api_key(request: Request) -> str | None:
    """Return the presented API key, or None if the request carries none."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header.removeprefix("Bearer ").strip()
        if token.startswith(API_KEY_MARKER):
            return token

    header_key = request.headers.get(API_KEY_HEADER, "").strip()
    return header_key or None


async def authenticate_api_key(
    request: Request,
    raw_key: str,
    db: AsyncSession,
) -> ResolvedAuth:
    """Validate ``raw_key`` and attach the result to the request.

    On success the key is stored on ``request.state.api_key_auth`` (the
    usage-recording stage reads it) and a last-used update is queued.

    Raises:
        HTTPException: 401 for any invalid key, 403 for a suspended tenant.
    """
    try:
        resolved = await APIKeyService(db).validate_key(raw_key)
    except InvalidAPIKeyError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc

    bind_tenant_context(resolved.tenant_id)
    bind_api_key_context(resolved.api_key_id)
    request.state.api_key_auth = resolved

    if resolved.tenant_suspended:
        log.warning("api_key.tenant_suspended", key_id=str(resolved.api_key_id))
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Tenant account is suspended",
        )

    recorder = getattr(request.app.state, "usage_recorder", None)
    if recorder is not None:
        recorder.touch(resolved.api_key_id)

    log.info("api_key.auth_success", key_id=str(resolved.api_key_id))
    return resolved
