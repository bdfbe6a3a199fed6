"""FastAPI dependencies for authentication and authorization.

These dependencies are injected into route handlers via Depends().

Key dependencies:
- get_principal: resolve the caller from an API key (preferred) or a
  session JWT
- require_api_permission: per-route declaration of the resource a route
  touches; API keys need the matching permission token, session users
  need a write-capable role for non-GET methods
- require_session_role: session-only routes (API key management)

Every tenant-scoped route has a ``tenant_id`` path parameter; a principal
may only address its own tenant.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable

import structlog
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from sitebuilder.auth.api_key_auth import authenticate_api_key, extract_api_key
from sitebuilder.auth.permissions import Resource, has_permission, permission_for
from sitebuilder.auth.tokens import TokenValidationError, validate_token
from sitebuilder.config import Settings, get_settings
from sitebuilder.database import get_db_session
from sitebuilder.models.user import User, UserRole
from sitebuilder.services.api_keys import ResolvedAuth
from sitebuilder.telemetry.logging import bind_tenant_context

log = structlog.get_logger(__name__)

_WRITE_ROLES = frozenset({UserRole.ADMIN, UserRole.OPERATOR})


class Principal:
    """Lightweight container passed to route handlers.

    Exactly one of ``user`` (session auth) or ``api_key`` (API key auth)
    is set.
    """

    def __init__(
        self,
        *,
        tenant_id: uuid.UUID,
        user: User | None = None,
        api_key: ResolvedAuth | None = None,
    ) -> None:
        self.tenant_id = tenant_id
        self.user = user
        self.api_key = api_key

    @property
    def is_api_key(self) -> bool:
        return self.api_key is not None

    @property
    def user_id(self) -> uuid.UUID | None:
        return self.user.id if self.user is not None else None

    @property
    def role(self) -> UserRole | None:
        return self.user.role if self.user is not None else None


async def _session_principal(
    request: Request,
    db: AsyncSession,
    settings: Settings,
) -> Principal:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = auth_header.removeprefix("Bearer ").strip()
    try:
        claims = validate_token(token, settings)
        user_id = uuid.UUID(str(claims["sub"]))
        tenant_id = uuid.UUID(str(claims["tenant_id"]))
    except (TokenValidationError, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc

    result = await db.execute(
        select(User).where(User.id == user_id, User.tenant_id == tenant_id)
    )
    user = result.scalar_one_or_none()
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated",
        )

    bind_tenant_context(tenant_id)
    return Principal(tenant_id=tenant_id, user=user)


async def get_principal(
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> Principal:
    """Resolve the caller.

    Priority:
    1. API key (Bearer sb_... or X-API-Key)
    2. Session JWT (Bearer)

    Raises HTTP 401 if neither is presented or valid.
    """
    raw_key = extract_api_key(request)
    if raw_key is not None:
        resolved = await authenticate_api_key(request, raw_key, db)
        return Principal(tenant_id=resolved.tenant_id, api_key=resolved)
    return await _session_principal(request, db, settings)


def _ensure_tenant(principal: Principal, tenant_id: uuid.UUID) -> None:
    if principal.tenant_id != tenant_id:
        log.warning(
            "auth.cross_tenant_denied",
            principal_tenant=str(principal.tenant_id),
            requested_tenant=str(tenant_id),
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access to this tenant is not allowed",
        )


def require_api_permission(resource: Resource) -> Callable:
    """Dependency factory binding a route to the resource it operates on.

    The action comes from the request method, so one declaration per
    router covers read, write and delete routes.

    Usage:
        router = APIRouter(
            dependencies=[Depends(require_api_permission(Resource.WEBHOOKS))],
        )
    """

    async def _check_permission(
        request: Request,
        tenant_id: uuid.UUID,
        principal: Principal = Depends(get_principal),
    ) -> Principal:
        _ensure_tenant(principal, tenant_id)
        required = permission_for(resource, request.method)
        if required is None:
            return principal

        if principal.api_key is not None:
            if not has_permission(principal.api_key.permissions, required):
                log.warning(
                    "api_key.permission_denied",
                    key_id=str(principal.api_key.api_key_id),
                    required=required,
                )
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail=f"Permission denied: {required} required",
                )
        elif request.method != "GET" and principal.role not in _WRITE_ROLES:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions for this action",
            )
        return principal

    return _check_permission


def require_session_role(*allowed_roles: UserRole) -> Callable:
    """Dependency factory for routes reserved to signed-in users.

    API keys are refused even when they carry ``admin:all``, so a leaked
    key cannot mint or rotate other keys.
    """

    async def _check_role(
        tenant_id: uuid.UUID,
        principal: Principal = Depends(get_principal),
    ) -> Principal:
        _ensure_tenant(principal, tenant_id)
        if principal.user is None or principal.role not in allowed_roles:
            # Security: Don't reveal specific role requirements in error messages
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions for this action",
            )
        return principal

    return _check_role
