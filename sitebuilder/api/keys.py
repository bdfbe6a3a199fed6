"""API Key management endpoints.

Provides CRUD operations for API keys within a tenant. All endpoints
require a signed-in admin; API keys cannot manage API keys.

Routes (all under /api/tenants/{tenant_id}):
  POST   /api-keys                 - Create a new API key (returns raw key ONCE)
  GET    /api-keys                 - List keys for tenant (no raw keys)
  GET    /api-keys/{id}            - Get key details (no raw key)
  PATCH  /api-keys/{id}            - Update name, permissions, limit, expiry
  DELETE /api-keys/{id}            - Delete a key and its usage history
  POST   /api-keys/{id}/revoke     - Revoke a key
  POST   /api-keys/{id}/rotate     - Rotate a key (returns new raw key ONCE)
  GET    /api-keys/{id}/usage      - Usage history and statistics
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from sitebuilder.auth.dependencies import Principal, require_session_role
from sitebuilder.auth.permissions import ALL_PERMISSIONS
from sitebuilder.config import Settings, get_settings
from sitebuilder.database import get_db_session
from sitebuilder.models.api_key import APIKey
from sitebuilder.models.user import UserRole
from sitebuilder.services.api_keys import APIKeyNotFoundError, APIKeyService

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/tenants/{tenant_id}/api-keys", tags=["api-keys"])

keys_admin = require_session_role(UserRole.ADMIN)

NAME_PATTERN = r"^[a-zA-Z0-9\s\-_]+$"


# ------------------------------------------------------------------ #
# Request / Response schemas
# ------------------------------------------------------------------ #


def _check_permissions(permissions: list[str]) -> list[str]:
    unknown = sorted(set(permissions) - ALL_PERMISSIONS)
    if unknown:
        raise ValueError(f"Unknown permissions: {unknown}")
    if len(set(permissions)) != len(permissions):
        raise ValueError("Duplicate permissions are not allowed")
    return permissions


def _check_future(expires_at: datetime | None) -> datetime | None:
    if expires_at is None:
        return None
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=UTC)
    if expires_at <= datetime.now(UTC):
        raise ValueError("Expiration date must be in the future")
    return expires_at


class APIKeyCreate(BaseModel):
    """Request body for creating an API key."""

    name: str = Field(
        ...,
        min_length=1,
        max_length=255,
        pattern=NAME_PATTERN,
        description="Letters, numbers, spaces, hyphens and underscores",
    )
    permissions: list[str] = Field(
        ...,
        min_length=1,
        description="Granted tokens, e.g. ['read:pages', 'write:*']",
    )
    rate_limit: int = Field(
        default=1000,
        ge=10,
        le=10000,
        description="Max requests per hour",
    )
    expires_at: datetime | None = Field(
        None,
        description="Expiration timestamp (None = never expires)",
    )

    @field_validator("permissions")
    @classmethod
    def validate_permissions(cls, permissions: list[str]) -> list[str]:
        return _check_permissions(permissions)

    @field_validator("expires_at")
    @classmethod
    def validate_expires_at(cls, expires_at: datetime | None) -> datetime | None:
        return _check_future(expires_at)


class APIKeyUpdate(BaseModel):
    """Partial update; omitted fields are left unchanged."""

    name: str | None = Field(None, min_length=1, max_length=255, pattern=NAME_PATTERN)
    permissions: list[str] | None = Field(None, min_length=1)
    rate_limit: int | None = Field(None, ge=10, le=10000)
    is_active: bool | None = None
    expires_at: datetime | None = None

    @field_validator("permissions")
    @classmethod
    def validate_permissions(cls, permissions: list[str] | None) -> list[str] | None:
        return None if permissions is None else _check_permissions(permissions)

    @field_validator("expires_at")
    @classmethod
    def validate_expires_at(cls, expires_at: datetime | None) -> datetime | None:
        return _check_future(expires_at)


class APIKeyResponse(BaseModel):
    """API key details (never includes raw key or hash)."""

    id: uuid.UUID
    tenant_id: uuid.UUID
    name: str
    key_prefix: str
    permissions: list[str]
    rate_limit: int
    created_by: uuid.UUID | None
    created_at: datetime
    expires_at: datetime | None
    last_used_at: datetime | None
    is_active: bool
    revoked_at: datetime | None

    model_config = {"from_attributes": True}


class APIKeyCreateResponse(APIKeyResponse):
    """Response for key creation and rotation - includes the raw key ONCE."""

    key: str = Field(..., description="Raw API key - save this, it won't be shown again!")
    warning: str = Field(
        default="Save this key immediately. It will not be shown again for security reasons.",
        description="Security reminder",
    )


class APIKeyListResponse(BaseModel):
    items: list[APIKeyResponse]
    total: int
    page: int
    limit: int


class UsageRecordResponse(BaseModel):
    id: uuid.UUID
    endpoint: str
    method: str
    status_code: int
    response_time_ms: int
    ip_address: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class UsageStats(BaseModel):
    total_requests: int
    successful_requests: int = Field(..., description="Responses with status < 400")
    failed_requests: int
    avg_response_time_ms: float


class UsageResponse(BaseModel):
    items: list[UsageRecordResponse]
    stats: UsageStats
    page: int
    limit: int


# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def _created_response(api_key: APIKey, raw_key: str) -> APIKeyCreateResponse:
    return APIKeyCreateResponse(
        **APIKeyResponse.model_validate(api_key).model_dump(),
        key=raw_key,
    )


def _not_found(exc: APIKeyNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


# ------------------------------------------------------------------ #
# Endpoints
# ------------------------------------------------------------------ #


@router.post(
    "",
    response_model=APIKeyCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an API key",
)
async def create_api_key(
    tenant_id: uuid.UUID,
    body: APIKeyCreate,
    principal: Principal = Depends(keys_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> APIKeyCreateResponse:
    try:
        api_key, raw_key = await APIKeyService(db, settings=settings).create_key(
            tenant_id=tenant_id,
            name=body.name,
            permissions=body.permissions,
            created_by=principal.user_id,
            rate_limit=body.rate_limit,
            expires_at=body.expires_at,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return _created_response(api_key, raw_key)


@router.get("", response_model=APIKeyListResponse, summary="List API keys")
async def list_api_keys(
    tenant_id: uuid.UUID,
    is_active: bool | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    principal: Principal = Depends(keys_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> APIKeyListResponse:
    keys, total = await APIKeyService(db, settings=settings).list_keys(
        tenant_id, is_active=is_active, page=page, limit=limit
    )
    return APIKeyListResponse(
        items=[APIKeyResponse.model_validate(k) for k in keys],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/{key_id}", response_model=APIKeyResponse, summary="Get an API key")
async def get_api_key(
    tenant_id: uuid.UUID,
    key_id: uuid.UUID,
    principal: Principal = Depends(keys_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> APIKeyResponse:
    try:
        api_key = await APIKeyService(db, settings=settings).get_key(key_id, tenant_id)
    except APIKeyNotFoundError as exc:
        raise _not_found(exc) from exc
    return APIKeyResponse.model_validate(api_key)


@router.patch("/{key_id}", response_model=APIKeyResponse, summary="Update an API key")
async def update_api_key(
    tenant_id: uuid.UUID,
    key_id: uuid.UUID,
    body: APIKeyUpdate,
    principal: Principal = Depends(keys_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> APIKeyResponse:
    try:
        api_key = await APIKeyService(db, settings=settings).update_key(
            key_id,
            tenant_id,
            name=body.name,
            permissions=body.permissions,
            rate_limit=body.rate_limit,
            is_active=body.is_active,
            expires_at=body.expires_at,
        )
    except APIKeyNotFoundError as exc:
        raise _not_found(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return APIKeyResponse.model_validate(api_key)


@router.delete(
    "/{key_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete an API key",
    description="Permanently delete a key together with its usage history.",
)
async def delete_api_key(
    tenant_id: uuid.UUID,
    key_id: uuid.UUID,
    principal: Principal = Depends(keys_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> None:
    try:
        await APIKeyService(db, settings=settings).delete_key(key_id, tenant_id)
    except APIKeyNotFoundError as exc:
        raise _not_found(exc) from exc


@router.post("/{key_id}/revoke", response_model=APIKeyResponse, summary="Revoke an API key")
async def revoke_api_key(
    tenant_id: uuid.UUID,
    key_id: uuid.UUID,
    principal: Principal = Depends(keys_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> APIKeyResponse:
    try:
        api_key = await APIKeyService(db, settings=settings).revoke_key(key_id, tenant_id)
    except APIKeyNotFoundError as exc:
        raise _not_found(exc) from exc
    return APIKeyResponse.model_validate(api_key)


@router.post(
    "/{key_id}/rotate",
    response_model=APIKeyCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Rotate an API key",
    description="Issue a replacement with the same permissions and revoke the old key.",
)
async def rotate_api_key(
    tenant_id: uuid.UUID,
    key_id: uuid.UUID,
    principal: Principal = Depends(keys_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> APIKeyCreateResponse:
    try:
        api_key, raw_key = await APIKeyService(db, settings=settings).rotate_key(
            key_id, tenant_id, created_by=principal.user_id
        )
    except APIKeyNotFoundError as exc:
        raise _not_found(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return _created_response(api_key, raw_key)


@router.get("/{key_id}/usage", response_model=UsageResponse, summary="API key usage")
async def get_api_key_usage(
    tenant_id: uuid.UUID,
    key_id: uuid.UUID,
    since: datetime | None = None,
    until: datetime | None = None,
    endpoint: str | None = None,
    method: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    principal: Principal = Depends(keys_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> UsageResponse:
    try:
        report = await APIKeyService(db, settings=settings).usage(
            key_id,
            tenant_id,
            since=since,
            until=until,
            endpoint=endpoint,
            method=method,
            page=page,
            limit=limit,
        )
    except APIKeyNotFoundError as exc:
        raise _not_found(exc) from exc
    return UsageResponse(
        items=[UsageRecordResponse.model_validate(r) for r in report.records],
        stats=UsageStats(
            total_requests=report.total,
            successful_requests=report.successful,
            failed_requests=report.failed,
            avg_response_time_ms=report.avg_response_time_ms,
        ),
        page=page,
        limit=limit,
    )
