"""Webhook management API endpoints.

Routes (all under /api/tenants/{tenant_id}):
  POST   /webhooks                              - Register a new webhook
  GET    /webhooks                              - List webhooks for tenant
  GET    /webhooks/{webhook_id}                 - Webhook details
  PUT    /webhooks/{webhook_id}                 - Update a webhook
  DELETE /webhooks/{webhook_id}                 - Remove a webhook
  POST   /webhooks/{webhook_id}/test            - Send a test event
  POST   /webhooks/{webhook_id}/rotate-secret   - Replace the signing secret
  GET    /webhooks/{webhook_id}/deliveries      - Delivery history
  POST   /webhooks/{webhook_id}/retry           - Requeue failed deliveries

Callers need the ``<action>:webhooks`` permission (API keys) or a
write-capable role for non-GET routes (session users).
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Annotated, Any

import httpx
import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import AnyUrl, BaseModel, Field, UrlConstraints, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from sitebuilder.auth.dependencies import Principal, require_api_permission
from sitebuilder.auth.permissions import Resource
from sitebuilder.auth.pipeline import MeteredRoute
from sitebuilder.config import Settings, get_settings
from sitebuilder.database import get_db_session
from sitebuilder.models.webhook import URL_MAX_LENGTH
from sitebuilder.services.dispatcher import EventDispatcher
from sitebuilder.services.webhook import (
    SUPPORTED_EVENTS,
    UnknownEventError,
    WebhookInactiveError,
    WebhookNotFoundError,
    WebhookService,
)

log = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/api/tenants/{tenant_id}/webhooks",
    tags=["webhooks"],
    route_class=MeteredRoute,
)

webhooks_access = require_api_permission(Resource.WEBHOOKS)

WebhookURL = Annotated[
    AnyUrl,
    UrlConstraints(max_length=URL_MAX_LENGTH, allowed_schemes=["http", "https"]),
]


def get_dispatcher(request: Request) -> EventDispatcher:
    return request.app.state.dispatcher


def get_http_client(request: Request) -> httpx.AsyncClient | None:
    return getattr(request.app.state, "http_client", None)


# ------------------------------------------------------------------ #
# Pydantic schemas
# ------------------------------------------------------------------ #


def _check_events(events: list[str]) -> list[str]:
    unknown = sorted(set(events) - set(SUPPORTED_EVENTS))
    if unknown:
        raise ValueError(f"Unknown event types: {unknown}")
    if len(set(events)) != len(events):
        raise ValueError("Duplicate events are not allowed")
    return events


class WebhookCreateRequest(BaseModel):
    """Request body for registering a new webhook endpoint."""

    url: WebhookURL = Field(
        ...,
        description="Absolute http(s) endpoint that will receive event POST requests.",
        examples=["https://hooks.example.com/sitebuilder"],
    )
    events: list[str] = Field(
        ...,
        description=f"Event types to subscribe to. Supported: {list(SUPPORTED_EVENTS)}",
        min_length=1,
        examples=[["page.published", "page.updated"]],
    )
    is_active: bool = Field(default=True, description="Start delivering immediately.")
    max_failures: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Consecutive failures before the webhook is disabled.",
    )
    retry_backoff: int = Field(
        default=60,
        ge=10,
        le=3600,
        description="Base retry delay in seconds; doubles on each further attempt.",
    )

    @field_validator("events")
    @classmethod
    def validate_events(cls, events: list[str]) -> list[str]:
        return _check_events(events)


class WebhookUpdateRequest(BaseModel):
    """Partial update; omitted fields are left unchanged."""

    url: WebhookURL | None = None
    events: list[str] | None = Field(default=None, min_length=1)
    is_active: bool | None = Field(
        default=None,
        description="Setting true on a disabled webhook also clears its failure count.",
    )
    max_failures: int | None = Field(default=None, ge=1, le=20)
    retry_backoff: int | None = Field(default=None, ge=10, le=3600)

    @field_validator("events")
    @classmethod
    def validate_events(cls, events: list[str] | None) -> list[str] | None:
        return None if events is None else _check_events(events)


class WebhookResponse(BaseModel):
    """Webhook details. Never includes the signing secret."""

    id: uuid.UUID
    tenant_id: uuid.UUID
    url: str
    events: list[str]
    is_active: bool
    failure_count: int = Field(..., description="Consecutive failed deliveries.")
    max_failures: int
    retry_backoff: int
    last_triggered_at: datetime | None = None
    last_status_code: int | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class WebhookSecretResponse(WebhookResponse):
    """Returned on registration and rotation only."""

    secret: str = Field(
        ...,
        description=(
            "HMAC-SHA256 signing secret. Deliveries carry "
            "'X-Webhook-Signature: sha256=<hex>'. Store it now; it is not shown again."
        ),
    )


class WebhookListResponse(BaseModel):
    items: list[WebhookResponse]
    total: int
    page: int
    limit: int


class DeliveryResponse(BaseModel):
    """A single webhook delivery attempt record."""

    id: uuid.UUID = Field(..., description="Delivery id, sent as X-Webhook-Delivery.")
    webhook_id: uuid.UUID
    event_id: uuid.UUID = Field(..., description="Shared by all attempts of one event.")
    event_type: str
    payload: dict[str, Any]
    attempt: int
    is_test: bool
    success: bool
    status_code: int | None = Field(None, description="NULL when the request never completed.")
    response_body: str | None = None
    error_message: str | None = None
    duration_ms: int
    created_at: datetime

    model_config = {"from_attributes": True}


class DeliveryListResponse(BaseModel):
    items: list[DeliveryResponse]
    total: int
    page: int
    limit: int


class WebhookTestRequest(BaseModel):
    """Optional body for a manual test delivery."""

    event_type: str = Field(default="page.updated", examples=["page.published"])
    payload: dict[str, Any] | None = Field(
        default=None,
        description="Custom payload; defaults to a small synthetic one.",
    )

    @field_validator("event_type")
    @classmethod
    def validate_event_type(cls, event_type: str) -> str:
        _check_events([event_type])
        return event_type


class RetryResponse(BaseModel):
    queued: int = Field(..., description="Number of failed deliveries requeued.")


# ------------------------------------------------------------------ #
# Endpoints
# ------------------------------------------------------------------ #


def _not_found(exc: WebhookNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.post(
    "",
    response_model=WebhookSecretResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a webhook endpoint",
    responses={
        201: {"description": "Webhook registered; the secret is shown once."},
        400: {"description": "Invalid event types."},
        422: {"description": "Request validation error."},
    },
)
async def register_webhook(
    tenant_id: uuid.UUID,
    body: WebhookCreateRequest,
    principal: Principal = Depends(webhooks_access),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> WebhookSecretResponse:
    svc = WebhookService(db, settings=settings)
    try:
        webhook = await svc.register(
            tenant_id,
            str(body.url),
            body.events,
            is_active=body.is_active,
            max_failures=body.max_failures,
            retry_backoff=body.retry_backoff,
        )
    except UnknownEventError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return WebhookSecretResponse.model_validate(webhook)


@router.get("", response_model=WebhookListResponse, summary="List registered webhooks")
async def list_webhooks(
    tenant_id: uuid.UUID,
    is_active: bool | None = None,
    event: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    principal: Principal = Depends(webhooks_access),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> WebhookListResponse:
    webhooks, total = await WebhookService(db, settings=settings).list_for_tenant(
        tenant_id, is_active=is_active, event=event, page=page, limit=limit
    )
    return WebhookListResponse(
        items=[WebhookResponse.model_validate(w) for w in webhooks],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/{webhook_id}", response_model=WebhookResponse, summary="Get a webhook")
async def get_webhook(
    tenant_id: uuid.UUID,
    webhook_id: uuid.UUID,
    principal: Principal = Depends(webhooks_access),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> WebhookResponse:
    try:
        webhook = await WebhookService(db, settings=settings).get(webhook_id, tenant_id)
    except WebhookNotFoundError as exc:
        raise _not_found(exc) from exc
    return WebhookResponse.model_validate(webhook)


@router.put("/{webhook_id}", response_model=WebhookResponse, summary="Update a webhook")
async def update_webhook(
    tenant_id: uuid.UUID,
    webhook_id: uuid.UUID,
    body: WebhookUpdateRequest,
    principal: Principal = Depends(webhooks_access),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> WebhookResponse:
    try:
        webhook = await WebhookService(db, settings=settings).update(
            webhook_id,
            tenant_id,
            url=str(body.url) if body.url is not None else None,
            events=body.events,
            is_active=body.is_active,
            max_failures=body.max_failures,
            retry_backoff=body.retry_backoff,
        )
    except WebhookNotFoundError as exc:
        raise _not_found(exc) from exc
    except UnknownEventError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return WebhookResponse.model_validate(webhook)


@router.delete(
    "/{webhook_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a webhook",
    description="Remove a registered webhook endpoint. All delivery history is also deleted.",
)
async def delete_webhook(
    tenant_id: uuid.UUID,
    webhook_id: uuid.UUID,
    principal: Principal = Depends(webhooks_access),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> None:
    try:
        await WebhookService(db, settings=settings).delete(webhook_id, tenant_id)
    except WebhookNotFoundError as exc:
        raise _not_found(exc) from exc


@router.post(
    "/{webhook_id}/test",
    response_model=DeliveryResponse,
    summary="Send a test event to a webhook",
    description=(
        "Deliver a synthetic event synchronously with 'X-Webhook-Test: true'. "
        "The result is logged but never counts toward auto-disable."
    ),
)
async def test_webhook(
    tenant_id: uuid.UUID,
    webhook_id: uuid.UUID,
    body: WebhookTestRequest | None = None,
    principal: Principal = Depends(webhooks_access),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
    http_client: httpx.AsyncClient | None = Depends(get_http_client),
) -> DeliveryResponse:
    body = body or WebhookTestRequest()
    svc = WebhookService(db, settings=settings, http_client=http_client)
    try:
        webhook = await svc.get(webhook_id, tenant_id)
    except WebhookNotFoundError as exc:
        raise _not_found(exc) from exc
    delivery = await svc.send_test(webhook, body.event_type, body.payload)
    return DeliveryResponse.model_validate(delivery)


@router.post(
    "/{webhook_id}/rotate-secret",
    response_model=WebhookSecretResponse,
    summary="Rotate the signing secret",
)
async def rotate_webhook_secret(
    tenant_id: uuid.UUID,
    webhook_id: uuid.UUID,
    principal: Principal = Depends(webhooks_access),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> WebhookSecretResponse:
    try:
        webhook = await WebhookService(db, settings=settings).rotate_secret(
            webhook_id, tenant_id
        )
    except WebhookNotFoundError as exc:
        raise _not_found(exc) from exc
    return WebhookSecretResponse.model_validate(webhook)


@router.get(
    "/{webhook_id}/deliveries",
    response_model=DeliveryListResponse,
    summary="Get delivery history",
)
async def list_deliveries(
    tenant_id: uuid.UUID,
    webhook_id: uuid.UUID,
    success: bool | None = None,
    event: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    principal: Principal = Depends(webhooks_access),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> DeliveryListResponse:
    try:
        deliveries, total = await WebhookService(db, settings=settings).get_deliveries(
            webhook_id,
            tenant_id,
            success=success,
            event=event,
            since=since,
            until=until,
            page=page,
            limit=limit,
        )
    except WebhookNotFoundError as exc:
        raise _not_found(exc) from exc
    return DeliveryListResponse(
        items=[DeliveryResponse.model_validate(d) for d in deliveries],
        total=total,
        page=page,
        limit=limit,
    )


@router.post(
    "/{webhook_id}/retry",
    response_model=RetryResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Retry failed deliveries",
    description="Requeue the latest failed attempt of each unresolved event from the sweep window.",
    responses={409: {"description": "Webhook is disabled."}},
)
async def retry_webhook_deliveries(
    tenant_id: uuid.UUID,
    webhook_id: uuid.UUID,
    principal: Principal = Depends(webhooks_access),
    db: AsyncSession = Depends(get_db_session),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> RetryResponse:
    try:
        queued = await dispatcher.retry_failed(db, webhook_id, tenant_id)
    except WebhookNotFoundError as exc:
        raise _not_found(exc) from exc
    except WebhookInactiveError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return RetryResponse(queued=queued)
