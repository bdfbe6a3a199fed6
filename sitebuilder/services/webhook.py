"""WebhookService: registry, signed delivery, failure accounting and retries.

Event types supported:
  page.created / page.updated / page.deleted / page.published
  section.created / section.updated / section.deleted
  navigation.created / navigation.updated / navigation.deleted
  branding.updated
  tenant.created / tenant.updated
  user.created / user.updated / user.deleted

Delivery signing uses HMAC-SHA256 over the exact serialized request body.
The signature is sent as ``X-Webhook-Signature: sha256=<hex>`` so
consumers can verify authenticity with their copy of the secret.

Failure accounting: every non-test delivery updates the subscription's
consecutive-failure counter in a single UPDATE, in the same transaction
as the DeliveryAttempt row. Reaching ``max_failures`` flips ``is_active``
off in that same statement.

Retry policy: exponential backoff seeded by ``retry_backoff``.
  Attempt 1: immediate
  Attempt 2: retry_backoff seconds after attempt 1 failed
  Attempt 3: retry_backoff * 2
  Attempt n: retry_backoff * 2 ** (n - 2)
Scheduling is done by the EventDispatcher; this service only decides.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import structlog
from sqlalchemy import and_, case, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from sitebuilder.config import Settings, get_settings
from sitebuilder.core import signing
from sitebuilder.models.webhook import DeliveryAttempt, WebhookSubscription

log = structlog.get_logger(__name__)

SUPPORTED_EVENTS: tuple[str, ...] = (
    "page.created",
    "page.updated",
    "page.deleted",
    "page.published",
    "section.created",
    "section.updated",
    "section.deleted",
    "branding.updated",
    "tenant.created",
    "tenant.updated",
    "user.created",
    "user.updated",
    "user.deleted",
    "navigation.created",
    "navigation.updated",
    "navigation.deleted",
)
_SUPPORTED = frozenset(SUPPORTED_EVENTS)

TEST_PAYLOAD: dict[str, Any] = {
    "test": True,
    "message": "This is a test webhook delivery",
}

RESPONSE_BODY_MAX_CHARS = 5000
ERROR_MESSAGE_MAX_CHARS = 1000


class UnknownEventError(ValueError):
    """Raised when an event name is not in SUPPORTED_EVENTS."""


class WebhookNotFoundError(Exception):
    """Raised when a webhook does not exist or belongs to another tenant."""


class WebhookInactiveError(Exception):
    """Raised when retrying deliveries for a disabled webhook."""


def validate_events(events: list[str]) -> list[str]:
    """Return ``events`` de-duplicated in first-seen order.

    Raises:
        UnknownEventError: If any name is unsupported or the list is empty.
    """
    if not events:
        raise UnknownEventError("At least one event is required")
    unknown = set(events) - _SUPPORTED
    if unknown:
        raise UnknownEventError(f"Unknown event types: {sorted(unknown)}")
    return list(dict.fromkeys(events))


def retry_delay_seconds(retry_backoff: int, failed_attempt: int) -> int:
    """Delay before the attempt that follows ``failed_attempt`` (1-based)."""
    return retry_backoff * 2 ** (failed_attempt - 1)


def _utc(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=UTC)


def _isoformat(dt: datetime) -> str:
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class _Outcome:
    status_code: int | None
    response_body: str | None
    error: str | None
    duration_ms: int

    @property
    def success(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300


class WebhookService:
    """All webhook-related operations scoped to the current async DB session.

    ``http_client`` is optional; when omitted each delivery opens its own
    client with the configured timeout.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._db = db
        self._settings = settings or get_settings()
        self._http = http_client

    # ------------------------------------------------------------------ #
    # Registration
    # ------------------------------------------------------------------ #

    async def register(
        self,
        tenant_id: uuid.UUID,
        url: str,
        events: list[str],
        *,
        is_active: bool = True,
        max_failures: int = 5,
        retry_backoff: int = 60,
    ) -> WebhookSubscription:
        """Register a new webhook endpoint for a tenant.

        The signing secret is generated here. It is readable on the
        returned object so the caller can show it once; list/get responses
        never include it.

        Raises:
            UnknownEventError: If unknown event types are provided.
        """
        webhook = WebhookSubscription(
            tenant_id=tenant_id,
            url=url,
            events=validate_events(events),
            secret=signing.generate_secret(),
            is_active=is_active,
            failure_count=0,
            max_failures=max_failures,
            retry_backoff=retry_backoff,
        )
        self._db.add(webhook)
        await self._db.flush()

        log.info(
            "webhook.registered",
            webhook_id=str(webhook.id),
            tenant_id=str(tenant_id),
            url=url,
            events=webhook.events,
        )
        return webhook

    # ------------------------------------------------------------------ #
    # Querying
    # ------------------------------------------------------------------ #

    async def list_for_tenant(
        self,
        tenant_id: uuid.UUID,
        *,
        is_active: bool | None = None,
        event: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[WebhookSubscription], int]:
        """Return one page of a tenant's webhooks (newest first) and the total."""
        conditions = [WebhookSubscription.tenant_id == tenant_id]
        if is_active is not None:
            conditions.append(WebhookSubscription.is_active.is_(is_active))

        stmt = (
            select(WebhookSubscription)
            .where(*conditions)
            .order_by(WebhookSubscription.created_at.desc())
        )
        offset = (page - 1) * limit

        if event is None:
            total = await self._db.scalar(
                select(func.count()).select_from(WebhookSubscription).where(*conditions)
            )
            result = await self._db.execute(stmt.offset(offset).limit(limit))
            return list(result.scalars().all()), int(total or 0)

        # JSON containment is dialect-specific; event filtering happens here
        result = await self._db.execute(stmt)
        webhooks = [w for w in result.scalars().all() if w.subscribes_to(event)]
        return webhooks[offset:offset + limit], len(webhooks)

    async def get(self, webhook_id: uuid.UUID, tenant_id: uuid.UUID) -> WebhookSubscription:
        """Fetch a single webhook, scoped to the tenant.

        Raises:
            WebhookNotFoundError: If missing or owned by another tenant.
        """
        stmt = select(WebhookSubscription).where(
            WebhookSubscription.id == webhook_id,
            WebhookSubscription.tenant_id == tenant_id,
        )
        result = await self._db.execute(stmt)
        webhook = result.scalar_one_or_none()
        if webhook is None:
            raise WebhookNotFoundError(f"Webhook {webhook_id} not found")
        return webhook

    async def find_matching(
        self, tenant_id: uuid.UUID, event_type: str
    ) -> list[WebhookSubscription]:
        """Active subscriptions of the tenant that include ``event_type``."""
        stmt = select(WebhookSubscription).where(
            WebhookSubscription.tenant_id == tenant_id,
            WebhookSubscription.is_active.is_(True),
        )
        result = await self._db.execute(stmt)
        return [w for w in result.scalars().all() if w.subscribes_to(event_type)]

    # ------------------------------------------------------------------ #
    # Update / delete / rotate
    # ------------------------------------------------------------------ #

    async def update(
        self,
        webhook_id: uuid.UUID,
        tenant_id: uuid.UUID,
        *,
        url: str | None = None,
        events: list[str] | None = None,
        is_active: bool | None = None,
        max_failures: int | None = None,
        retry_backoff: int | None = None,
    ) -> WebhookSubscription:
        """Apply a partial update.

        Re-activating a webhook clears its failure counter so that an
        active subscription never sits at or above its threshold.
        """
        webhook = await self.get(webhook_id, tenant_id)

        if url is not None:
            webhook.url = url
        if events is not None:
            webhook.events = validate_events(events)
        if max_failures is not None:
            webhook.max_failures = max_failures
        if retry_backoff is not None:
            webhook.retry_backoff = retry_backoff
        if is_active is not None:
            if is_active and not webhook.is_active:
                webhook.failure_count = 0
            webhook.is_active = is_active

        await self._db.flush()
        log.info(
            "webhook.updated",
            webhook_id=str(webhook_id),
            tenant_id=str(tenant_id),
            is_active=webhook.is_active,
        )
        return webhook

    async def delete(self, webhook_id: uuid.UUID, tenant_id: uuid.UUID) -> None:
        """Delete a webhook and its delivery log.

        Raises:
            WebhookNotFoundError: If missing or owned by another tenant.
        """
        webhook = await self.get(webhook_id, tenant_id)
        await self._db.execute(
            delete(DeliveryAttempt).where(DeliveryAttempt.webhook_id == webhook.id)
        )
        await self._db.delete(webhook)
        await self._db.flush()
        log.info(
            "webhook.deleted",
            webhook_id=str(webhook_id),
            tenant_id=str(tenant_id),
        )

    async def rotate_secret(
        self, webhook_id: uuid.UUID, tenant_id: uuid.UUID
    ) -> WebhookSubscription:
        """Replace the signing secret. The old one stops working immediately."""
        webhook = await self.get(webhook_id, tenant_id)
        webhook.secret = signing.generate_secret()
        await self._db.flush()
        log.info(
            "webhook.secret_rotated",
            webhook_id=str(webhook_id),
            tenant_id=str(tenant_id),
        )
        return webhook

    # ------------------------------------------------------------------ #
    # Delivery
    # ------------------------------------------------------------------ #

    async def deliver(
        self,
        webhook: WebhookSubscription,
        event_type: str,
        payload: dict[str, Any],
        *,
        event_id: uuid.UUID | None = None,
        attempt: int = 1,
    ) -> DeliveryAttempt:
        """Send one event to one webhook and record the outcome.

        Never raises for transport or HTTP failures; those are recorded on
        the returned attempt. The counter update and the attempt row are
        written in the caller's transaction.
        """
        delivery = await self._send(
            webhook,
            event_type,
            payload,
            event_id=event_id or uuid.uuid4(),
            attempt=attempt,
            is_test=False,
        )
        await self._record_outcome(webhook, delivery)
        return delivery

    async def send_test(
        self,
        webhook: WebhookSubscription,
        event_type: str,
        payload: dict[str, Any] | None = None,
    ) -> DeliveryAttempt:
        """Send a synthetic event flagged with ``X-Webhook-Test: true``.

        The attempt is logged with ``is_test=True``; the failure counter
        and active flag are left untouched.
        """
        if event_type not in _SUPPORTED:
            raise UnknownEventError(f"Unknown event type: {event_type}")

        delivery = await self._send(
            webhook,
            event_type,
            payload if payload is not None else TEST_PAYLOAD,
            event_id=uuid.uuid4(),
            attempt=1,
            is_test=True,
        )
        self._db.add(delivery)
        await self._db.flush()
        log.info(
            "webhook.test_delivered",
            webhook_id=str(webhook.id),
            success=delivery.success,
            status_code=delivery.status_code,
        )
        return delivery

    def build_request(
        self,
        webhook: WebhookSubscription,
        event_type: str,
        payload: dict[str, Any],
        *,
        delivery_id: uuid.UUID,
        timestamp: datetime,
        is_test: bool = False,
    ) -> tuple[bytes, dict[str, str]]:
        """Serialize the body once and sign exactly those bytes."""
        sent_at = _isoformat(timestamp)
        body = json.dumps(
            {
                "event": event_type,
                "delivery_id": str(delivery_id),
                "tenant_id": str(webhook.tenant_id),
                "timestamp": sent_at,
                "payload": payload,
            },
            separators=(",", ":"),
            default=str,
        ).encode("utf-8")

        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._settings.webhook_user_agent,
            "X-Webhook-Event": event_type,
            "X-Webhook-ID": str(webhook.id),
            "X-Webhook-Delivery": str(delivery_id),
            "X-Webhook-Timestamp": sent_at,
            "X-Webhook-Signature": signing.signature_header(body, webhook.secret),
        }
        if is_test:
            headers["X-Webhook-Test"] = "true"
        return body, headers

    async def _send(
        self,
        webhook: WebhookSubscription,
        event_type: str,
        payload: dict[str, Any],
        *,
        event_id: uuid.UUID,
        attempt: int,
        is_test: bool,
    ) -> DeliveryAttempt:
        delivery_id = uuid.uuid4()
        # Normalize once so the stored snapshot matches what was sent
        snapshot = json.loads(json.dumps(payload, default=str))
        body, headers = self.build_request(
            webhook,
            event_type,
            snapshot,
            delivery_id=delivery_id,
            timestamp=datetime.now(UTC),
            is_test=is_test,
        )

        outcome = await self._post(webhook.url, body, headers)

        if outcome.success:
            log.info(
                "webhook.delivered",
                webhook_id=str(webhook.id),
                event_type=event_type,
                attempt=attempt,
                status_code=outcome.status_code,
                duration_ms=outcome.duration_ms,
            )
        else:
            log.warning(
                "webhook.delivery_failed",
                webhook_id=str(webhook.id),
                event_type=event_type,
                attempt=attempt,
                status_code=outcome.status_code,
                error=outcome.error,
            )

        return DeliveryAttempt(
            id=delivery_id,
            webhook_id=webhook.id,
            tenant_id=webhook.tenant_id,
            event_id=event_id,
            event_type=event_type,
            payload=snapshot,
            attempt=attempt,
            is_test=is_test,
            success=outcome.success,
            status_code=outcome.status_code,
            response_body=outcome.response_body,
            error_message=outcome.error,
            duration_ms=outcome.duration_ms,
            created_at=datetime.now(UTC),
        )

    async def _request(
        self, url: str, body: bytes, headers: dict[str, str], timeout: float
    ) -> httpx.Response:
        """POST and read the full response body."""
        if self._http is not None:
            return await self._http.post(url, content=body, headers=headers, timeout=timeout)
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.post(url, content=body, headers=headers)

    async def _post(self, url: str, body: bytes, headers: dict[str, str]) -> _Outcome:
        timeout = self._settings.webhook_timeout_seconds
        started = time.perf_counter()
        try:
            # httpx timeouts apply per phase; wait_for caps the whole exchange
            response = await asyncio.wait_for(
                self._request(url, body, headers, timeout), timeout=timeout
            )
        except (httpx.TimeoutException, TimeoutError):
            return _Outcome(
                status_code=None,
                response_body=None,
                error=f"Timed out after {timeout:g}s",
                duration_ms=int((time.perf_counter() - started) * 1000),
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            error = str(exc) or exc.__class__.__name__
            return _Outcome(
                status_code=None,
                response_body=None,
                error=error[:ERROR_MESSAGE_MAX_CHARS],
                duration_ms=int((time.perf_counter() - started) * 1000),
            )

        duration_ms = int((time.perf_counter() - started) * 1000)
        ok = 200 <= response.status_code < 300
        return _Outcome(
            status_code=response.status_code,
            response_body=response.text[:RESPONSE_BODY_MAX_CHARS],
            error=None if ok else f"HTTP {response.status_code}",
            duration_ms=duration_ms,
        )

    async def _record_outcome(
        self, webhook: WebhookSubscription, delivery: DeliveryAttempt
    ) -> None:
        """Update failure accounting and append the attempt row.

        The counter change and the auto-disable decision are a single
        UPDATE evaluated by the database, so concurrent deliveries to the
        same webhook cannot lose increments.
        """
        now = datetime.now(UTC)
        values: dict[str, Any] = {
            "last_triggered_at": now,
            "last_status_code": delivery.status_code,
            "updated_at": now,
        }
        if delivery.success:
            values["failure_count"] = 0
        else:
            next_count = WebhookSubscription.failure_count + 1
            values["failure_count"] = next_count
            values["is_active"] = case(
                (next_count >= WebhookSubscription.max_failures, False),
                else_=WebhookSubscription.is_active,
            )

        stmt = (
            update(WebhookSubscription)
            .where(WebhookSubscription.id == webhook.id)
            .values(**values)
            .returning(
                WebhookSubscription.failure_count,
                WebhookSubscription.is_active,
                WebhookSubscription.max_failures,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        row = result.one_or_none()
        if row is None:
            log.info("webhook.vanished", webhook_id=str(webhook.id))
            return

        was_active = webhook.is_active
        for key, value in (
            ("failure_count", row.failure_count),
            ("is_active", row.is_active),
            ("last_status_code", delivery.status_code),
            ("last_triggered_at", now),
        ):
            set_committed_value(webhook, key, value)

        self._db.add(delivery)
        await self._db.flush()

        if was_active and not row.is_active:
            log.warning(
                "webhook.auto_disabled",
                webhook_id=str(webhook.id),
                tenant_id=str(webhook.tenant_id),
                failure_count=row.failure_count,
                max_failures=row.max_failures,
            )

    # ------------------------------------------------------------------ #
    # Retry policy
    # ------------------------------------------------------------------ #

    def next_retry_delay(
        self, webhook: WebhookSubscription, delivery: DeliveryAttempt
    ) -> int | None:
        """Seconds until the next attempt, or None if no retry is due."""
        if delivery.success or delivery.is_test or not webhook.is_active:
            return None
        if delivery.attempt >= self._settings.webhook_max_attempts:
            return None
        return retry_delay_seconds(webhook.retry_backoff, delivery.attempt)

    async def attempt_recorded(
        self, webhook_id: uuid.UUID, event_id: uuid.UUID, attempt: int
    ) -> bool:
        stmt = select(DeliveryAttempt.id).where(
            DeliveryAttempt.webhook_id == webhook_id,
            DeliveryAttempt.event_id == event_id,
            DeliveryAttempt.attempt == attempt,
            DeliveryAttempt.is_test.is_(False),
        )
        return (await self._db.scalar(stmt.limit(1))) is not None

    async def failed_deliveries(
        self,
        *,
        since: datetime,
        tenant_id: uuid.UUID | None = None,
        webhook_id: uuid.UUID | None = None,
        limit: int = 50,
    ) -> list[DeliveryAttempt]:
        """Latest failed attempt of each unresolved event since ``since``.

        Events with any successful attempt are skipped, as are test
        deliveries and webhooks that are no longer active.
        """
        succeeded = select(DeliveryAttempt.event_id).where(
            DeliveryAttempt.success.is_(True)
        )
        latest = (
            select(
                DeliveryAttempt.event_id,
                func.max(DeliveryAttempt.attempt).label("last_attempt"),
            )
            .where(DeliveryAttempt.is_test.is_(False))
            .group_by(DeliveryAttempt.event_id)
            .subquery()
        )
        conditions = [
            DeliveryAttempt.success.is_(False),
            DeliveryAttempt.is_test.is_(False),
            DeliveryAttempt.created_at >= since,
            DeliveryAttempt.event_id.not_in(succeeded),
            WebhookSubscription.is_active.is_(True),
        ]
        if tenant_id is not None:
            conditions.append(DeliveryAttempt.tenant_id == tenant_id)
        if webhook_id is not None:
            conditions.append(DeliveryAttempt.webhook_id == webhook_id)

        stmt = (
            select(DeliveryAttempt)
            .join(
                latest,
                and_(
                    DeliveryAttempt.event_id == latest.c.event_id,
                    DeliveryAttempt.attempt == latest.c.last_attempt,
                ),
            )
            .join(WebhookSubscription, WebhookSubscription.id == DeliveryAttempt.webhook_id)
            .where(*conditions)
            .order_by(DeliveryAttempt.created_at.desc())
            .limit(limit)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def failed_for_webhook(
        self, webhook_id: uuid.UUID, tenant_id: uuid.UUID, *, limit: int = 50
    ) -> list[DeliveryAttempt]:
        """Unresolved failures of one webhook within the sweep window.

        Raises:
            WebhookNotFoundError: If missing or owned by another tenant.
            WebhookInactiveError: If the webhook is disabled.
        """
        webhook = await self.get(webhook_id, tenant_id)
        if not webhook.is_active:
            raise WebhookInactiveError(f"Webhook {webhook_id} is disabled")
        return await self.failed_deliveries(
            since=self.sweep_cutoff(),
            tenant_id=tenant_id,
            webhook_id=webhook_id,
            limit=limit,
        )

    def sweep_cutoff(self) -> datetime:
        return datetime.now(UTC) - timedelta(
            hours=self._settings.webhook_retry_sweep_window_hours
        )

    # ------------------------------------------------------------------ #
    # Delivery history
    # ------------------------------------------------------------------ #

    async def get_deliveries(
        self,
        webhook_id: uuid.UUID,
        tenant_id: uuid.UUID,
        *,
        success: bool | None = None,
        event: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[DeliveryAttempt], int]:
        """Return one page of delivery history (newest first) and the total."""
        await self.get(webhook_id, tenant_id)

        conditions = [DeliveryAttempt.webhook_id == webhook_id]
        if success is not None:
            conditions.append(DeliveryAttempt.success.is_(success))
        if event is not None:
            conditions.append(DeliveryAttempt.event_type == event)
        if since is not None:
            conditions.append(DeliveryAttempt.created_at >= _utc(since))
        if until is not None:
            conditions.append(DeliveryAttempt.created_at <= _utc(until))

        total = await self._db.scalar(
            select(func.count()).select_from(DeliveryAttempt).where(*conditions)
        )
        stmt = (
            select(DeliveryAttempt)
            .where(*conditions)
            .order_by(DeliveryAttempt.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all()), int(total or 0)
