"""Tests for the webhook subsystem.

Coverage:
  - WebhookService.register / list / get / update / delete / rotate_secret
  - WebhookService.deliver with HMAC signing and the header contract
  - Failure accounting: counter increment, reset, auto-disable
  - Test deliveries never touching the counter
  - Retry policy and the failed-delivery sweep selection
  - Delivery history filtering

Runs against in-memory SQLite with httpx.MockTransport as the receiver.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from datetime import UTC, datetime, timedelta

import httpx
import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from sitebuilder.config import Settings
from sitebuilder.core import signing
from sitebuilder.models.tenant import Tenant
from sitebuilder.models.webhook import DeliveryAttempt, WebhookSubscription
from sitebuilder.services.webhook import (
    SUPPORTED_EVENTS,
    TEST_PAYLOAD,
    UnknownEventError,
    WebhookInactiveError,
    WebhookNotFoundError,
    WebhookService,
    retry_delay_seconds,
    validate_events,
)
from tests.conftest import Receiver

URL = "https://hooks.example.com/sitebuilder"
OTHER_URL = "https://other.example.com/hook"


@pytest.fixture
def service(
    db_session: AsyncSession,
    settings: Settings,
    http_client: httpx.AsyncClient,
) -> WebhookService:
    return WebhookService(db_session, settings=settings, http_client=http_client)


async def _count_deliveries(db: AsyncSession, webhook_id: uuid.UUID) -> int:
    return await db.scalar(
        select(func.count())
        .select_from(DeliveryAttempt)
        .where(DeliveryAttempt.webhook_id == webhook_id)
    )


# ------------------------------------------------------------------ #
# Event validation
# ------------------------------------------------------------------ #


class TestValidateEvents:
    def test_supported_events_enumeration(self) -> None:
        assert len(SUPPORTED_EVENTS) == 16
        assert "page.published" in SUPPORTED_EVENTS
        assert "navigation.deleted" in SUPPORTED_EVENTS

    def test_dedupes_preserving_order(self) -> None:
        assert validate_events(["page.updated", "page.created", "page.updated"]) == [
            "page.updated",
            "page.created",
        ]

    def test_unknown_event_rejected(self) -> None:
        with pytest.raises(UnknownEventError, match="agent.completed"):
            validate_events(["page.created", "agent.completed"])

    def test_empty_rejected(self) -> None:
        with pytest.raises(UnknownEventError):
            validate_events([])


# ------------------------------------------------------------------ #
# Registry
# ------------------------------------------------------------------ #


class TestRegistry:
    @pytest.mark.asyncio
    async def test_register_generates_secret(
        self, service: WebhookService, tenant: Tenant
    ) -> None:
        webhook = await service.register(tenant.id, URL, ["page.created"])

        assert webhook.id is not None
        assert len(webhook.secret) == 64
        assert webhook.is_active is True
        assert webhook.failure_count == 0
        assert webhook.max_failures == 5
        assert webhook.retry_backoff == 60

    @pytest.mark.asyncio
    async def test_register_unknown_event(
        self, service: WebhookService, tenant: Tenant
    ) -> None:
        with pytest.raises(UnknownEventError):
            await service.register(tenant.id, URL, ["site.exploded"])

    @pytest.mark.asyncio
    async def test_get_is_tenant_scoped(
        self, service: WebhookService, tenant: Tenant, other_tenant: Tenant
    ) -> None:
        webhook = await service.register(tenant.id, URL, ["page.created"])

        assert (await service.get(webhook.id, tenant.id)).id == webhook.id
        with pytest.raises(WebhookNotFoundError):
            await service.get(webhook.id, other_tenant.id)

    @pytest.mark.asyncio
    async def test_list_filters_and_paginates(
        self, service: WebhookService, tenant: Tenant, other_tenant: Tenant
    ) -> None:
        await service.register(tenant.id, URL, ["page.created"])
        await service.register(tenant.id, URL, ["page.updated"], is_active=False)
        await service.register(tenant.id, URL, ["page.created", "page.deleted"])
        await service.register(other_tenant.id, URL, ["page.created"])

        items, total = await service.list_for_tenant(tenant.id)
        assert total == 3
        assert all(w.tenant_id == tenant.id for w in items)

        items, total = await service.list_for_tenant(tenant.id, is_active=False)
        assert total == 1
        assert items[0].events == ["page.updated"]

        items, total = await service.list_for_tenant(tenant.id, event="page.created")
        assert total == 2

        items, total = await service.list_for_tenant(tenant.id, page=2, limit=2)
        assert total == 3
        assert len(items) == 1

    @pytest.mark.asyncio
    async def test_reactivation_resets_failure_count(
        self, service: WebhookService, db_session: AsyncSession, tenant: Tenant
    ) -> None:
        webhook = await service.register(tenant.id, URL, ["page.created"])
        webhook.is_active = False
        webhook.failure_count = 5
        await db_session.flush()

        updated = await service.update(webhook.id, tenant.id, is_active=True)

        assert updated.is_active is True
        assert updated.failure_count == 0

    @pytest.mark.asyncio
    async def test_update_fields(self, service: WebhookService, tenant: Tenant) -> None:
        webhook = await service.register(tenant.id, URL, ["page.created"])

        updated = await service.update(
            webhook.id,
            tenant.id,
            url=OTHER_URL,
            events=["branding.updated"],
            max_failures=2,
            retry_backoff=120,
        )

        assert updated.url == OTHER_URL
        assert updated.events == ["branding.updated"]
        assert updated.max_failures == 2
        assert updated.retry_backoff == 120

    @pytest.mark.asyncio
    async def test_rotate_secret(
        self, service: WebhookService, tenant: Tenant, receiver: Receiver
    ) -> None:
        webhook = await service.register(tenant.id, URL, ["page.created"])
        old_secret = webhook.secret

        rotated = await service.rotate_secret(webhook.id, tenant.id)
        await service.deliver(rotated, "page.created", {"id": 1})

        request = receiver.requests[-1]
        header = request.headers["X-Webhook-Signature"]
        assert rotated.secret != old_secret
        assert signing.verify(request.content, rotated.secret, header)
        assert not signing.verify(request.content, old_secret, header)

    @pytest.mark.asyncio
    async def test_delete_removes_delivery_log(
        self, service: WebhookService, db_session: AsyncSession, tenant: Tenant
    ) -> None:
        webhook = await service.register(tenant.id, URL, ["page.created"])
        await service.deliver(webhook, "page.created", {"id": 1})
        await service.deliver(webhook, "page.created", {"id": 2})
        assert await _count_deliveries(db_session, webhook.id) == 2

        await service.delete(webhook.id, tenant.id)

        assert await _count_deliveries(db_session, webhook.id) == 0
        with pytest.raises(WebhookNotFoundError):
            await service.get(webhook.id, tenant.id)


# ------------------------------------------------------------------ #
# Delivery
# ------------------------------------------------------------------ #


class TestDelivery:
    @pytest.mark.asyncio
    async def test_request_contract(
        self, service: WebhookService, tenant: Tenant, receiver: Receiver
    ) -> None:
        webhook = await service.register(tenant.id, URL, ["page.published"])

        delivery = await service.deliver(webhook, "page.published", {"page_id": 7})

        assert len(receiver.requests) == 1
        request = receiver.requests[0]
        body = json.loads(request.content)

        assert request.method == "POST"
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["User-Agent"] == "SiteBuilder-Webhooks/1.0"
        assert request.headers["X-Webhook-Event"] == "page.published"
        assert request.headers["X-Webhook-ID"] == str(webhook.id)
        assert request.headers["X-Webhook-Delivery"] == str(delivery.id)
        assert request.headers["X-Webhook-Timestamp"] == body["timestamp"]
        assert "X-Webhook-Test" not in request.headers

        assert body["event"] == "page.published"
        assert body["delivery_id"] == str(delivery.id)
        assert body["tenant_id"] == str(tenant.id)
        assert body["payload"] == {"page_id": 7}
        assert body["timestamp"].endswith("Z")

    @pytest.mark.asyncio
    async def test_signature_covers_exact_body(
        self, service: WebhookService, tenant: Tenant, receiver: Receiver
    ) -> None:
        webhook = await service.register(tenant.id, URL, ["page.updated"])
        await service.deliver(webhook, "page.updated", {"title": "Ünïcode"})

        request = receiver.requests[0]
        signature = request.headers["X-Webhook-Signature"]
        assert signature.startswith("sha256=")
        assert signing.verify(request.content, webhook.secret, signature)
        assert not signing.verify(request.content + b" ", webhook.secret, signature)

    @pytest.mark.asyncio
    async def test_success_recorded(
        self, service: WebhookService, tenant: Tenant
    ) -> None:
        webhook = await service.register(tenant.id, URL, ["page.created"])
        event_id = uuid.uuid4()

        delivery = await service.deliver(
            webhook, "page.created", {"id": 1}, event_id=event_id
        )

        assert delivery.success is True
        assert delivery.status_code == 200
        assert delivery.response_body == "ok"
        assert delivery.error_message is None
        assert delivery.event_id == event_id
        assert delivery.attempt == 1
        assert delivery.is_test is False
        assert webhook.last_status_code == 200
        assert webhook.last_triggered_at is not None

    @pytest.mark.asyncio
    async def test_non_2xx_is_failure(
        self, service: WebhookService, tenant: Tenant, receiver: Receiver
    ) -> None:
        receiver.behaviour[URL] = 500
        webhook = await service.register(tenant.id, URL, ["page.created"])

        delivery = await service.deliver(webhook, "page.created", {})

        assert delivery.success is False
        assert delivery.status_code == 500
        assert delivery.response_body == "boom"
        assert delivery.error_message == "HTTP 500"
        assert webhook.failure_count == 1
        assert webhook.last_status_code == 500

    @pytest.mark.asyncio
    async def test_redirect_is_failure(
        self, service: WebhookService, tenant: Tenant, receiver: Receiver
    ) -> None:
        receiver.behaviour[URL] = 302
        webhook = await service.register(tenant.id, URL, ["page.created"])

        delivery = await service.deliver(webhook, "page.created", {})

        assert delivery.success is False
        assert webhook.failure_count == 1

    @pytest.mark.asyncio
    async def test_timeout_is_failure(
        self, service: WebhookService, tenant: Tenant, receiver: Receiver
    ) -> None:
        receiver.behaviour[URL] = httpx.ReadTimeout("read timed out")
        webhook = await service.register(tenant.id, URL, ["page.created"])

        delivery = await service.deliver(webhook, "page.created", {})

        assert delivery.success is False
        assert delivery.status_code is None
        assert delivery.error_message == "Timed out after 5s"
        assert webhook.failure_count == 1
        assert webhook.last_status_code is None

    @pytest.mark.asyncio
    async def test_timeout_caps_slow_trickling_response(
        self, db_session: AsyncSession, settings: Settings, tenant: Tenant
    ) -> None:
        """A receiver that keeps every read alive still hits the overall limit."""

        async def trickle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            head = await reader.readuntil(b"\r\n\r\n")
            length = 0
            for line in head.decode("latin-1").split("\r\n"):
                name, _, value = line.partition(":")
                if name.lower() == "content-length":
                    length = int(value)
            await reader.readexactly(length)
            writer.write(b"HTTP/1.1 200 OK\r\nContent-Length: 20\r\n\r\n")
            try:
                for _ in range(20):
                    await writer.drain()
                    await asyncio.sleep(0.3)
                    writer.write(b"x")
            except ConnectionError:
                pass
            finally:
                writer.close()

        server = await asyncio.start_server(trickle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        fast = settings.model_copy(update={"webhook_timeout_seconds": 1.0})

        try:
            async with httpx.AsyncClient() as client:
                service = WebhookService(db_session, settings=fast, http_client=client)
                webhook = await service.register(
                    tenant.id, f"http://127.0.0.1:{port}/hook", ["page.created"]
                )
                started = time.perf_counter()
                delivery = await service.deliver(webhook, "page.created", {})
                elapsed = time.perf_counter() - started
        finally:
            server.close()

        assert elapsed < 3.0
        assert delivery.success is False
        assert delivery.status_code is None
        assert delivery.error_message == "Timed out after 1s"
        assert webhook.failure_count == 1

    @pytest.mark.asyncio
    async def test_connection_error_is_failure(
        self, service: WebhookService, tenant: Tenant, receiver: Receiver
    ) -> None:
        receiver.behaviour[URL] = httpx.ConnectError("connection refused")
        webhook = await service.register(tenant.id, URL, ["page.created"])

        delivery = await service.deliver(webhook, "page.created", {})

        assert delivery.success is False
        assert delivery.status_code is None
        assert "connection refused" in delivery.error_message

    @pytest.mark.asyncio
    async def test_long_response_body_truncated(
        self, db_session: AsyncSession, settings: Settings, tenant: Tenant
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="x" * 6000)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            service = WebhookService(db_session, settings=settings, http_client=client)
            webhook = await service.register(tenant.id, URL, ["page.created"])
            delivery = await service.deliver(webhook, "page.created", {})

        assert len(delivery.response_body) == 5000


# ------------------------------------------------------------------ #
# Failure accounting
# ------------------------------------------------------------------ #


class TestFailureAccounting:
    @pytest.mark.asyncio
    async def test_auto_disable_at_threshold(
        self,
        service: WebhookService,
        db_session: AsyncSession,
        tenant: Tenant,
        receiver: Receiver,
    ) -> None:
        receiver.behaviour[URL] = 500
        webhook = await service.register(tenant.id, URL, ["page.created"], max_failures=3)

        for expected in (1, 2):
            await service.deliver(webhook, "page.created", {})
            assert webhook.failure_count == expected
            assert webhook.is_active is True

        await service.deliver(webhook, "page.created", {})

        await db_session.refresh(webhook)
        assert webhook.failure_count == 3
        assert webhook.is_active is False
        assert await service.find_matching(tenant.id, "page.created") == []

    @pytest.mark.asyncio
    async def test_success_resets_counter(
        self, service: WebhookService, tenant: Tenant, receiver: Receiver
    ) -> None:
        webhook = await service.register(tenant.id, URL, ["page.created"], max_failures=5)

        receiver.behaviour[URL] = 503
        for _ in range(4):
            await service.deliver(webhook, "page.created", {})
        assert webhook.failure_count == 4

        receiver.behaviour[URL] = 204
        await service.deliver(webhook, "page.created", {})

        assert webhook.failure_count == 0
        assert webhook.is_active is True

    @pytest.mark.asyncio
    async def test_test_deliveries_never_count(
        self,
        service: WebhookService,
        db_session: AsyncSession,
        tenant: Tenant,
        receiver: Receiver,
    ) -> None:
        receiver.behaviour[URL] = 500
        webhook = await service.register(tenant.id, URL, ["page.created"], max_failures=1)

        first = await service.send_test(webhook, "page.updated")
        second = await service.send_test(webhook, "page.updated")

        await db_session.refresh(webhook)
        assert first.success is False and second.success is False
        assert first.is_test and second.is_test
        assert webhook.is_active is True
        assert webhook.failure_count == 0
        assert await _count_deliveries(db_session, webhook.id) == 2

    @pytest.mark.asyncio
    async def test_test_delivery_headers_and_default_payload(
        self, service: WebhookService, tenant: Tenant, receiver: Receiver
    ) -> None:
        webhook = await service.register(tenant.id, URL, ["page.created"])

        delivery = await service.send_test(webhook, "page.created")

        request = receiver.requests[0]
        assert request.headers["X-Webhook-Test"] == "true"
        assert json.loads(request.content)["payload"] == TEST_PAYLOAD
        assert delivery.payload == TEST_PAYLOAD

    @pytest.mark.asyncio
    async def test_send_test_rejects_unknown_event(
        self, service: WebhookService, tenant: Tenant
    ) -> None:
        webhook = await service.register(tenant.id, URL, ["page.created"])
        with pytest.raises(UnknownEventError):
            await service.send_test(webhook, "nope.nope")

    @pytest.mark.asyncio
    async def test_failures_are_per_webhook(
        self, service: WebhookService, tenant: Tenant, receiver: Receiver
    ) -> None:
        receiver.behaviour[URL] = httpx.ReadTimeout("timed out")
        slow = await service.register(tenant.id, URL, ["tenant.updated"])
        fast = await service.register(tenant.id, OTHER_URL, ["tenant.updated"])

        await service.deliver(slow, "tenant.updated", {})
        await service.deliver(fast, "tenant.updated", {})

        assert slow.failure_count == 1
        assert fast.failure_count == 0
        assert fast.last_status_code == 200


# ------------------------------------------------------------------ #
# Retry policy
# ------------------------------------------------------------------ #


class TestRetryPolicy:
    def test_retry_delay_doubles(self) -> None:
        assert [retry_delay_seconds(60, n) for n in (1, 2, 3)] == [60, 120, 240]

    @pytest.mark.asyncio
    async def test_next_retry_delay(
        self,
        db_session: AsyncSession,
        settings: Settings,
        http_client: httpx.AsyncClient,
        tenant: Tenant,
        receiver: Receiver,
    ) -> None:
        service = WebhookService(
            db_session,
            settings=settings.model_copy(update={"webhook_max_attempts": 3}),
            http_client=http_client,
        )
        receiver.behaviour[URL] = 500
        webhook = await service.register(
            tenant.id, URL, ["page.created"], retry_backoff=30, max_failures=10
        )

        delays = []
        for attempt in (1, 2, 3):
            delivery = await service.deliver(webhook, "page.created", {}, attempt=attempt)
            delays.append(service.next_retry_delay(webhook, delivery))

        assert delays == [30, 60, None]

    @pytest.mark.asyncio
    async def test_no_retry_after_success_or_disable(
        self,
        db_session: AsyncSession,
        settings: Settings,
        http_client: httpx.AsyncClient,
        tenant: Tenant,
        receiver: Receiver,
    ) -> None:
        service = WebhookService(
            db_session,
            settings=settings.model_copy(update={"webhook_max_attempts": 4}),
            http_client=http_client,
        )
        webhook = await service.register(tenant.id, URL, ["page.created"], max_failures=1)

        ok = await service.deliver(webhook, "page.created", {})
        assert service.next_retry_delay(webhook, ok) is None

        receiver.behaviour[URL] = 500
        failed = await service.deliver(webhook, "page.created", {})
        assert webhook.is_active is False
        assert service.next_retry_delay(webhook, failed) is None


class TestFailedDeliveries:
    @pytest.mark.asyncio
    async def test_latest_unresolved_attempt_per_event(
        self, service: WebhookService, tenant: Tenant, receiver: Receiver
    ) -> None:
        webhook = await service.register(tenant.id, URL, ["page.created"], max_failures=20)
        stuck, recovered = uuid.uuid4(), uuid.uuid4()

        receiver.behaviour[URL] = 500
        await service.deliver(webhook, "page.created", {"e": 1}, event_id=stuck, attempt=1)
        latest = await service.deliver(
            webhook, "page.created", {"e": 1}, event_id=stuck, attempt=2
        )
        await service.deliver(webhook, "page.created", {"e": 2}, event_id=recovered, attempt=1)
        await service.send_test(webhook, "page.created")

        receiver.behaviour[URL] = 200
        await service.deliver(webhook, "page.created", {"e": 2}, event_id=recovered, attempt=2)

        failures = await service.failed_deliveries(since=service.sweep_cutoff())

        assert [d.id for d in failures] == [latest.id]
        assert failures[0].attempt == 2

    @pytest.mark.asyncio
    async def test_window_and_scope(
        self, service: WebhookService, tenant: Tenant, other_tenant: Tenant, receiver: Receiver
    ) -> None:
        receiver.behaviour[URL] = 500
        mine = await service.register(tenant.id, URL, ["page.created"], max_failures=20)
        theirs = await service.register(other_tenant.id, URL, ["page.created"], max_failures=20)
        await service.deliver(mine, "page.created", {})
        await service.deliver(theirs, "page.created", {})

        assert len(await service.failed_deliveries(since=service.sweep_cutoff())) == 2
        scoped = await service.failed_deliveries(
            since=service.sweep_cutoff(), tenant_id=tenant.id
        )
        assert [d.webhook_id for d in scoped] == [mine.id]
        future = datetime.now(UTC) + timedelta(minutes=1)
        assert await service.failed_deliveries(since=future) == []

    @pytest.mark.asyncio
    async def test_inactive_webhook(
        self, service: WebhookService, tenant: Tenant, receiver: Receiver
    ) -> None:
        receiver.behaviour[URL] = 500
        webhook = await service.register(tenant.id, URL, ["page.created"], max_failures=1)
        await service.deliver(webhook, "page.created", {})

        assert await service.failed_deliveries(since=service.sweep_cutoff()) == []
        with pytest.raises(WebhookInactiveError):
            await service.failed_for_webhook(webhook.id, tenant.id)


# ------------------------------------------------------------------ #
# Delivery history
# ------------------------------------------------------------------ #


class TestDeliveryHistory:
    @pytest.mark.asyncio
    async def test_filters(
        self, service: WebhookService, tenant: Tenant, receiver: Receiver
    ) -> None:
        webhook = await service.register(
            tenant.id, URL, ["page.created", "page.deleted"], max_failures=20
        )
        await service.deliver(webhook, "page.created", {})
        receiver.behaviour[URL] = 500
        await service.deliver(webhook, "page.deleted", {})
        await service.deliver(webhook, "page.created", {})

        items, total = await service.get_deliveries(webhook.id, tenant.id)
        assert total == 3
        assert items[0].created_at >= items[-1].created_at

        items, total = await service.get_deliveries(webhook.id, tenant.id, success=False)
        assert total == 2

        items, total = await service.get_deliveries(webhook.id, tenant.id, event="page.deleted")
        assert total == 1

        items, total = await service.get_deliveries(
            webhook.id, tenant.id, since=datetime.now(UTC) + timedelta(minutes=1)
        )
        assert total == 0

        items, total = await service.get_deliveries(webhook.id, tenant.id, page=2, limit=2)
        assert total == 3
        assert len(items) == 1

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_read(
        self, service: WebhookService, tenant: Tenant, other_tenant: Tenant
    ) -> None:
        webhook = await service.register(tenant.id, URL, ["page.created"])
        with pytest.raises(WebhookNotFoundError):
            await service.get_deliveries(webhook.id, other_tenant.id)


def test_subscribes_to() -> None:
    webhook = WebhookSubscription(events=["page.created"])
    assert webhook.subscribes_to("page.created")
    assert not webhook.subscribes_to("page.deleted")
