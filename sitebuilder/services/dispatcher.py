"""Event dispatcher: fans tenant events out to webhook deliveries.

Mutation handlers call ``dispatch()`` after their write succeeds. The call
only enqueues a task and returns; the subscription lookup, the outbound
HTTP calls and the retry scheduling all happen on the worker pool, each
delivery in its own task and DB session so one slow or failing endpoint
cannot affect another.
"""

from __future__ import annotations

import asyncio
import contextlib
import uuid
from typing import Any

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from sitebuilder.config import Settings, get_settings
from sitebuilder.database import SessionScope, session_scope
from sitebuilder.infra.background_worker import BackgroundWorkerPool, TaskType
from sitebuilder.models.webhook import DeliveryAttempt, WebhookSubscription
from sitebuilder.services.webhook import SUPPORTED_EVENTS, WebhookService

log = structlog.get_logger(__name__)


class EventDispatcher:
    """Owns the webhook task handlers registered on the worker pool."""

    def __init__(
        self,
        pool: BackgroundWorkerPool,
        *,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        session_factory: SessionScope = session_scope,
    ) -> None:
        self._pool = pool
        self._settings = settings or get_settings()
        self._http = http_client
        self._session_scope = session_factory
        self._sweep_task: asyncio.Task[None] | None = None
        # (webhook_id, event_id) with a retry already on the pool
        self._pending: set[tuple[str, str]] = set()

        pool.register_handler(TaskType.WEBHOOK_DISPATCH, self._handle_dispatch)
        pool.register_handler(TaskType.WEBHOOK_DELIVERY, self._handle_delivery)
        pool.register_handler(TaskType.WEBHOOK_RETRY, self._handle_delivery)

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def dispatch(
        self,
        tenant_id: uuid.UUID,
        event_type: str,
        payload: dict[str, Any],
    ) -> None:
        """Queue ``event_type`` for every matching webhook of the tenant.

        Returns immediately and never raises: an unknown event or a full
        queue is logged and ignored.
        """
        if event_type not in SUPPORTED_EVENTS:
            log.warning("webhook.dispatch_unknown_event", event_type=event_type)
            return
        try:
            self._pool.submit(
                TaskType.WEBHOOK_DISPATCH,
                {
                    "tenant_id": str(tenant_id),
                    "event_type": event_type,
                    "payload": payload,
                },
            )
        except Exception:
            log.exception(
                "webhook.dispatch_failed",
                tenant_id=str(tenant_id),
                event_type=event_type,
            )

    async def retry_failed(
        self,
        db: AsyncSession,
        webhook_id: uuid.UUID,
        tenant_id: uuid.UUID,
    ) -> int:
        """Queue an immediate retry of every unresolved failure of one webhook.

        Events that already have a retry waiting on the pool are left to it.
        Returns the number of retries queued.
        """
        service = WebhookService(db, settings=self._settings)
        failures = await service.failed_for_webhook(webhook_id, tenant_id)
        queued = sum(self._queue_retry(delivery, delay_seconds=0) for delivery in failures)
        log.info(
            "webhook.retry_requested",
            webhook_id=str(webhook_id),
            tenant_id=str(tenant_id),
            queued=queued,
            pending=len(failures) - queued,
        )
        return queued

    async def retry_recent_failures(self, *, limit: int = 50) -> int:
        """Sweep recent unresolved failures across all tenants and requeue them."""
        async with self._session_scope() as db:
            service = WebhookService(db, settings=self._settings)
            failures = await service.failed_deliveries(
                since=service.sweep_cutoff(), limit=limit
            )
        queued = sum(self._queue_retry(delivery, delay_seconds=0) for delivery in failures)
        log.info("webhook.retry_sweep", queued=queued, pending=len(failures) - queued)
        return queued

    def start_retry_sweep(self, interval_seconds: float) -> None:
        """Run ``retry_recent_failures`` every ``interval_seconds``."""
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop(interval_seconds))

    async def stop_retry_sweep(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None

    # ------------------------------------------------------------------ #
    # Task handlers
    # ------------------------------------------------------------------ #

    async def _handle_dispatch(self, task: dict[str, Any]) -> None:
        tenant_id = uuid.UUID(task["tenant_id"])
        event_type = task["event_type"]

        async with self._session_scope() as db:
            webhooks = await WebhookService(db, settings=self._settings).find_matching(
                tenant_id, event_type
            )

        for webhook in webhooks:
            self._pool.submit(
                TaskType.WEBHOOK_DELIVERY,
                {
                    "webhook_id": str(webhook.id),
                    "event_id": str(uuid.uuid4()),
                    "event_type": event_type,
                    "payload": task["payload"],
                    "attempt": 1,
                },
            )

        log.debug(
            "webhook.dispatched",
            tenant_id=str(tenant_id),
            event_type=event_type,
            matched=len(webhooks),
        )

    async def _handle_delivery(self, task: dict[str, Any]) -> None:
        webhook_id = uuid.UUID(task["webhook_id"])
        attempt = int(task["attempt"])
        event_id = uuid.UUID(task["event_id"])

        async with self._session_scope() as db:
            webhook = await db.get(WebhookSubscription, webhook_id)
            service = WebhookService(db, settings=self._settings, http_client=self._http)
            if webhook is not None and await service.attempt_recorded(
                webhook_id, event_id, attempt
            ):
                log.info(
                    "webhook.delivery_skipped",
                    webhook_id=str(webhook_id),
                    attempt=attempt,
                    reason="duplicate",
                )
                return
            self._pending.discard((task["webhook_id"], task["event_id"]))
            if webhook is None or not webhook.is_active:
                log.info(
                    "webhook.delivery_skipped",
                    webhook_id=str(webhook_id),
                    attempt=attempt,
                    reason="deleted" if webhook is None else "inactive",
                )
                return
            # Release the read transaction before the outbound call
            await db.commit()

            delivery = await service.deliver(
                webhook,
                task["event_type"],
                task["payload"],
                event_id=event_id,
                attempt=attempt,
            )
            delay = service.next_retry_delay(webhook, delivery)

        if delay is not None:
            self._queue_retry(delivery, delay_seconds=delay)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _queue_retry(self, delivery: DeliveryAttempt, *, delay_seconds: float) -> bool:
        """Submit the next attempt unless one is already waiting for this event."""
        key = (str(delivery.webhook_id), str(delivery.event_id))
        if key in self._pending:
            return False
        self._pool.submit(
            TaskType.WEBHOOK_RETRY,
            {
                "webhook_id": str(delivery.webhook_id),
                "event_id": str(delivery.event_id),
                "event_type": delivery.event_type,
                "payload": delivery.payload,
                "attempt": delivery.attempt + 1,
            },
            delay_seconds=delay_seconds,
        )
        self._pending.add(key)
        if delay_seconds:
            log.info(
                "webhook.retry_scheduled",
                webhook_id=str(delivery.webhook_id),
                attempt=delivery.attempt + 1,
                delay_seconds=delay_seconds,
            )
        return True

    async def _sweep_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.retry_recent_failures()
            except Exception:
                log.exception("webhook.retry_sweep_failed")
