"""API key usage metering.

``UsageRecorder.record`` is called once per API-key-authenticated
request after the handler has produced its response. It only enqueues;
the row is written by a background task in its own session. Nothing in
this module ever raises to the request path: failures are logged as
``usage.write_failed`` and dropped.
"""

from __future__ import annotations

import uuid
from typing import Any

import structlog

from sitebuilder.database import SessionScope, session_scope
from sitebuilder.infra.background_worker import BackgroundWorkerPool, TaskType
from sitebuilder.models.api_key import (
    ENDPOINT_MAX_LENGTH,
    IP_ADDRESS_MAX_LENGTH,
    APIKeyUsage,
)
from sitebuilder.services.api_keys import APIKeyService

log = structlog.get_logger(__name__)


class UsageRecorder:
    def __init__(
        self,
        pool: BackgroundWorkerPool,
        *,
        session_factory: SessionScope = session_scope,
    ) -> None:
        self._pool = pool
        self._session_scope = session_factory
        pool.register_handler(TaskType.API_KEY_USAGE, self._write_usage)
        pool.register_handler(TaskType.API_KEY_TOUCH, self._touch)

    def record(
        self,
        *,
        api_key_id: uuid.UUID,
        endpoint: str,
        method: str,
        status_code: int,
        response_time_ms: int,
        ip_address: str | None,
    ) -> None:
        """Queue one usage row. Never raises."""
        try:
            self._pool.submit(
                TaskType.API_KEY_USAGE,
                {
                    "api_key_id": str(api_key_id),
                    "endpoint": endpoint[:ENDPOINT_MAX_LENGTH],
                    "method": method.upper()[:10],
                    "status_code": status_code,
                    "response_time_ms": max(0, response_time_ms),
                    "ip_address": ip_address[:IP_ADDRESS_MAX_LENGTH] if ip_address else None,
                },
            )
        except Exception:
            log.exception("usage.write_failed", api_key_id=str(api_key_id), stage="enqueue")

    def touch(self, api_key_id: uuid.UUID) -> None:
        """Queue a last_used_at update. Never raises."""
        try:
            self._pool.submit(TaskType.API_KEY_TOUCH, {"api_key_id": str(api_key_id)})
        except Exception:
            log.exception("api_key.touch_failed", api_key_id=str(api_key_id))

    async def _write_usage(self, task: dict[str, Any]) -> None:
        try:
            async with self._session_scope() as db:
                db.add(
                    APIKeyUsage(
                        api_key_id=uuid.UUID(task["api_key_id"]),
                        endpoint=task["endpoint"],
                        method=task["method"],
                        status_code=task["status_code"],
                        response_time_ms=task["response_time_ms"],
                        ip_address=task["ip_address"],
                    )
                )
        except Exception:
            log.exception("usage.write_failed", api_key_id=task.get("api_key_id"))

    async def _touch(self, task: dict[str, Any]) -> None:
        try:
            async with self._session_scope() as db:
                await APIKeyService(db).touch_last_used(uuid.UUID(task["api_key_id"]))
        except Exception:
            log.exception("api_key.touch_failed", api_key_id=task.get("api_key_id"))
