"""Webhook SQLAlchemy models.

Two models:
- WebhookSubscription: registered endpoint with event subscriptions and
  failure accounting
- DeliveryAttempt: append-only record of one outbound call (including
  retries and test deliveries)
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from sitebuilder.database import Base, JSONType

URL_MAX_LENGTH = 2048


class WebhookSubscription(Base):
    """A tenant-scoped webhook endpoint subscription.

    The signing secret is generated server-side at registration and is
    returned to the caller only then (and on explicit rotation). The
    failure counter is mutated only by the delivery executor; reaching
    ``max_failures`` flips ``is_active`` off in the same UPDATE.
    """

    __tablename__ = "webhooks"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)

    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    url: Mapped[str] = mapped_column(
        String(URL_MAX_LENGTH),
        nullable=False,
        comment="Absolute endpoint that receives event payloads",
    )

    events: Mapped[list[str]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="Event names this webhook subscribes to",
    )

    secret: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        comment="HMAC-SHA256 signing key; never returned after creation/rotation",
    )

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    failure_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Consecutive failed deliveries",
    )
    max_failures: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=5,
        comment="Consecutive failures before auto-disable",
    )
    retry_backoff: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=60,
        comment="Base delay in seconds for exponential retry backoff",
    )

    last_triggered_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    deliveries: Mapped[list[DeliveryAttempt]] = relationship(
        "DeliveryAttempt",
        back_populates="webhook",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_webhook_tenant_active", "tenant_id", "is_active"),
    )

    def subscribes_to(self, event_type: str) -> bool:
        return event_type in (self.events or [])

    def __repr__(self) -> str:
        return (
            f"<WebhookSubscription id={self.id} tenant={self.tenant_id} "
            f"url={self.url!r} active={self.is_active} failures={self.failure_count}>"
        )


class DeliveryAttempt(Base):
    """One delivery attempt. Written once, never updated."""

    __tablename__ = "webhook_deliveries"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)

    webhook_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("webhooks.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
    )

    event_id: Mapped[uuid.UUID] = mapped_column(
        nullable=False,
        index=True,
        comment="Shared by every attempt (first delivery and retries) of one event",
    )
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)

    payload: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment="Snapshot of the event payload that was sent",
    )

    attempt: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        comment="1 for the first delivery, incremented per retry",
    )
    is_test: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    status_code: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        comment="HTTP status received; NULL when the transport failed",
    )
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    webhook: Mapped[WebhookSubscription] = relationship(
        "WebhookSubscription", back_populates="deliveries"
    )

    __table_args__ = (
        Index("ix_delivery_webhook_created", "webhook_id", "created_at"),
        Index("ix_delivery_success_created", "success", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<DeliveryAttempt id={self.id} webhook={self.webhook_id} "
            f"event={self.event_type!r} success={self.success} attempt={self.attempt}>"
        )
