"""API Key models for programmatic access.

API keys let integrations call the site-builder API without a user
session. Each key is scoped to a tenant and carries a permission set and
an hourly rate limit.

Security considerations:
- The full key is bcrypt-hashed; the plaintext exists only in the
  creation/rotation response
- key_prefix (first 12 characters) is not secret and is indexed so
  validation finds candidates without scanning hashes
- Expired keys are rejected regardless of is_active
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from sitebuilder.database import Base, JSONType

KEY_PREFIX_LENGTH = 12
ENDPOINT_MAX_LENGTH = 255
IP_ADDRESS_MAX_LENGTH = 45


class APIKey(Base):
    """API key issued to a tenant."""

    __tablename__ = "api_keys"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Human-readable name for the key",
    )

    # Security
    key_prefix: Mapped[str] = mapped_column(
        String(KEY_PREFIX_LENGTH),
        nullable=False,
        comment="First 12 characters of the key, e.g. 'sb_live_3f9a'",
    )
    key_hash: Mapped[str] = mapped_column(
        String(60),
        nullable=False,
        comment="bcrypt hash of the full key (never store raw key)",
    )

    # Authorization
    permissions: Mapped[list[str]] = mapped_column(
        JSONType,
        nullable=False,
        comment="Granted permission tokens, e.g. ['read:pages', 'write:*']",
    )
    rate_limit: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1000,
        comment="Max requests per hour",
    )

    # Lifecycle
    created_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Expiration timestamp (None = never expires)",
    )
    last_used_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    usage: Mapped[list[APIKeyUsage]] = relationship(
        "APIKeyUsage",
        back_populates="api_key",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        # Candidate lookup during validation
        Index("ix_api_keys_prefix_active", "key_prefix", "is_active"),
        Index("ix_api_keys_tenant_active", "tenant_id", "is_active"),
    )

    def __repr__(self) -> str:
        return f"<APIKey id={self.id} name={self.name!r} tenant={self.tenant_id} prefix={self.key_prefix!r}>"


class APIKeyUsage(Base):
    """One authenticated request made with an API key. Append-only."""

    __tablename__ = "api_key_usage"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    api_key_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("api_keys.id", ondelete="CASCADE"),
        nullable=False,
    )

    endpoint: Mapped[str] = mapped_column(String(ENDPOINT_MAX_LENGTH), nullable=False)
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False)
    response_time_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    ip_address: Mapped[str | None] = mapped_column(
        String(IP_ADDRESS_MAX_LENGTH), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    api_key: Mapped[APIKey] = relationship("APIKey", back_populates="usage")

    __table_args__ = (
        Index("ix_api_key_usage_key_created", "api_key_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<APIKeyUsage key={self.api_key_id} {self.method} {self.endpoint} "
            f"status={self.status_code}>"
        )
