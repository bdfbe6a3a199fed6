"""API Key service - business logic for API key management.

Handles creation, validation, rotation, and revocation of API keys.

Key format: ``sb_<env>_<64 hex chars>`` where env is ``live`` for keys
issued in production and ``test`` otherwise. The first 12 characters are
stored in clear as ``key_prefix`` for indexed candidate lookup; the full
key is stored only as a bcrypt hash.

Security:
- Raw API keys are only returned once at creation/rotation
- Prefixes are short, so several keys may share one; validation checks
  the presented key against every active candidate
- bcrypt runs in a worker thread so it never blocks the event loop
- Never log or expose raw keys after creation
"""

from __future__ import annotations

import asyncio
import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

import bcrypt
import structlog
from sqlalchemy import case, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sitebuilder.auth.permissions import normalize_permissions
from sitebuilder.config import Settings, get_settings
from sitebuilder.models.api_key import KEY_PREFIX_LENGTH, APIKey, APIKeyUsage
from sitebuilder.models.tenant import Tenant, TenantStatus

log = structlog.get_logger(__name__)

KEY_PATTERN = re.compile(r"sb_(live|test)_[0-9a-f]{64}")
_RANDOM_BYTES = 32


class InvalidAPIKeyError(Exception):
    """Raised when an API key is malformed, unknown, wrong, expired, or revoked.

    The message is deliberately the same for every case.
    """

    def __init__(self) -> None:
        super().__init__("Invalid or expired API key")


class APIKeyNotFoundError(Exception):
    """Raised when a key does not exist or belongs to another tenant."""


@dataclass(frozen=True)
class ResolvedAuth:
    """What a validated key grants."""

    api_key_id: uuid.UUID
    tenant_id: uuid.UUID
    key_prefix: str
    permissions: frozenset[str]
    rate_limit: int
    tenant_status: TenantStatus

    @property
    def tenant_suspended(self) -> bool:
        return self.tenant_status == TenantStatus.SUSPENDED


@dataclass(frozen=True)
class UsageReport:
    records: list[APIKeyUsage]
    total: int
    successful: int
    failed: int
    avg_response_time_ms: float


def hash_key(raw_key: str, rounds: int) -> str:
    """Hash an API key using bcrypt."""
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(raw_key.encode("utf-8"), salt).decode("utf-8")


def verify_key(raw_key: str, key_hash: str) -> bool:
    """Verify a key against a stored hash.

    Returns False for malformed hashes or encoding errors.
    """
    try:
        return bcrypt.checkpw(raw_key.encode("utf-8"), key_hash.encode("utf-8"))
    except (ValueError, TypeError):
        return False


def _utc(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=UTC)


class APIKeyService:
    """Service for API key operations."""

    def __init__(self, db: AsyncSession, *, settings: Settings | None = None) -> None:
        self._db = db
        self._settings = settings or get_settings()

    # ------------------------------------------------------------------ #
    # Issuance
    # ------------------------------------------------------------------ #

    async def create_key(
        self,
        *,
        tenant_id: uuid.UUID,
        name: str,
        permissions: list[str],
        created_by: uuid.UUID | None,
        rate_limit: int = 1000,
        expires_at: datetime | None = None,
    ) -> tuple[APIKey, str]:
        """Create a new API key.

        Returns:
            Tuple of (APIKey model, raw_key string)
            WARNING: The raw key is only returned here and never stored!

        Raises:
            ValueError: On unknown permissions or an expiry in the past.
        """
        granted = normalize_permissions(permissions)
        if expires_at is not None and _utc(expires_at) <= datetime.now(UTC):
            raise ValueError("Expiration date must be in the future")

        raw_key = self._generate_key()
        key_hash = await asyncio.to_thread(
            hash_key, raw_key, self._settings.api_key_bcrypt_rounds
        )
        key_prefix = raw_key[:KEY_PREFIX_LENGTH]

        api_key = APIKey(
            tenant_id=tenant_id,
            name=name,
            key_prefix=key_prefix,
            key_hash=key_hash,
            permissions=granted,
            rate_limit=rate_limit,
            created_by=created_by,
            expires_at=expires_at,
            is_active=True,
        )
        self._db.add(api_key)
        await self._db.flush()

        log.info(
            "api_key.created",
            key_id=str(api_key.id),
            tenant_id=str(tenant_id),
            name=name,
            permissions=granted,
            prefix=key_prefix,
            expires_at=expires_at,
        )
        return api_key, raw_key

    def _generate_key(self) -> str:
        return f"sb_{self._settings.api_key_environment}_{secrets.token_hex(_RANDOM_BYTES)}"

    # ------------------------------------------------------------------ #
    # Validation
    # ------------------------------------------------------------------ #

    async def validate_key(self, raw_key: str) -> ResolvedAuth:
        """Resolve a presented key to what it grants.

        Raises:
            InvalidAPIKeyError: For every kind of rejection, with one message.
        """
        if not KEY_PATTERN.fullmatch(raw_key):
            log.warning("api_key.invalid_format")
            raise InvalidAPIKeyError()

        key_prefix = raw_key[:KEY_PREFIX_LENGTH]
        stmt = (
            select(APIKey, Tenant.status)
            .join(Tenant, Tenant.id == APIKey.tenant_id)
            .where(
                APIKey.key_prefix == key_prefix,
                APIKey.is_active.is_(True),
            )
        )
        result = await self._db.execute(stmt)
        now = datetime.now(UTC)

        for api_key, tenant_status in result.all():
            if api_key.expires_at is not None and _utc(api_key.expires_at) <= now:
                continue
            if await asyncio.to_thread(verify_key, raw_key, api_key.key_hash):
                log.debug(
                    "api_key.validated",
                    key_id=str(api_key.id),
                    tenant_id=str(api_key.tenant_id),
                )
                return ResolvedAuth(
                    api_key_id=api_key.id,
                    tenant_id=api_key.tenant_id,
                    key_prefix=api_key.key_prefix,
                    permissions=frozenset(api_key.permissions),
                    rate_limit=api_key.rate_limit,
                    tenant_status=tenant_status,
                )

        log.warning("api_key.invalid", prefix=key_prefix)
        raise InvalidAPIKeyError()

    async def touch_last_used(self, key_id: uuid.UUID) -> None:
        """Set last_used_at to now."""
        await self._db.execute(
            update(APIKey)
            .where(APIKey.id == key_id)
            .values(last_used_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )

    # ------------------------------------------------------------------ #
    # Management
    # ------------------------------------------------------------------ #

    async def list_keys(
        self,
        tenant_id: uuid.UUID,
        *,
        is_active: bool | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[APIKey], int]:
        """One page of a tenant's keys (newest first) and the total."""
        conditions = [APIKey.tenant_id == tenant_id]
        if is_active is not None:
            conditions.append(APIKey.is_active.is_(is_active))

        total = await self._db.scalar(
            select(func.count()).select_from(APIKey).where(*conditions)
        )
        stmt = (
            select(APIKey)
            .where(*conditions)
            .order_by(APIKey.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all()), int(total or 0)

    async def get_key(self, key_id: uuid.UUID, tenant_id: uuid.UUID) -> APIKey:
        stmt = select(APIKey).where(
            APIKey.id == key_id,
            APIKey.tenant_id == tenant_id,
        )
        result = await self._db.execute(stmt)
        api_key = result.scalar_one_or_none()
        if api_key is None:
            raise APIKeyNotFoundError(f"API key {key_id} not found")
        return api_key

    async def update_key(
        self,
        key_id: uuid.UUID,
        tenant_id: uuid.UUID,
        *,
        name: str | None = None,
        permissions: list[str] | None = None,
        rate_limit: int | None = None,
        is_active: bool | None = None,
        expires_at: datetime | None = None,
    ) -> APIKey:
        api_key = await self.get_key(key_id, tenant_id)

        if name is not None:
            api_key.name = name
        if permissions is not None:
            api_key.permissions = normalize_permissions(permissions)
        if rate_limit is not None:
            api_key.rate_limit = rate_limit
        if expires_at is not None:
            if _utc(expires_at) <= datetime.now(UTC):
                raise ValueError("Expiration date must be in the future")
            api_key.expires_at = expires_at
        if is_active is not None and is_active != api_key.is_active:
            api_key.is_active = is_active
            api_key.revoked_at = None if is_active else datetime.now(UTC)

        await self._db.flush()
        log.info("api_key.updated", key_id=str(key_id), tenant_id=str(tenant_id))
        return api_key

    async def revoke_key(self, key_id: uuid.UUID, tenant_id: uuid.UUID) -> APIKey:
        api_key = await self.get_key(key_id, tenant_id)
        api_key.is_active = False
        api_key.revoked_at = datetime.now(UTC)
        await self._db.flush()

        log.info(
            "api_key.revoked",
            key_id=str(key_id),
            tenant_id=str(tenant_id),
            name=api_key.name,
        )
        return api_key

    async def delete_key(self, key_id: uuid.UUID, tenant_id: uuid.UUID) -> None:
        """Permanently delete a key and its usage history."""
        api_key = await self.get_key(key_id, tenant_id)
        await self._db.execute(delete(APIKeyUsage).where(APIKeyUsage.api_key_id == api_key.id))
        await self._db.delete(api_key)
        await self._db.flush()
        log.info("api_key.deleted", key_id=str(key_id), tenant_id=str(tenant_id))

    async def rotate_key(
        self,
        key_id: uuid.UUID,
        tenant_id: uuid.UUID,
        *,
        created_by: uuid.UUID | None,
    ) -> tuple[APIKey, str]:
        """Issue a replacement key with the same scope and revoke the old one.

        Both changes land in the caller's transaction, so the old key is
        rejected as soon as the new one is visible.
        """
        old_key = await self.get_key(key_id, tenant_id)

        if old_key.expires_at is not None and _utc(old_key.expires_at) <= datetime.now(UTC):
            raise ValueError("Expired API keys cannot be rotated")

        new_key, new_raw_key = await self.create_key(
            tenant_id=tenant_id,
            name=f"{old_key.name} (Rotated)",
            permissions=list(old_key.permissions),
            created_by=created_by,
            rate_limit=old_key.rate_limit,
            expires_at=old_key.expires_at,
        )

        old_key.is_active = False
        old_key.revoked_at = datetime.now(UTC)
        await self._db.flush()

        log.info(
            "api_key.rotated",
            old_key_id=str(key_id),
            new_key_id=str(new_key.id),
            tenant_id=str(tenant_id),
        )
        return new_key, new_raw_key

    # ------------------------------------------------------------------ #
    # Usage
    # ------------------------------------------------------------------ #

    async def usage(
        self,
        key_id: uuid.UUID,
        tenant_id: uuid.UUID,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
        endpoint: str | None = None,
        method: str | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> UsageReport:
        """Usage rows for one key plus statistics over the whole filtered set."""
        await self.get_key(key_id, tenant_id)

        conditions = [APIKeyUsage.api_key_id == key_id]
        if since is not None:
            conditions.append(APIKeyUsage.created_at >= _utc(since))
        if until is not None:
            conditions.append(APIKeyUsage.created_at <= _utc(until))
        if endpoint is not None:
            conditions.append(APIKeyUsage.endpoint.startswith(endpoint))
        if method is not None:
            conditions.append(APIKeyUsage.method == method.upper())

        stats = (
            await self._db.execute(
                select(
                    func.count(),
                    func.coalesce(
                        func.sum(case((APIKeyUsage.status_code < 400, 1), else_=0)), 0
                    ),
                    func.avg(APIKeyUsage.response_time_ms),
                ).where(*conditions)
            )
        ).one()
        total, successful, avg_ms = int(stats[0]), int(stats[1]), stats[2]

        result = await self._db.execute(
            select(APIKeyUsage)
            .where(*conditions)
            .order_by(APIKeyUsage.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return UsageReport(
            records=list(result.scalars().all()),
            total=total,
            successful=successful,
            failed=total - successful,
            avg_response_time_ms=round(float(avg_ms or 0), 2),
        )
