"""
Shared test fixtures for pytest.

Provides:
- settings: test configuration (in-memory SQLite, cheap bcrypt)
- database: fresh schema per test, torn down afterwards
- tenant, other_tenant, admin_user, viewer_user: seeded rows
- receiver: recording webhook endpoint behind httpx.MockTransport
- worker_pool, dispatcher, usage_recorder: background machinery, not
  started until run_background() is awaited
- test_app / client: FastAPI app over httpx.ASGITransport
- make_token / issue_key: credential helpers
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone
from typing import Any

import httpx
import jwt
import pytest
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession

from sitebuilder.config import Settings, get_settings
from sitebuilder.database import (
    close_db,
    create_all,
    get_session_factory,
    init_db,
    session_scope,
)
from sitebuilder.infra.background_worker import BackgroundWorkerPool
from sitebuilder.models.api_key import APIKey
from sitebuilder.models.tenant import Tenant, TenantStatus
from sitebuilder.models.user import User, UserRole
from sitebuilder.services.api_keys import APIKeyService
from sitebuilder.services.dispatcher import EventDispatcher
from sitebuilder.services.usage import UsageRecorder
from sitebuilder.telemetry import clear_context

TEST_JWT_SECRET = "test-jwt-secret"
TEST_JWT_AUDIENCE = "sitebuilder-api"


# ------------------------------------------------------------------ #
# Settings & database
# ------------------------------------------------------------------ #


@pytest.fixture
def settings(monkeypatch: pytest.MonkeyPatch) -> Settings:
    """Test settings, also served by the cached get_settings()."""
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setenv("JWT_AUDIENCE", TEST_JWT_AUDIENCE)
    monkeypatch.setenv("API_KEY_BCRYPT_ROUNDS", "4")
    monkeypatch.setenv("WEBHOOK_MAX_ATTEMPTS", "1")
    monkeypatch.setenv("WEBHOOK_TIMEOUT_SECONDS", "5")
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
async def database(settings: Settings) -> AsyncGenerator[None, None]:
    init_db(settings, for_test=True)
    await create_all()
    yield
    await close_db()


@pytest.fixture
async def db_session(database: None) -> AsyncGenerator[AsyncSession, None]:
    """A plain session; tests commit explicitly when other sessions must see rows."""
    async with get_session_factory()() as session:
        yield session


# ------------------------------------------------------------------ #
# Seed data
# ------------------------------------------------------------------ #


async def _seed(*rows: Any) -> None:
    async with session_scope() as db:
        for row in rows:
            db.add(row)


@pytest.fixture
async def tenant(database: None) -> Tenant:
    row = Tenant(name="Acme Bakery", slug="acme-bakery", status=TenantStatus.ACTIVE)
    await _seed(row)
    return row


@pytest.fixture
async def other_tenant(database: None) -> Tenant:
    row = Tenant(name="Globex", slug="globex", status=TenantStatus.ACTIVE)
    await _seed(row)
    return row


@pytest.fixture
async def admin_user(tenant: Tenant) -> User:
    row = User(tenant_id=tenant.id, email="admin@acme.test", role=UserRole.ADMIN)
    await _seed(row)
    return row


@pytest.fixture
async def viewer_user(tenant: Tenant) -> User:
    row = User(tenant_id=tenant.id, email="viewer@acme.test", role=UserRole.VIEWER)
    await _seed(row)
    return row


def make_token(
    user: User,
    *,
    audience: str = TEST_JWT_AUDIENCE,
    secret: str = TEST_JWT_SECRET,
    expires_in: int = 3600,
) -> str:
    """Create a session JWT for a seeded user."""
    now = int(datetime.now(timezone.utc).timestamp())
    payload = {
        "sub": str(user.id),
        "tenant_id": str(user.tenant_id),
        "aud": audience,
        "iat": now,
        "exp": now + expires_in,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def issue_key(database: None, settings: Settings) -> Callable[..., Any]:
    """Create and commit an API key; returns (APIKey, raw_key)."""

    async def _issue(
        tenant_id: uuid.UUID,
        permissions: list[str],
        **kwargs: Any,
    ) -> tuple[APIKey, str]:
        async with session_scope() as db:
            return await APIKeyService(db, settings=settings).create_key(
                tenant_id=tenant_id,
                name=kwargs.pop("name", "Integration"),
                permissions=permissions,
                created_by=kwargs.pop("created_by", None),
                **kwargs,
            )

    return _issue


# ------------------------------------------------------------------ #
# Webhook receiver
# ------------------------------------------------------------------ #


class Receiver:
    """Fake webhook endpoint: records requests, answers per URL.

    ``behaviour`` maps a URL to a status code or an exception instance to
    raise; unknown URLs answer 200.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.behaviour: dict[str, int | Exception] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.behaviour.get(str(request.url), 200)
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome, text="ok" if outcome < 400 else "boom")

    def for_url(self, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url) == url]


@pytest.fixture
def receiver() -> Receiver:
    return Receiver()


@pytest.fixture
async def http_client(receiver: Receiver) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(receiver)) as client:
        yield client


# ------------------------------------------------------------------ #
# Background machinery
# ------------------------------------------------------------------ #


@pytest.fixture
async def worker_pool() -> AsyncGenerator[BackgroundWorkerPool, None]:
    # One worker: every background session shares the in-memory connection
    pool = BackgroundWorkerPool(max_workers=1, queue_size=100)
    yield pool
    await pool.shutdown(drain=False)


@pytest.fixture
def dispatcher(
    worker_pool: BackgroundWorkerPool,
    settings: Settings,
    http_client: httpx.AsyncClient,
    database: None,
) -> EventDispatcher:
    return EventDispatcher(worker_pool, settings=settings, http_client=http_client)


@pytest.fixture
def usage_recorder(worker_pool: BackgroundWorkerPool, database: None) -> UsageRecorder:
    return UsageRecorder(worker_pool)


async def run_background(pool: BackgroundWorkerPool) -> None:
    """Run every queued task (and whatever they queue) to completion."""
    if not pool.is_running:
        await pool.start()
    await pool.drain()


# ------------------------------------------------------------------ #
# Application
# ------------------------------------------------------------------ #


@pytest.fixture
def test_app(
    settings: Settings,
    database: None,
    worker_pool: BackgroundWorkerPool,
    dispatcher: EventDispatcher,
    usage_recorder: UsageRecorder,
    http_client: httpx.AsyncClient,
) -> FastAPI:
    """App wired the way the lifespan wires it.

    ASGITransport does not run the lifespan, so state is attached here.
    Background tasks stay queued until a test awaits run_background().
    """
    from sitebuilder.main import create_app

    app = create_app()
    app.dependency_overrides[get_settings] = lambda: settings
    app.state.worker_pool = worker_pool
    app.state.dispatcher = dispatcher
    app.state.usage_recorder = usage_recorder
    app.state.http_client = http_client
    return app


@pytest.fixture
async def client(test_app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = httpx.ASGITransport(app=test_app)  # type: ignore[arg-type]
    async with httpx.AsyncClient(
        transport=transport,
        base_url="http://testserver",
    ) as ac:
        yield ac
    # Request handling binds request/tenant ids into structlog contextvars
    clear_context()
