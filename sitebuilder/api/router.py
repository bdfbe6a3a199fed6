"""Top-level router aggregation."""

from __future__ import annotations

from fastapi import APIRouter

from sitebuilder.api import health, keys, webhooks

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(webhooks.router)
api_router.include_router(keys.router)
