"""ORM models package.

Import all models here so that SQLAlchemy's metadata is fully populated
when Alembic runs autogenerate. The order of imports matters for foreign
key resolution.
"""

from sitebuilder.models.tenant import Tenant, TenantStatus
from sitebuilder.models.user import User, UserRole
from sitebuilder.models.api_key import APIKey, APIKeyUsage
from sitebuilder.models.webhook import DeliveryAttempt, WebhookSubscription

__all__ = [
    "Tenant",
    "TenantStatus",
    "User",
    "UserRole",
    "APIKey",
    "APIKeyUsage",
    "WebhookSubscription",
    "DeliveryAttempt",
]
