"""Session token validation.

Dashboard users reach the management API with a short-lived HS256 JWT
issued by the login flow (a separate service). Required claims: ``sub``
(user id), ``tenant_id``, ``exp`` and ``aud``; ``role`` is read from the
user record, never from the token.
"""

from __future__ import annotations

from typing import Any

import jwt
from jwt.exceptions import InvalidTokenError

from sitebuilder.config import Settings

ALGORITHM = "HS256"


class TokenValidationError(Exception):
    """Raised when a session token is malformed, expired or mis-addressed."""


def validate_token(token: str, settings: Settings) -> dict[str, Any]:
    """Validate a session JWT and return its claims.

    Raises:
        TokenValidationError: On any verification failure.
    """
    try:
        claims: dict[str, Any] = jwt.decode(
            token,
            settings.jwt_secret.get_secret_value(),
            algorithms=[ALGORITHM],
            audience=settings.jwt_audience,
            options={"require": ["sub", "exp", "aud"]},
        )
    except InvalidTokenError as exc:
        raise TokenValidationError(str(exc)) from exc

    if not claims.get("tenant_id"):
        raise TokenValidationError("Token missing tenant_id claim")
    return claims
