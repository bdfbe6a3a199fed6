"""API key permission model.

A permission token is ``<action>:<resource>``. Which resource a route
touches is declared where the route is registered (see
``dependencies.require_api_permission``); the action comes from the
HTTP method. Nothing is inferred from the URL at request time.

Wildcards:
- ``admin:all`` satisfies every check
- ``<action>:*`` satisfies every check for that action
"""

from __future__ import annotations

from enum import StrEnum


class Action(StrEnum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"


class Resource(StrEnum):
    PAGES = "pages"
    SECTIONS = "sections"
    BRANDING = "branding"
    NAVIGATION = "navigation"
    SEO = "seo"
    ASSETS = "assets"
    USERS = "users"
    WEBHOOKS = "webhooks"


ADMIN_ALL = "admin:all"

# Resources whose content cannot be deleted, only overwritten
_NO_DELETE = frozenset({Resource.BRANDING, Resource.SEO})

PERMISSION_TABLE: dict[tuple[Resource, Action], str] = {
    (resource, action): f"{action}:{resource}"
    for resource in Resource
    for action in Action
    if not (action == Action.DELETE and resource in _NO_DELETE)
}

ACTION_WILDCARDS: frozenset[str] = frozenset(f"{action}:*" for action in Action)

ALL_PERMISSIONS: frozenset[str] = (
    frozenset(PERMISSION_TABLE.values()) | ACTION_WILDCARDS | {ADMIN_ALL}
)

METHOD_ACTIONS: dict[str, Action] = {
    "GET": Action.READ,
    "POST": Action.WRITE,
    "PUT": Action.WRITE,
    "PATCH": Action.WRITE,
    "DELETE": Action.DELETE,
}


def permission_for(resource: Resource, method: str) -> str | None:
    """Token a request with ``method`` needs on ``resource``, if any."""
    action = METHOD_ACTIONS.get(method.upper())
    if action is None:
        return None
    token = PERMISSION_TABLE.get((resource, action))
    if token is None and resource in _NO_DELETE:
        # No direct grant exists; only wildcards can satisfy it
        return f"{action}:{resource}"
    return token


def has_permission(granted: frozenset[str] | set[str] | list[str], required: str) -> bool:
    if ADMIN_ALL in granted or required in granted:
        return True
    action, _, _ = required.partition(":")
    return f"{action}:*" in granted


def normalize_permissions(permissions: list[str]) -> list[str]:
    """Validate and de-duplicate a requested permission list.

    Raises:
        ValueError: If the list is empty or contains unknown tokens.
    """
    if not permissions:
        raise ValueError("At least one permission is required")
    unknown = set(permissions) - ALL_PERMISSIONS
    if unknown:
        raise ValueError(f"Unknown permissions: {sorted(unknown)}")
    return list(dict.fromkeys(permissions))
