"""Request pipeline for routes reachable with API keys.

Stage order for every route registered with ``MeteredRoute``:

1. authentication   - ``get_principal`` dependency (API key or session)
2. authorization    - ``require_api_permission`` dependency
3. handler          - the endpoint itself
4. usage recording  - this route class, after the handler returns or raises

Stages 1 and 2 run inside FastAPI's dependency solving, which happens in
the handler wrapped below, so an auth failure is timed and recorded like
any other response once a key has been resolved. Stage 4 only records
requests authenticated by API key and never alters the response.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Coroutine
from typing import Any

import structlog
from fastapi import HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.routing import APIRoute

from sitebuilder.services.api_keys import ResolvedAuth

log = structlog.get_logger(__name__)


def client_address(request: Request) -> str | None:
    """First X-Forwarded-For hop, else the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


def record_usage(
    request: Request,
    *,
    status_code: int,
    response_time_ms: int,
) -> None:
    """Hand the finished request to the usage recorder, if a key was used."""
    resolved: ResolvedAuth | None = getattr(request.state, "api_key_auth", None)
    recorder = getattr(request.app.state, "usage_recorder", None)
    if resolved is None or recorder is None:
        return
    recorder.record(
        api_key_id=resolved.api_key_id,
        endpoint=request.url.path,
        method=request.method,
        status_code=status_code,
        response_time_ms=response_time_ms,
        ip_address=client_address(request),
    )


class MeteredRoute(APIRoute):
    """APIRoute that records API key usage after the endpoint completes.

    Usage:
        router = APIRouter(route_class=MeteredRoute)
    """

    def get_route_handler(self) -> Callable[[Request], Coroutine[Any, Any, Response]]:
        handler = super().get_route_handler()

        async def metered_handler(request: Request) -> Response:
            start_time = time.perf_counter()
            status_code = 500
            try:
                response = await handler(request)
                status_code = response.status_code
                return response
            except HTTPException as exc:
                status_code = exc.status_code
                raise
            except RequestValidationError:
                status_code = 422
                raise
            finally:
                record_usage(
                    request,
                    status_code=status_code,
                    response_time_ms=int((time.perf_counter() - start_time) * 1000),
                )

        return metered_handler
