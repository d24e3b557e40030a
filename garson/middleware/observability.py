from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from garson.core.metrics import request_metrics
from garson.core.request_context import clear_request_context, set_request_context

logger = logging.getLogger(__name__)

# Health checks hit these every few seconds; they are counted but not logged at INFO.
_QUIET_PATHS = {"/", "/health"}


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Request id, access log and request metrics for every HTTP call.

    Tenant and conversation ids are taken from the route path so the access
    line can be joined with the turn logs written inside the request.
    """

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id
        set_request_context(request_id=request_id)

        status_code = 500
        response = None
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            tenant_id, conversation_id = _path_ids(request)
            route = request.scope.get("route")
            metric_endpoint = getattr(route, "path", None) or request.url.path
            request_metrics.observe(
                endpoint=metric_endpoint,
                method=request.method,
                status_code=status_code,
                duration_ms=duration_ms,
            )

            log = logger.debug if request.url.path in _QUIET_PATHS else logger.info
            log(
                "%s %s -> %s",
                request.method,
                metric_endpoint,
                status_code,
                extra={
                    "request_id": request_id,
                    "tenant_id": tenant_id,
                    "conversation_id": conversation_id,
                    "endpoint": request.url.path,
                    "method": request.method,
                    "status_code": status_code,
                    "duration_ms": duration_ms,
                },
            )

            if response is not None:
                response.headers["X-Request-ID"] = request_id
            clear_request_context()


def _path_ids(request: Request) -> tuple[str | None, str | None]:
    params = request.path_params
    tenant_id = params.get("tenant_id")
    conversation_id = params.get("conversation_id")
    return (
        str(tenant_id) if tenant_id is not None else None,
        str(conversation_id) if conversation_id is not None else None,
    )
