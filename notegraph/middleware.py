"""HTTP middleware for the note graph API.

Provides:
    - API key authentication (X-API-Key header, optional)
    - Audit logging (structured request/response logging)
    - Request metrics (counter + latency histogram)
"""

from __future__ import annotations

import logging
import secrets
import time
from typing import Callable, Set

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from .metrics import record_request_metric

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("audit")


# ---------------------------------------------------------------------------
# API Key Authentication
# ---------------------------------------------------------------------------

class APIKeyMiddleware(BaseHTTPMiddleware):
    """Require the X-API-Key header on all non-exempt paths."""

    EXEMPT_PATHS: Set[str] = {"/v1/health", "/metrics", "/docs", "/openapi.json", "/redoc"}

    def __init__(self, app, api_key: str):
        super().__init__(app)
        self.api_key = api_key

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.EXEMPT_PATHS:
            return await call_next(request)

        key = request.headers.get("X-API-Key", "")
        if not key or not secrets.compare_digest(key, self.api_key):
            audit_logger.warning(
                "AUTH_FAIL ip=%s path=%s",
                request.client.host if request.client else "unknown",
                request.url.path,
            )
            return JSONResponse(
                status_code=401,
                content={"error": "Invalid or missing API key", "status_code": 401},
            )
        return await call_next(request)


# ---------------------------------------------------------------------------
# Audit Logging
# ---------------------------------------------------------------------------

class AuditLogMiddleware(BaseHTTPMiddleware):
    """Log every request with structured fields."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start = time.time()
        client_ip = request.client.host if request.client else "unknown"
        library = request.query_params.get("library", "-")

        response = await call_next(request)
        elapsed_ms = round((time.time() - start) * 1000, 1)

        audit_logger.info(
            "method=%s path=%s status=%d ip=%s library=%s elapsed_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            client_ip,
            library,
            elapsed_ms,
        )
        return response


# ---------------------------------------------------------------------------
# Request metrics
# ---------------------------------------------------------------------------

class RequestMetricsMiddleware(BaseHTTPMiddleware):
    """Feed the in-process metrics collector.

    Paths are recorded by route template (``/v1/notes/{memory_id}``) so ids
    do not explode label cardinality.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            path = getattr(route, "path", None) or request.url.path
            record_request_metric(
                method=request.method,
                path=path,
                status=status,
                duration_seconds=time.perf_counter() - start,
            )
