"""
HTTP request logging middleware.

Logs every request with a generated request id, method, path, client address,
status and duration. The id is echoed back in the `X-Request-ID` header.
"""

import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger("llmserve.access")


def _client_ip(request: Request) -> str:
    """Resolve the client IP from X-Forwarded-For or the connection."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else ""


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs request start, completion and unhandled exceptions."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        rid = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.request_id = rid
        client_ip = _client_ip(request)

        start = time.perf_counter()
        logger.debug("[%s] %s %s from %s started", rid, request.method, request.url.path, client_ip)

        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000.0
            logger.exception("[%s] %s %s failed after %.2fms", rid, request.method, request.url.path, duration_ms)
            raise

        duration_ms = (time.perf_counter() - start) * 1000.0
        logger.info(
            "[%s] %s %s -> %s (%.2fms)",
            rid, request.method, request.url.path, response.status_code, duration_ms,
        )
        response.headers["X-Request-ID"] = rid
        return response
