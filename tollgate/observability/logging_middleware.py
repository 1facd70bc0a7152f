"""
FastAPI middleware for structured request logging.

Automatically:
- Generates request_id for each request (or honours X-Request-ID)
- Logs request completion with status and latency
- Propagates request context to every log call made while handling it
"""

import time
import uuid
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from tollgate.observability.logging import RequestContext, get_logger

logger = get_logger(__name__)

# Health checks and scrapes would drown out webhook traffic
QUIET_PATHS = frozenset({"/health", "/metrics"})


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    Request logging with structured context.

    Returns the request id in the X-Request-ID response header so provider
    delivery logs can be matched with ours.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:16]}"

        with RequestContext(request_id=request_id):
            start_time = time.perf_counter()

            try:
                response = await call_next(request)
            except Exception as e:
                latency_ms = (time.perf_counter() - start_time) * 1000
                logger.error(
                    "HTTP request failed",
                    method=request.method,
                    path=request.url.path,
                    latency_ms=round(latency_ms, 2),
                    error_type=type(e).__name__,
                    error=str(e),
                    exc_info=True,
                )
                raise

            latency_ms = (time.perf_counter() - start_time) * 1000
            if request.url.path not in QUIET_PATHS:
                logger.info(
                    "HTTP request completed",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    latency_ms=round(latency_ms, 2),
                )

            response.headers["X-Request-ID"] = request_id
            return response
