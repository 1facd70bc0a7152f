"""
Request size limiting middleware for DoS protection.

Rejects oversized webhook bodies before they are read, so signature
computation never runs over an unbounded payload.
"""

import logging
from collections.abc import Callable

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """
    Middleware to enforce request body size limits.

    Checks the Content-Length header. Chunked bodies without a length are
    re-checked by the webhook route after reading.

    Configuration:
        max_body_size: Maximum request body size in bytes
    """

    def __init__(self, app, max_body_size: int = 256 * 1024):
        super().__init__(app)
        self.max_body_size = max_body_size

        logger.info(f"Request size limit middleware enabled (max: {max_body_size} bytes)")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        content_length = request.headers.get("content-length")

        if content_length:
            try:
                content_length_int = int(content_length)
            except ValueError:
                return JSONResponse(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    content={"error": "Invalid Content-Length header"},
                )

            if content_length_int > self.max_body_size:
                logger.warning(
                    "Request body too large",
                    extra={
                        "path": request.url.path,
                        "method": request.method,
                        "content_length": content_length_int,
                        "max_allowed": self.max_body_size,
                    },
                )

                return JSONResponse(
                    status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                    content={
                        "error": "Request body too large",
                        "max_size_bytes": self.max_body_size,
                        "received_size_bytes": content_length_int,
                    },
                )

        return await call_next(request)


def validate_body_size(body: bytes, max_size: int) -> None:
    """
    Validate an already-read request body.

    Raises:
        ValueError: If body exceeds size limit
    """
    if len(body) > max_size:
        raise ValueError(f"Request body too large: {len(body)} bytes (limit {max_size})")
