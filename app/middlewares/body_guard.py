"""Reject oversized JSON bodies before they reach the generation routes."""
from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Awaitable, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = logging.getLogger("generation-service.body-guard")


class BodyGuardMiddleware(BaseHTTPMiddleware):
    """Return 413 when a POST/PUT/PATCH body under a watched prefix is too large."""

    WATCH_PATH_PREFIXES = ("/api/",)

    def __init__(self, app, *, max_bytes: int | None = None, **_: Any) -> None:  # type: ignore[override]
        self.max_bytes = max_bytes if max_bytes and max_bytes > 0 else None
        super().__init__(app)

    def _too_large(self, content_length: int | None, body_len: int) -> bool:
        if self.max_bytes is None:
            return False
        if content_length and content_length > self.max_bytes:
            return True
        return body_len > self.max_bytes

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        if request.method not in {"POST", "PUT", "PATCH"}:
            return await call_next(request)
        if not request.url.path.startswith(self.WATCH_PATH_PREFIXES):
            return await call_next(request)

        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]
        start = time.time()

        content_length_header = request.headers.get("content-length")
        try:
            content_length = int(content_length_header) if content_length_header else None
        except (TypeError, ValueError):
            content_length = None

        if content_length and self._too_large(content_length, 0):
            size = content_length
        else:
            size = len(await request.body())

        if self._too_large(content_length, size):
            logger.warning(
                "[guard] rid=%s path=%s blocked size=%s limit=%s",
                rid,
                request.url.path,
                size,
                self.max_bytes,
            )
            return JSONResponse(
                status_code=413,
                content={"error": f"Request body too large ({size} bytes, limit {self.max_bytes})."},
            )

        response = await call_next(request)
        logger.debug(
            "[guard] rid=%s path=%s status=%s dur_ms=%s",
            rid,
            request.url.path,
            response.status_code,
            int((time.time() - start) * 1000),
        )
        return response


__all__ = ["BodyGuardMiddleware"]
