from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from growroom.core.request_context import set_request_context

logger = logging.getLogger("growroom.access")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tags every log line of a request with its X-Request-ID."""

    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        set_request_context(rid, request.url.path, request.method)

        started = time.perf_counter()
        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        logger.info(
            "%s %s",
            request.method,
            request.url.path,
            extra={"status_code": response.status_code, "duration_ms": round((time.perf_counter() - started) * 1000, 1)},
        )
        return response
