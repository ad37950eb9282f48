"""Request tracing middleware for the remote store emulator."""

import time
import uuid
from collections.abc import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from chatsync.logging import bound_context, get_logger
from chatsync.metrics import record_http_request

logger = get_logger(__name__)


class RequestTracingMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id and logs it with timing.

    A client-supplied X-Correlation-ID is carried through to the logs and
    echoed back, so a sync client's retries of one write can be followed.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = uuid.uuid4().hex[:8]
        correlation_id = request.headers.get("X-Correlation-ID") or request_id
        request.state.request_id = request_id

        with bound_context(
            request_id=request_id,
            correlation_id=correlation_id,
            method=request.method,
            path=request.url.path,
        ):
            started = time.perf_counter()
            try:
                response = await call_next(request)
            except Exception as exc:
                logger.error(
                    "request_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    duration_ms=round((time.perf_counter() - started) * 1000, 2),
                )
                raise

            duration = time.perf_counter() - started
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2),
            )
            # Scrapes of /metrics are not counted
            if not request.url.path.startswith("/metrics"):
                route = request.scope.get("route")
                path = getattr(route, "path", request.url.path)
                record_http_request(request.method, path, response.status_code, duration)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Correlation-ID"] = correlation_id
        return response
