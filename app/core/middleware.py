"""Request middleware for correlation and logging."""

import time
import uuid
from collections.abc import Awaitable, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.core.logging import access_role_ctx, get_logger, request_id_ctx

logger = get_logger(__name__)

ACCESS_ROLE_HEADER = "X-Access-Role"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Inject request IDs and the caller's access role into the log context."""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        """Process request with correlation ID.

        Args:
            request: Incoming HTTP request.
            call_next: Next middleware/handler in chain.

        Returns:
            Response with X-Request-ID header.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())

        request_token = request_id_ctx.set(request_id)
        role_token = access_role_ctx.set(request.headers.get(ACCESS_ROLE_HEADER))
        started = time.perf_counter()

        try:
            logger.info(
                "http.request_started",
                method=request.method,
                path=str(request.url.path),
                query=str(request.url.query) if request.url.query else None,
            )

            response = await call_next(request)

            logger.info(
                "http.request_completed",
                method=request.method,
                path=str(request.url.path),
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 1),
            )

            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            access_role_ctx.reset(role_token)
            request_id_ctx.reset(request_token)
