"""Request logging middleware with tracing"""

import logging
import time
import uuid
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

# Host audits legitimately take several seconds
SLOW_REQUEST_MS = {
    "/api/security/host/check": 60000,
}
DEFAULT_SLOW_REQUEST_MS = 2000


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log all requests with unique trace IDs. Request bodies are never logged."""

    async def dispatch(self, request: Request, call_next):
        # Honour an upstream trace id when one is supplied
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        start_time = time.time()
        path = request.url.path

        logger.info(
            f"Request started: {request.method} {path}",
            extra={
                "request_id": request_id,
                "endpoint": path,
            }
        )

        try:
            response = await call_next(request)
            duration_ms = (time.time() - start_time) * 1000

            logger.info(
                f"Request completed: {request.method} {path} - {response.status_code}",
                extra={
                    "request_id": request_id,
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 2),
                    "endpoint": path,
                }
            )

            if duration_ms > SLOW_REQUEST_MS.get(path, DEFAULT_SLOW_REQUEST_MS):
                logger.warning(
                    f"Slow request detected: {duration_ms:.2f}ms for {path}",
                    extra={
                        "request_id": request_id,
                        "duration_ms": round(duration_ms, 2),
                        "endpoint": path,
                    }
                )

            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                f"Request failed: {request.method} {path} - {str(e)}",
                exc_info=True,
                extra={
                    "request_id": request_id,
                    "duration_ms": round(duration_ms, 2),
                    "endpoint": path,
                }
            )
            raise
