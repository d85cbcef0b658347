"""
HTTP middleware: request ids, timing and access logging.
"""

import logging
import time
from typing import Callable, Set

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from .logging_config import generate_request_id, set_request_id

logger = logging.getLogger("iqac.http")

SKIP_LOGGING_PATHS: Set[str] = {
    "/health",
    "/",
    "/favicon.ico",
    "/docs",
    "/redoc",
    "/openapi.json",
}

SLOW_REQUEST_MS = 1000


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tags every request with an id and logs method, path, status and duration"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or generate_request_id()
        set_request_id(request_id)
        path = request.url.path
        skip_logging = path in SKIP_LOGGING_PATHS
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            duration_ms = (time.perf_counter() - start_time) * 1000
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

            if not skip_logging:
                status_code = response.status_code
                if status_code >= 500:
                    log_func = logger.error
                elif status_code >= 400:
                    log_func = logger.warning
                else:
                    log_func = logger.info
                log_func(
                    f"{request.method} {path} - {status_code} ({duration_ms:.2f}ms)",
                    extra={"http_method": request.method, "http_path": path,
                           "http_status": status_code, "duration_ms": duration_ms},
                )
                if duration_ms > SLOW_REQUEST_MS:
                    logger.warning(f"Slow request: {request.method} {path} took {duration_ms:.2f}ms")
            return response

        except Exception as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.error(
                f"{request.method} {path} - {type(exc).__name__} ({duration_ms:.2f}ms)",
                exc_info=True,
            )
            raise

        finally:
            set_request_id("")
