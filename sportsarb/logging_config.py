"""Logging setup and per-request access logging."""

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from .config import LOG_FORMAT, LOG_LEVEL
from .monitoring import get_performance_monitor

logger = logging.getLogger("sportsarb.access")

REQUEST_ID_HEADER = "X-Request-ID"


def setup_logging(level: str = LOG_LEVEL):
    """Configure the root logger once; later calls only adjust the level."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)
    root.setLevel(level)
    # httpx logs every request at INFO, which would log the API key in query strings
    logging.getLogger("httpx").setLevel(logging.WARNING)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log method, path, status and duration; tag each response with a request id."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - started) * 1000
            logger.exception("%s %s failed after %.1fms [%s]",
                             request.method, request.url.path, duration_ms, request_id)
            raise

        duration_ms = (time.perf_counter() - started) * 1000
        get_performance_monitor().record_metric(f"api:{request.url.path}", duration_ms)

        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(level, "%s %s %d %.1fms [%s]",
                   request.method, request.url.path, response.status_code, duration_ms, request_id)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
