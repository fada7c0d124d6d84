"""Exception types and their HTTP mapping."""

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

logger = logging.getLogger(__name__)


class ArbitrageError(Exception):
    """Base class for platform errors."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class ValidationError(ArbitrageError):
    """Rejected user input."""

    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class InvalidOddsError(ValidationError):
    """Odds value that cannot be converted."""

    def __init__(self, message: str):
        super().__init__(message, field="odds")


class OddsAPIError(ArbitrageError):
    """Custom exception for Odds API errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        requests_remaining: Optional[int] = None,
        requests_used: Optional[int] = None,
    ):
        self.requests_remaining = requests_remaining
        self.requests_used = requests_used
        super().__init__(message, status_code)


class UpstreamHTTPError(ArbitrageError):
    """Non-2xx response from an upstream service."""

    def __init__(self, status_code: int, reason: str, url: str, body: str = "", headers=None):
        self.url = url
        self.body = body
        self.headers = dict(headers or {})
        super().__init__(f"HTTP {status_code}: {reason}", status_code)

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status_code < 500


class UpstreamTimeoutError(ArbitrageError):
    """Upstream request exceeded its timeout."""

    status_code = 504

    def __init__(self, timeout: float, url: str):
        self.timeout = timeout
        self.url = url
        super().__init__(f"Request timeout after {timeout:g}s")


class UpstreamRequestError(ArbitrageError):
    """Network failure talking to an upstream service."""

    status_code = 502


def _error_body(exc: ArbitrageError) -> dict:
    body = {"error": exc.message}
    if isinstance(exc, ValidationError) and exc.field:
        body["field"] = exc.field
    if isinstance(exc, OddsAPIError):
        body["isRateLimit"] = exc.status_code == 429
        body["remainingRequests"] = exc.requests_remaining
        body["requestsUsed"] = exc.requests_used
    return body


async def arbitrage_error_handler(request: Request, exc: ArbitrageError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected (%s): %s", request.method, request.url.path,
                    exc.status_code, exc.message)

    return JSONResponse(status_code=exc.status_code, content=_error_body(exc))


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning("%s %s rate limited: %s", request.method, request.url.path, exc.detail)
    response = JSONResponse(status_code=429, content={"error": exc.detail})
    return request.app.state.limiter._inject_headers(response, request.state.view_rate_limit)


def register_exception_handlers(app: FastAPI):
    """Attach JSON error responses for the platform's exceptions."""
    app.add_exception_handler(ArbitrageError, arbitrage_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
