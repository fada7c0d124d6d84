"""Rate limiting for callers of the API and for our own upstream calls."""

import math
import time
from typing import Callable, NamedTuple

from fastapi import Request
from slowapi import Limiter

from .config import (
    RATE_LIMIT_API,
    RATE_LIMIT_AUTH,
    RATE_LIMIT_DEFAULT,
    RATE_LIMIT_ODDS_PROXY,
    RATE_LIMIT_STRICT,
    UPSTREAM_MAX_REQUESTS_PER_MINUTE,
)


class RateLimitConfig(NamedTuple):
    max_requests: int
    window_seconds: float
    name: str = "default"

    @property
    def limit(self) -> str:
        """Limit string in the ``limits`` notation, e.g. ``30 per 60 seconds``."""
        return f"{self.max_requests} per {int(self.window_seconds)} seconds"


DEFAULT_LIMIT = RateLimitConfig(*RATE_LIMIT_DEFAULT)
AUTH_LIMIT = RateLimitConfig(*RATE_LIMIT_AUTH, name="auth")
API_LIMIT = RateLimitConfig(*RATE_LIMIT_API, name="api")
STRICT_LIMIT = RateLimitConfig(*RATE_LIMIT_STRICT, name="strict")
ODDS_PROXY_LIMIT = RateLimitConfig(*RATE_LIMIT_ODDS_PROXY, name="odds_api")


def client_identifier(request: Request) -> str:
    """Client IP as seen through common proxies, plus the bearer token when present."""
    headers = request.headers
    forwarded = headers.get("x-forwarded-for", "")
    ip = (
        headers.get("cf-connecting-ip")
        or headers.get("x-real-ip")
        or (forwarded.split(",")[0].strip() if forwarded else None)
        or (request.client.host if request.client else None)
        or "unknown"
    )

    authorization = headers.get("authorization", "")
    token = authorization[len("Bearer "):] if authorization.startswith("Bearer ") else None
    return f"{ip}:{token}" if token else ip


# Counters are kept per client and per route
limiter = Limiter(key_func=client_identifier, headers_enabled=True)


def rate_limit(config: RateLimitConfig = API_LIMIT):
    """
    Route decorator enforcing ``config`` per client.

    The decorated endpoint must accept ``request: Request`` and
    ``response: Response``. Over the limit, slowapi raises RateLimitExceeded,
    which the app turns into a 429 with Retry-After.
    """
    return limiter.limit(config.limit, error_message=f"Rate limit exceeded for {config.name}")


class SlidingWindowLimiter:
    """At most ``max_requests`` per ``window_seconds`` per key, over a rolling window."""

    def __init__(
        self,
        max_requests: int = UPSTREAM_MAX_REQUESTS_PER_MINUTE,
        window_seconds: float = 60,
        clock: Callable[[], float] = time.time,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._requests: dict[str, list[float]] = {}

    def _recent(self, key: str) -> list[float]:
        cutoff = self._clock() - self.window_seconds
        recent = [t for t in self._requests.get(key, []) if t > cutoff]
        self._requests[key] = recent
        return recent

    def allow(self, key: str) -> bool:
        return len(self._recent(key)) < self.max_requests

    def record(self, key: str):
        self._recent(key).append(self._clock())

    def retry_after(self, key: str) -> int:
        recent = self._recent(key)
        if len(recent) < self.max_requests:
            return 0
        return max(1, math.ceil(recent[0] + self.window_seconds - self._clock()))
