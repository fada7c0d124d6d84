import pytest
from fastapi import FastAPI, Request, Response
from fastapi.testclient import TestClient

from sportsarb import rate_limiter
from sportsarb.errors import register_exception_handlers
from sportsarb.rate_limiter import (
    API_LIMIT,
    AUTH_LIMIT,
    ODDS_PROXY_LIMIT,
    STRICT_LIMIT,
    RateLimitConfig,
    SlidingWindowLimiter,
    client_identifier,
    rate_limit,
)


def make_request(headers=None, client=("10.0.0.1", 5000)):
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


def test_presets():
    assert (AUTH_LIMIT.max_requests, AUTH_LIMIT.window_seconds) == (5, 900)
    assert (API_LIMIT.max_requests, API_LIMIT.window_seconds) == (60, 60)
    assert (STRICT_LIMIT.max_requests, STRICT_LIMIT.window_seconds) == (10, 60)
    assert (ODDS_PROXY_LIMIT.max_requests, ODDS_PROXY_LIMIT.window_seconds) == (30, 60)
    assert ODDS_PROXY_LIMIT.limit == "30 per 60 seconds"
    assert AUTH_LIMIT.limit == "5 per 900 seconds"


class TestSlidingWindow:
    def test_rolling_window(self, clock):
        limiter = SlidingWindowLimiter(max_requests=2, window_seconds=60, clock=clock)

        limiter.record("api-key")
        clock.advance(30)
        limiter.record("api-key")

        assert not limiter.allow("api-key")
        assert limiter.retry_after("api-key") == 30

        clock.advance(31)
        assert limiter.allow("api-key")
        assert limiter.retry_after("api-key") == 0


class TestClientIdentifier:
    def test_header_precedence(self):
        assert client_identifier(make_request({
            "cf-connecting-ip": "1.1.1.1",
            "x-real-ip": "2.2.2.2",
            "x-forwarded-for": "3.3.3.3",
        })) == "1.1.1.1"
        assert client_identifier(make_request({"x-real-ip": "2.2.2.2"})) == "2.2.2.2"
        assert client_identifier(make_request({"x-forwarded-for": "3.3.3.3, 10.0.0.9"})) == "3.3.3.3"
        assert client_identifier(make_request()) == "10.0.0.1"
        assert client_identifier(make_request(client=None)) == "unknown"

    def test_bearer_token_appended(self):
        request = make_request({"authorization": "Bearer abc123"})
        assert client_identifier(request) == "10.0.0.1:abc123"


limited = FastAPI()
limited.state.limiter = rate_limiter.limiter
register_exception_handlers(limited)


@limited.get("/limited")
@rate_limit(RateLimitConfig(2, 60, name="tiny"))
async def limited_route(request: Request, response: Response):
    return {"ok": True}


@pytest.fixture
def limited_app():
    rate_limiter.limiter.reset()
    return TestClient(limited)


def test_limit_sets_headers_and_rejects(limited_app):
    first = limited_app.get("/limited")
    assert first.status_code == 200
    assert first.headers["X-RateLimit-Limit"] == "2"
    assert first.headers["X-RateLimit-Remaining"] == "1"

    limited_app.get("/limited")
    rejected = limited_app.get("/limited")

    assert rejected.status_code == 429
    assert rejected.headers["X-RateLimit-Remaining"] == "0"
    assert int(rejected.headers["Retry-After"]) > 0
    assert rejected.json() == {"error": "Rate limit exceeded for tiny"}


def test_clients_are_counted_separately(limited_app):
    for _ in range(2):
        limited_app.get("/limited", headers={"x-real-ip": "1.1.1.1"})

    assert limited_app.get("/limited", headers={"x-real-ip": "1.1.1.1"}).status_code == 429
    assert limited_app.get("/limited", headers={"x-real-ip": "2.2.2.2"}).status_code == 200
    assert limited_app.get("/limited", headers={
        "x-real-ip": "1.1.1.1",
        "authorization": "Bearer abc123",
    }).status_code == 200
