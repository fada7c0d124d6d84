import httpx
import pytest

from sportsarb import cache, database, monitoring, odds_client, rate_limiter
from sportsarb.cache import ApiCache
from sportsarb.database import Database
from sportsarb.dedup import RequestDeduplicationManager
from sportsarb.odds_client import OddsClient
from sportsarb.rate_limiter import SlidingWindowLimiter

BASE_URL = "https://odds.test/v4"


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


def make_event(event_id="evt1", home="Lakers", away="Warriors", sport_key="basketball_nba", books=None):
    """Build an Odds API event; ``books`` maps bookmaker title -> {outcome: american price}."""
    books = books or {
        "DraftKings": {"Lakers": -110, "Warriors": 120},
        "BetMGM": {"Lakers": 115, "Warriors": -105},
    }
    return {
        "id": event_id,
        "sport_key": sport_key,
        "sport_title": "NBA",
        "commence_time": "2026-01-10T00:00:00Z",
        "home_team": home,
        "away_team": away,
        "bookmakers": [
            {
                "key": title.lower(),
                "title": title,
                "markets": [
                    {
                        "key": "h2h",
                        "outcomes": [{"name": name, "price": price} for name, price in prices.items()],
                    }
                ],
            }
            for title, prices in books.items()
        ],
    }


SPORTS_PAYLOAD = [
    {
        "key": "basketball_nba",
        "group": "Basketball",
        "title": "NBA",
        "description": "US Basketball",
        "active": True,
        "has_outrights": False,
    },
    {
        "key": "golf_masters_tournament_winner",
        "group": "Golf",
        "title": "Masters Tournament Winner",
        "description": "2026 WINNER",
        "active": True,
        "has_outrights": True,
    },
    {
        "key": "icehockey_nhl",
        "group": "Ice Hockey",
        "title": "NHL",
        "description": "US Ice Hockey",
        "active": False,
        "has_outrights": False,
    },
]


class OddsAPIStub:
    """httpx.MockTransport handler serving canned Odds API responses."""

    def __init__(self, events=None, sports=None, remaining=490, used=10):
        self.events = [make_event()] if events is None else events
        self.sports = SPORTS_PAYLOAD if sports is None else sports
        self.remaining = remaining
        self.used = used
        self.requests: list[httpx.Request] = []
        self.responses: dict[str, httpx.Response] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        headers = {
            "x-requests-remaining": str(self.remaining),
            "x-requests-used": str(self.used),
        }
        path = request.url.path

        if path in self.responses:
            return self.responses[path]
        if path.endswith("/sports"):
            return httpx.Response(200, json=self.sports, headers=headers)
        if path.endswith("/odds"):
            return httpx.Response(200, json=self.events, headers=headers)
        return httpx.Response(404, text="Unknown sport", headers=headers)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_sleep():
    return RecordingSleep()


@pytest.fixture
def db(tmp_path):
    return Database(str(tmp_path / "arbitrage.db"))


@pytest.fixture
def odds_api():
    return OddsAPIStub()


@pytest.fixture
def make_client(fake_sleep):
    def _make(handler, api_key="test-key", upstream_limiter=None):
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        dedup = RequestDeduplicationManager(client=http, sleep=fake_sleep)
        return OddsClient(
            api_key=api_key,
            base_url=BASE_URL,
            dedup=dedup,
            upstream_limiter=upstream_limiter or SlidingWindowLimiter(max_requests=1000),
        )

    return _make


@pytest.fixture
def app_state(monkeypatch, db, odds_api, make_client):
    """Point every singleton the app uses at test doubles."""
    client = make_client(odds_api)
    api_cache = ApiCache(store=db)

    monkeypatch.setattr(database, "_db", db)
    monkeypatch.setattr(odds_client, "_client", client)
    monkeypatch.setattr(cache, "_api_cache", api_cache)
    rate_limiter.limiter.reset()
    monkeypatch.setattr(monitoring, "_monitor", monitoring.PerformanceMonitor())

    return {"db": db, "client": client, "api_cache": api_cache, "upstream": odds_api}


@pytest.fixture
def api(app_state):
    from fastapi.testclient import TestClient

    from sportsarb.main import app

    return TestClient(app)
