"""Async client for The Odds API."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from .config import (
    DEFAULT_DATE_FORMAT,
    DEFAULT_MARKETS,
    DEFAULT_ODDS_FORMAT,
    DEFAULT_REGIONS,
    MULTI_SPORT_DELAY_SECONDS,
    ODDS_API_BASE_URL,
    ODDS_API_KEY,
    ODDS_CACHE_TTL_SECONDS,
    ODDS_MAX_RETRIES,
    ODDS_RETRY_DELAY_SECONDS,
    ODDS_TIMEOUT_SECONDS,
    SPORTS_CACHE_TTL_SECONDS,
)
from .dedup import RequestDeduplicationManager
from .errors import (
    ArbitrageError,
    OddsAPIError,
    UpstreamHTTPError,
    UpstreamRequestError,
    UpstreamTimeoutError,
)
from .models import GameOdds, Market, Outcome, Sport
from .odds_format import american_to_decimal
from .rate_limiter import SlidingWindowLimiter

logger = logging.getLogger(__name__)


def _header_int(headers: httpx.Headers, name: str) -> Optional[int]:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return int(float(value))
    except ValueError:
        return None


class OddsClient:
    """Async client for The Odds API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = ODDS_API_BASE_URL,
        dedup: Optional[RequestDeduplicationManager] = None,
        upstream_limiter: Optional[SlidingWindowLimiter] = None,
    ):
        self.api_key = ODDS_API_KEY if api_key is None else api_key
        self.base_url = base_url.rstrip("/")
        self.dedup = dedup if dedup is not None else RequestDeduplicationManager()
        self.upstream_limiter = (
            upstream_limiter if upstream_limiter is not None else SlidingWindowLimiter()
        )
        self._requests_remaining: Optional[int] = None
        self._requests_used: Optional[int] = None

    @property
    def requests_remaining(self) -> Optional[int]:
        """Return remaining API requests."""
        return self._requests_remaining

    @property
    def requests_used(self) -> Optional[int]:
        """Return API requests used."""
        return self._requests_used

    def _update_rate_limits(self, response: httpx.Response):
        """Update quota tracking from response headers."""
        remaining = _header_int(response.headers, "x-requests-remaining")
        used = _header_int(response.headers, "x-requests-used")

        if remaining is not None:
            self._requests_remaining = remaining
        if used is not None:
            self._requests_used = used

    def _translate_error(self, error: ArbitrageError, endpoint: str) -> OddsAPIError:
        if isinstance(error, OddsAPIError):
            return error

        quota = {
            "requests_remaining": self._requests_remaining,
            "requests_used": self._requests_used,
        }

        if isinstance(error, UpstreamTimeoutError):
            return OddsAPIError("Request timed out", 504, **quota)
        if isinstance(error, UpstreamRequestError):
            return OddsAPIError(error.message, 502, **quota)
        if not isinstance(error, UpstreamHTTPError):
            return OddsAPIError(error.message, error.status_code, **quota)

        status = error.status_code
        if status == 401:
            message = "Invalid API key or plan without odds access"
        elif status == 403:
            message = "Access forbidden - check The Odds API key permissions"
        elif status == 404:
            message = f"Not found: {endpoint}"
        elif status == 422:
            message = "Invalid parameters for The Odds API"
        elif status == 429:
            body = error.body.lower()
            if self._requests_remaining == 0 or "quota" in body or "limit" in body:
                message = (
                    f"Out of API requests (used: {self._requests_used}, "
                    f"remaining: {self._requests_remaining or 0})"
                )
            else:
                message = "Rate limit exceeded - too many requests per second"
        else:
            message = f"API request failed: {error.body or error.message}"

        return OddsAPIError(message, status, **quota)

    async def _request(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        cache_key: Optional[str] = None,
        ttl: Optional[float] = None,
        use_cache: bool = True,
    ):
        """Make an authenticated, deduplicated request to the API."""
        if not self.api_key:
            raise OddsAPIError("API key not configured. Set ODDS_API_KEY in .env file.", 500)

        # Cached responses don't cost quota, so only gate real calls
        if not use_cache or cache_key is None or cache_key not in self.dedup.cache:
            if not self.upstream_limiter.allow(self.api_key):
                wait = self.upstream_limiter.retry_after(self.api_key)
                raise OddsAPIError(
                    f"Rate limit exceeded. Please wait {wait}s before making another request.",
                    429,
                    requests_remaining=self._requests_remaining,
                    requests_used=self._requests_used,
                )
            self.upstream_limiter.record(self.api_key)

        request_params = dict(params or {})
        request_params["apiKey"] = self.api_key

        try:
            return await self.dedup.fetch(
                f"{self.base_url}{endpoint}",
                params=request_params,
                cache_key=cache_key,
                ttl=ttl,
                max_retries=ODDS_MAX_RETRIES,
                retry_delay=ODDS_RETRY_DELAY_SECONDS,
                timeout=ODDS_TIMEOUT_SECONDS,
                on_response=self._update_rate_limits,
                force_refresh=not use_cache,
            )
        except ArbitrageError as e:
            error = self._translate_error(e, endpoint)
            logger.error("Odds API %s failed (%s): %s", endpoint, error.status_code, error.message)
            raise error

    async def get_sports(self, use_cache: bool = True) -> list[Sport]:
        """Fetch available sports from the API."""
        data = await self._request(
            "/sports",
            cache_key="sports:all",
            ttl=SPORTS_CACHE_TTL_SECONDS,
            use_cache=use_cache,
        )
        return [Sport(**s) for s in data]

    async def get_odds(
        self,
        sport_key: str,
        regions: str = DEFAULT_REGIONS,
        markets: Optional[list[str]] = None,
        bookmakers: Optional[list[str]] = None,
        use_cache: bool = True,
    ) -> list[dict]:
        """
        Fetch raw odds events for a sport, American odds format.

        Args:
            sport_key: The sport key (e.g., 'basketball_nba')
            regions: Comma-separated regions (us, uk, eu, au)
            markets: List of market types (default: h2h, spreads, totals)
            bookmakers: Specific bookmakers to fetch (optional)
            use_cache: Whether a fresh cached response may be returned

        Returns:
            The API's list of events with their bookmakers and markets
        """
        markets_str = ",".join(markets or DEFAULT_MARKETS)
        bookmakers_str = ",".join(bookmakers) if bookmakers else ""

        params = {
            "regions": regions,
            "markets": markets_str,
            "oddsFormat": DEFAULT_ODDS_FORMAT,
            "dateFormat": DEFAULT_DATE_FORMAT,
        }
        if bookmakers_str:
            params["bookmakers"] = bookmakers_str

        data = await self._request(
            f"/sports/{sport_key}/odds",
            params,
            cache_key=f"odds:{sport_key}:{regions}:{markets_str}:{bookmakers_str}",
            ttl=ODDS_CACHE_TTL_SECONDS,
            use_cache=use_cache,
        )
        return data if isinstance(data, list) else []

    async def get_markets(self, sport_key: str, **kwargs) -> list[Market]:
        events = await self.get_odds(sport_key, **kwargs)
        return parse_markets(events, sport_key)

    async def get_game_odds(self, sport_key: str, market_key: str = "h2h", **kwargs) -> list[GameOdds]:
        events = await self.get_odds(sport_key, **kwargs)
        return parse_game_odds(events, sport_key, market_key)

    async def fetch_multiple_sports(
        self,
        sport_keys: list[str],
        delay: float = MULTI_SPORT_DELAY_SECONDS,
        **kwargs,
    ) -> dict[str, list[dict] | OddsAPIError]:
        """Fetch sports one at a time, spaced by ``delay``; failures are returned, not raised."""
        results: dict[str, list[dict] | OddsAPIError] = {}

        for index, sport_key in enumerate(sport_keys):
            try:
                results[sport_key] = await self.get_odds(sport_key, **kwargs)
            except OddsAPIError as e:
                results[sport_key] = e

            if delay and index < len(sport_keys) - 1:
                await asyncio.sleep(delay)

        return results

    def invalidate_odds_cache(self, sport_key: Optional[str] = None) -> int:
        return self.dedup.invalidate_cache(f"odds:{sport_key}:" if sport_key else "odds:")

    def cache_stats(self) -> dict:
        return self.dedup.get_cache_stats()

    async def close(self):
        await self.dedup.close()


def _parse_commence_time(value) -> datetime:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return datetime.now(timezone.utc)


def parse_markets(events: list[dict], sport_key: str) -> list[Market]:
    """Parse API events (American odds) into one Market per bookmaker and market type."""
    markets = []

    for event in events:
        event_id = event.get("id", "")
        sport_title = event.get("sport_title", "")
        home_team = event.get("home_team", "")
        away_team = event.get("away_team", "")
        commence_time = _parse_commence_time(event.get("commence_time", ""))

        for bookmaker in event.get("bookmakers", []):
            bookmaker_title = bookmaker.get("title", bookmaker.get("key", ""))

            for market_data in bookmaker.get("markets", []):
                outcomes = []
                for outcome_data in market_data.get("outcomes", []):
                    price = outcome_data.get("price")
                    if not price:
                        continue
                    outcomes.append(Outcome(
                        name=outcome_data.get("name", ""),
                        price=american_to_decimal(price),
                        american=price,
                        bookmaker=bookmaker_title,
                        point=outcome_data.get("point"),
                    ))

                markets.append(Market(
                    event_id=event_id,
                    sport_key=sport_key,
                    sport_title=sport_title,
                    home_team=home_team,
                    away_team=away_team,
                    commence_time=commence_time,
                    market_key=market_data.get("key", "h2h"),
                    outcomes=outcomes,
                ))

    return markets


def _line_label(outcomes: list[dict]) -> Optional[str]:
    """Signed point of the alphabetically first outcome; identifies one spread or total line."""
    pointed = [o for o in outcomes if o.get("point") is not None]
    if not pointed:
        return None
    first = min(pointed, key=lambda o: o.get("name", ""))
    return f"{first['point']:+g}"


def parse_game_odds(events: list[dict], sport_key: str, market_key: str = "h2h") -> list[GameOdds]:
    """
    GameOdds holding every bookmaker's American prices for ``market_key``.

    Spreads and totals give one GameOdds per line, so an outcome is only ever
    paired with the prices that complete it.
    """
    games = []

    for event in events:
        lines: dict[Optional[str], dict[str, dict[str, float]]] = {}

        for bookmaker in event.get("bookmakers", []):
            bookmaker_title = bookmaker.get("title", bookmaker.get("key", ""))
            for market_data in bookmaker.get("markets", []):
                if market_data.get("key") != market_key:
                    continue
                priced = [o for o in market_data.get("outcomes", []) if o.get("price")]
                prices = {}
                for outcome_data in priced:
                    name = outcome_data.get("name", "")
                    if outcome_data.get("point") is not None:
                        name = f"{name} {outcome_data['point']:+g}"
                    prices[name] = outcome_data["price"]
                if prices:
                    lines.setdefault(_line_label(priced), {})[bookmaker_title] = prices

        event_id = event.get("id")
        for line, outcomes in lines.items():
            games.append(GameOdds(
                id=event_id if line is None or event_id is None else f"{event_id}:{line}",
                game=f"{event.get('away_team', '')} @ {event.get('home_team', '')}",
                sport_key=sport_key,
                market_key=market_key,
                outcomes=outcomes,
            ))

    return games


# Singleton instance
_client: Optional[OddsClient] = None


def get_odds_client() -> OddsClient:
    """Get or create the singleton OddsClient instance."""
    global _client
    if _client is None:
        _client = OddsClient()
    return _client
