"""FastAPI application entry point."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .arbitrage import (
    calculate_stakes,
    find_arbitrage_opportunities,
    find_arbitrage_opportunity,
    find_best_arbitrage_opportunity,
    find_game_opportunities,
    process_games,
)
from .cache import get_api_cache
from .config import (
    ARBITRAGE_CACHE_TTL_SECONDS,
    DEFAULT_REGIONS,
    MIN_PROFIT_MARGIN,
    ODDS_PROXY_SPORTS,
    SPORTSBOOKS,
    SUPPORTED_SPORTS,
)
from .database import get_database
from .errors import OddsAPIError, ValidationError, register_exception_handlers
from .logging_config import RequestLoggingMiddleware, setup_logging
from .models import (
    ArbitrageOpportunity,
    BatchRequest,
    BatchScanResult,
    BestOddsRequest,
    Bookmaker,
    CalculateStakesRequest,
    CalculateStakesResponse,
    GameRequest,
    GameScanResult,
    Market,
    ScanResult,
    TwoWayRequest,
)
from .monitoring import get_performance_monitor
from .odds_client import get_odds_client, parse_game_odds, parse_markets
from .rate_limiter import ODDS_PROXY_LIMIT, STRICT_LIMIT, limiter, rate_limit

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Sports Betting Arbitrage Scanner",
    description="Scan multiple sportsbooks for arbitrage opportunities",
    version="1.0.0",
)

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)
app.state.limiter = limiter
register_exception_handlers(app)


@app.on_event("startup")
async def startup_event():
    """Configure logging, initialize the database and start cache cleanup."""
    setup_logging()
    db = get_database()
    await db.initialize()
    get_odds_client().dedup.start_cleanup_task()
    logger.info("Arbitrage scanner started (database: %s)", db.db_path)


@app.on_event("shutdown")
async def shutdown_event():
    await get_odds_client().close()


def _build_scan_result(sport_key: str, sport_title: str, markets: list[Market], min_profit: float) -> ScanResult:
    client = get_odds_client()
    opportunities = find_arbitrage_opportunities(markets, min_profit)

    return ScanResult(
        sport_key=sport_key,
        sport_title=SUPPORTED_SPORTS.get(sport_key, sport_title),
        scan_time=datetime.utcnow(),
        events_scanned=len({m.event_id for m in markets}),
        opportunities_found=len(opportunities),
        opportunities=opportunities,
        api_requests_used=1,
        api_requests_remaining=client.requests_remaining,
    )


async def _record_scan(result: ScanResult) -> int:
    db = get_database()
    client = get_odds_client()

    scan_id = await db.save_scan_result(result)
    await db.log_api_usage(
        f"/sports/{result.sport_key}/odds",
        requests_used=1,
        requests_remaining=client.requests_remaining,
    )
    return scan_id


@app.get("/")
async def root():
    return {"message": "Sports Betting Arbitrage Scanner API", "docs": "/docs"}


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "timestamp": datetime.utcnow().isoformat()}


@app.get("/api/health")
async def detailed_health_check():
    """Database, cache and request timing status."""
    db_ok = await get_database().health_check()
    client = get_odds_client()

    body = {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.utcnow().isoformat(),
        "database": "ok" if db_ok else "unavailable",
        "api_key_configured": bool(client.api_key),
        "cache": get_api_cache().metrics(),
        "requests": client.cache_stats(),
        "metrics": get_performance_monitor().get_all_metrics(),
    }
    return JSONResponse(status_code=200 if db_ok else 503, content=body)


@app.get("/api/sports", response_model=list[dict])
async def get_sports(active_only: bool = True):
    """
    List available sports.

    Returns both API-available sports and locally configured sports.
    """
    client = get_odds_client()
    api_sports = await client.get_sports(use_cache=True)
    sports = []

    for sport in api_sports:
        if active_only and not sport.active:
            continue

        display_name = SUPPORTED_SPORTS.get(sport.key, sport.title)
        sports.append({
            "key": sport.key,
            "title": display_name,
            "group": sport.group,
            "active": sport.active,
            "has_outrights": sport.has_outrights,
        })

    return sorted(sports, key=lambda s: s["title"])


@app.get("/api/bookmakers", response_model=list[Bookmaker])
async def get_bookmakers():
    """List supported bookmakers."""
    return [
        Bookmaker(key=key, title=title)
        for key, title in SPORTSBOOKS.items()
    ]


@app.get("/api/odds")
@rate_limit(ODDS_PROXY_LIMIT)
async def get_odds(request: Request, response: Response, sport: str = "basketball_nba"):
    """
    Raw odds for one of the proxied sports.

    Rate limited per client; upstream errors come back with the quota headers.
    """
    if sport not in ODDS_PROXY_SPORTS:
        raise ValidationError(
            f"Invalid sport parameter. Allowed: {', '.join(ODDS_PROXY_SPORTS)}",
            "sport",
        )

    client = get_odds_client()
    games = await client.get_odds(sport)
    logger.info("Odds proxy returned %d games for %s", len(games), sport)

    return {
        "games": games,
        "sport": sport,
        "generated_at": datetime.utcnow().isoformat(),
        "apiUsage": {
            "remainingRequests": client.requests_remaining,
            "requestsUsed": client.requests_used,
        },
    }


@app.get("/api/scan/all", response_model=list[ScanResult])
async def scan_all_sports(
    min_profit: float = Query(default=MIN_PROFIT_MARGIN, ge=0, le=1),
):
    """
    Scan all supported sports for arbitrage opportunities.

    Warning: This uses one API request per active sport. Sports that fail
    are logged and left out of the results.
    """
    client = get_odds_client()
    sports = await client.get_sports(use_cache=True)
    titles = {
        sport.key: sport.title
        for sport in sports
        if sport.active and sport.key in SUPPORTED_SPORTS
    }

    fetched = await client.fetch_multiple_sports(list(titles), use_cache=False)
    results = []

    for sport_key, events in fetched.items():
        if isinstance(events, OddsAPIError):
            logger.warning("Skipping %s: %s", sport_key, events.message)
            continue

        result = _build_scan_result(sport_key, titles[sport_key], parse_markets(events, sport_key), min_profit)
        await _record_scan(result)
        results.append(result)

    return results


@app.get("/api/scan/{sport_key}", response_model=ScanResult)
async def scan_sport(
    sport_key: str,
    min_profit: float = Query(default=MIN_PROFIT_MARGIN, ge=0, le=1),
):
    """
    Scan a specific sport for arbitrage opportunities.

    Args:
        sport_key: The sport to scan (e.g., 'basketball_nba')
        min_profit: Minimum profit margin to report (default 0.1%)

    Returns:
        ScanResult with found opportunities
    """
    client = get_odds_client()
    markets = await client.get_markets(sport_key, use_cache=False)

    result = _build_scan_result(sport_key, sport_key, markets, min_profit)
    await _record_scan(result)
    return result


@app.get("/api/arbitrage/cached")
async def get_cached_arbitrage(
    sport: str = "americanfootball_nfl",
    region: str = DEFAULT_REGIONS,
    markets: str = "h2h",
):
    """Arbitrage opportunities for a sport, served from cache for five minutes."""
    cache_key = f"arbitrage:{sport}:{region}:{markets}"
    market_keys = [m for m in markets.split(",") if m]
    client = get_odds_client()

    async def fetch():
        events = await client.get_odds(sport, regions=region, markets=market_keys)
        opportunities = []
        for market_key in market_keys:
            batch = process_games(parse_game_odds(events, sport, market_key))
            opportunities.extend(batch.all_opportunities)
        opportunities.sort(key=lambda o: o.profit_margin, reverse=True)
        return [opp.model_dump() for opp in opportunities]

    data, cached = await get_api_cache().get_or_set(cache_key, fetch, ARBITRAGE_CACHE_TTL_SECONDS)

    body = {
        "success": True,
        "data": data,
        "cached": cached,
        "timestamp": datetime.utcnow().isoformat(),
    }
    if not cached:
        body["remaining"] = client.requests_remaining
        body["used"] = client.requests_used
    return body


@app.post("/api/arbitrage/two-way", response_model=ArbitrageOpportunity)
async def two_way_arbitrage(request: TwoWayRequest):
    """Check two bookmakers' two-way prices for an arbitrage."""
    return find_arbitrage_opportunity(
        request.odds1,
        request.odds2,
        request.team1,
        request.team2,
        request.game,
        total_stake=request.total_stake,
        bookmakers=(request.bookmaker1, request.bookmaker2),
    )


@app.post("/api/arbitrage/best", response_model=ArbitrageOpportunity)
async def best_odds_arbitrage(request: BestOddsRequest):
    """Take the best price for each side across every bookmaker given."""
    return find_best_arbitrage_opportunity(
        request.odds,
        request.team1,
        request.team2,
        request.game,
        total_stake=request.total_stake,
    )


@app.post("/api/arbitrage/game", response_model=GameScanResult)
async def game_arbitrage(request: GameRequest):
    return find_game_opportunities(request.game, request.total_stake)


@app.post("/api/arbitrage/batch", response_model=BatchScanResult)
async def batch_arbitrage(request: BatchRequest):
    """Search many games at once, scored and filtered."""
    return process_games(
        request.games,
        filters=request.filters,
        batch_size=request.batch_size,
        total_stake=request.total_stake,
    )


@app.post("/api/calculate", response_model=CalculateStakesResponse)
async def calculate_opportunity_stakes(request: CalculateStakesRequest):
    """
    Calculate optimal stakes for an arbitrage opportunity.

    Args:
        request: Contains total stake and outcomes with best odds

    Returns:
        Stake recommendations for each outcome
    """
    return calculate_stakes(request.outcomes, request.total_stake)


@app.get("/api/cache/stats")
async def cache_stats():
    return {
        "api": get_api_cache().metrics(),
        "requests": get_odds_client().cache_stats(),
    }


@app.delete("/api/cache")
@rate_limit(STRICT_LIMIT)
async def clear_cache(request: Request, response: Response, pattern: Optional[str] = None):
    """Drop cached upstream responses and arbitrage results matching ``pattern`` (all when omitted)."""
    removed = get_odds_client().dedup.invalidate_cache(pattern)
    removed += len(get_api_cache().memory.invalidate(pattern))
    return {"cleared": removed, "pattern": pattern}


@app.get("/api/usage")
async def get_api_usage():
    """Get API usage statistics."""
    client = get_odds_client()
    db = get_database()

    today = await db.get_api_usage_today()
    month = await db.get_api_usage_month()

    return {
        "today": today,
        "month": month,
        "current_remaining": client.requests_remaining,
    }


@app.get("/api/history")
async def get_scan_history(limit: int = Query(default=10, ge=1, le=100)):
    """Get recent scan history."""
    db = get_database()
    return await db.get_recent_scans(limit)


@app.get("/api/history/{scan_id}/opportunities")
async def get_scan_opportunities(scan_id: int):
    """Get opportunities for a specific scan."""
    db = get_database()
    return await db.get_opportunities_by_scan(scan_id)
