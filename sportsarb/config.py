"""Configuration module for the arbitrage platform."""

import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# API Configuration
ODDS_API_KEY = os.getenv("ODDS_API_KEY", "")
ODDS_API_BASE_URL = os.getenv("ODDS_API_BASE_URL", "https://api.the-odds-api.com/v4")
ODDS_API_USER_AGENT = "SportsArb/1.0"
DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG" if DEBUG else "INFO").upper()
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Upstream request defaults
DEFAULT_REGIONS = "us"
DEFAULT_MARKETS = ["h2h", "spreads", "totals"]
DEFAULT_ODDS_FORMAT = "american"
DEFAULT_DATE_FORMAT = "iso"

# Cache TTLs (seconds)
CACHE_TTL_SECONDS = 300  # 5 minutes default
ODDS_CACHE_TTL_SECONDS = 120  # odds go stale quickly
SPORTS_CACHE_TTL_SECONDS = 30 * 60
ARBITRAGE_CACHE_TTL_SECONDS = 300

# Request deduplication
DEDUP_MAX_CACHE_SIZE = 1000
DEDUP_CLEANUP_INTERVAL_SECONDS = 5 * 60
DEDUP_MEMORY_PRESSURE_RATIO = 0.8
DEDUP_MAX_RETRIES = 3
DEDUP_RETRY_DELAY_SECONDS = 1.0
DEDUP_TIMEOUT_SECONDS = 30.0
ODDS_MAX_RETRIES = 2
ODDS_RETRY_DELAY_SECONDS = 2.0
ODDS_TIMEOUT_SECONDS = 15.0
BATCH_CONCURRENCY = 5
BATCH_PAUSE_SECONDS = 0.1
WARM_CACHE_CONCURRENCY = 3

# Upstream protection: requests per minute per API key
UPSTREAM_MAX_REQUESTS_PER_MINUTE = 10
MULTI_SPORT_DELAY_SECONDS = 6.0

# Caller rate limits: (max requests, window seconds)
RATE_LIMIT_AUTH = (5, 15 * 60)
RATE_LIMIT_API = (60, 60)
RATE_LIMIT_STRICT = (10, 60)
RATE_LIMIT_ODDS_PROXY = (30, 60)
RATE_LIMIT_DEFAULT = (100, 15 * 60)

# Sportsbooks shown in the dashboard
SPORTSBOOKS = {
    "draftkings": "DraftKings",
    "betmgm": "BetMGM",
    "fanduel": "FanDuel",
    "caesars": "Caesars",
    "pointsbetus": "PointsBet",
    "betrivers": "BetRivers",
    "fourwinds": "Four Winds Casino",
    "espnbet": "ESPN BET",
    "fanatics": "Fanatics Sportsbook",
    "eagle": "Eagle Casino",
    "firekeepers": "FireKeepers",
    "betparx": "BetPARX",
    "goldennugget": "Golden Nugget",
}

# Bookmaker keys accepted in user-submitted bet forms
VALID_BOOKMAKER_KEYS = [
    "draftkings", "betmgm", "fanduel", "caesars",
    "pointsbet", "betrivers", "williamhill_us",
    "barstool", "betway", "unibet",
]

# Supported sports (The Odds API sport keys)
SUPPORTED_SPORTS = {
    # American Football
    "americanfootball_nfl": "NFL",
    "americanfootball_ncaaf": "NCAAF",
    # Basketball
    "basketball_nba": "NBA",
    "basketball_ncaab": "NCAAB",
    "basketball_wnba": "WNBA",
    # Baseball
    "baseball_mlb": "MLB",
    # Hockey
    "icehockey_nhl": "NHL",
    # Soccer
    "soccer_epl": "Premier League",
    "soccer_spain_la_liga": "La Liga",
    "soccer_germany_bundesliga": "Bundesliga",
    "soccer_italy_serie_a": "Serie A",
    "soccer_france_ligue_one": "Ligue 1",
    "soccer_uefa_champs_league": "Champions League",
    "soccer_usa_mls": "MLS",
    # Tennis
    "tennis_atp": "ATP Tennis",
    "tennis_wta": "WTA Tennis",
    # Combat sports
    "mma_mixed_martial_arts": "MMA/UFC",
    "boxing_boxing": "Boxing",
}

# Sports the public odds proxy will forward
ODDS_PROXY_SPORTS = [
    "basketball_nba", "americanfootball_nfl", "baseball_mlb",
    "icehockey_nhl", "soccer_epl", "tennis_atp",
]

# Sport key prefixes whose moneyline markets can end in a draw
DRAW_SPORT_PREFIXES = ("soccer_",)
DRAW_RISK_WARNING = "DRAW RISK: This sport can end in ties/draws"

# Arbitrage defaults
DEFAULT_TOTAL_STAKE = 1000.0
MIN_PROFIT_MARGIN = 0.001  # 0.1%, as decimal
BATCH_SIZE = 10

# Database configuration
DATABASE_PATH = os.getenv("DATABASE_PATH", "arbitrage.db")
