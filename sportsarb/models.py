"""Pydantic models for data validation."""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field

from .config import DEFAULT_TOTAL_STAKE


class Outcome(BaseModel):
    """Represents decimal odds for a single outcome (team/player)."""

    name: str = Field(..., description="Name of the team or player")
    price: float = Field(..., description="Decimal odds for this outcome")
    bookmaker: str = Field(..., description="Bookmaker offering these odds")
    point: Optional[float] = Field(default=None, description="Spread or total line")
    american: Optional[float] = Field(default=None, description="American odds as quoted upstream")

    @property
    def implied_probability(self) -> float:
        """Calculate implied probability from decimal odds."""
        return 1 / self.price if self.price > 0 else 0


class Market(BaseModel):
    """One bookmaker's market for an event."""

    event_id: str = Field(..., description="Unique identifier for the event")
    sport_key: str = Field(..., description="Sport key from The Odds API")
    sport_title: str = Field(..., description="Human-readable sport name")
    home_team: str = Field(..., description="Home team name")
    away_team: str = Field(..., description="Away team name")
    commence_time: datetime = Field(..., description="Event start time")
    market_key: str = Field(default="h2h", description="Market type (e.g., h2h, spreads)")
    outcomes: list[Outcome] = Field(default_factory=list, description="All available outcomes")


class TwoWayOdds(BaseModel):
    """American odds one bookmaker offers on both sides of a game."""

    team1: float = Field(..., description="American odds for the first team")
    team2: float = Field(..., description="American odds for the second team")


class Bet(BaseModel):
    """A single leg of an arbitrage position."""

    bookmaker: str
    team: str
    odds: float = Field(..., description="American odds")
    stake: float
    potential_payout: float


class ArbitrageOpportunity(BaseModel):
    """Result of checking a set of best prices for arbitrage."""

    game: str
    team1: Optional[str] = None
    team2: Optional[str] = None
    total_stake: float
    guaranteed_profit: float
    profit_margin: float = Field(..., description="Profit margin in percent")
    is_arbitrage: bool
    total_bookmakers: int
    bet_type: str = Field(default="moneyline")
    has_draw_risk: bool = False
    risk_warning: Optional[str] = None
    bets: list[Bet] = Field(default_factory=list)
    score: Optional[float] = None
    game_id: Optional[str] = None


class GameOdds(BaseModel):
    """American odds per bookmaker per outcome for one game."""

    id: Optional[str] = None
    game: str = "Unknown Game"
    sport_key: Optional[str] = None
    market_key: str = "h2h"
    outcomes: dict[str, dict[str, float]] = Field(
        default_factory=dict,
        description="bookmaker -> outcome name -> American odds",
    )


class OpportunityFilters(BaseModel):
    min_profit_margin: float = 0
    min_guaranteed_profit: float = 0
    max_stake_per_bet: Optional[float] = None
    allowed_bookmakers: Optional[list[str]] = None
    min_bookmakers: int = 2


class GameScanResult(BaseModel):
    game_id: Optional[str] = None
    game: str = "Unknown Game"
    opportunities: list[ArbitrageOpportunity] = Field(default_factory=list)
    calculation_time_ms: float = 0
    error: Optional[str] = None


class BatchScanResult(BaseModel):
    results: list[GameScanResult]
    all_opportunities: list[ArbitrageOpportunity]
    total_calculation_time_ms: float
    games_processed: int
    opportunities_found: int


class ScanResult(BaseModel):
    """Full scan response."""

    sport_key: str = Field(..., description="Sport that was scanned")
    sport_title: str = Field(..., description="Human-readable sport name")
    scan_time: datetime = Field(default_factory=datetime.utcnow)
    events_scanned: int = Field(..., description="Number of events scanned")
    opportunities_found: int = Field(..., description="Number of arbitrage opportunities found")
    opportunities: list[ArbitrageOpportunity] = Field(default_factory=list)
    api_requests_used: int = Field(default=1, description="API requests consumed by this scan")
    api_requests_remaining: Optional[int] = Field(
        default=None,
        description="Remaining API requests (from response header)"
    )


class StakeRecommendation(BaseModel):
    """Recommended stake for a single outcome."""

    outcome_name: str = Field(..., description="Name of the outcome")
    bookmaker: str = Field(..., description="Bookmaker to place bet with")
    odds: float = Field(..., description="Decimal odds")
    stake: float = Field(..., description="Recommended stake amount")
    potential_return: float = Field(..., description="Potential return if this outcome wins")


class CalculateStakesRequest(BaseModel):
    """Request to calculate optimal stakes for an opportunity."""

    total_stake: float = Field(..., description="Total amount to stake", gt=0)
    outcomes: list[Outcome] = Field(..., description="Outcomes with best odds")


class CalculateStakesResponse(BaseModel):
    """Response with calculated stakes."""

    total_stake: float = Field(..., description="Total stake amount")
    guaranteed_profit: float = Field(..., description="Guaranteed profit regardless of outcome")
    profit_percentage: float = Field(..., description="Profit as percentage of stake")
    stakes: list[StakeRecommendation] = Field(..., description="Stake for each outcome")


class TwoWayRequest(BaseModel):
    team1: str = Field(..., min_length=1)
    team2: str = Field(..., min_length=1)
    game: str = Field(..., min_length=1)
    bookmaker1: str = "DraftKings"
    bookmaker2: str = "BetMGM"
    odds1: TwoWayOdds
    odds2: TwoWayOdds
    total_stake: float = Field(default=DEFAULT_TOTAL_STAKE, gt=0)


class BestOddsRequest(BaseModel):
    team1: str = Field(..., min_length=1)
    team2: str = Field(..., min_length=1)
    game: str = Field(..., min_length=1)
    odds: dict[str, TwoWayOdds] = Field(..., description="bookmaker -> odds")
    total_stake: float = Field(default=DEFAULT_TOTAL_STAKE, gt=0)


class GameRequest(BaseModel):
    game: GameOdds
    total_stake: float = Field(default=DEFAULT_TOTAL_STAKE, gt=0)


class BatchRequest(BaseModel):
    games: list[GameOdds]
    filters: Optional[OpportunityFilters] = None
    batch_size: int = Field(default=10, ge=1, le=100)
    total_stake: float = Field(default=DEFAULT_TOTAL_STAKE, gt=0)


class Sport(BaseModel):
    """Sport available from The Odds API."""

    key: str = Field(..., description="Sport key for API calls")
    group: str = Field(..., description="Sport group/category")
    title: str = Field(..., description="Human-readable title")
    description: str = Field(default="", description="Sport description")
    active: bool = Field(default=True, description="Whether sport is currently active")
    has_outrights: bool = Field(default=False, description="Whether sport has outright markets")


class Bookmaker(BaseModel):
    """Bookmaker information."""

    key: str = Field(..., description="Bookmaker key for API calls")
    title: str = Field(..., description="Human-readable name")
    region: str = Field(default="us", description="Region (us, uk, eu, au)")
