"""Core arbitrage calculation logic."""

import logging
import math
import time
from collections import defaultdict
from itertools import combinations
from typing import Iterable, NamedTuple, Optional

from .config import (
    BATCH_SIZE,
    DEFAULT_TOTAL_STAKE,
    DRAW_RISK_WARNING,
    DRAW_SPORT_PREFIXES,
    MIN_PROFIT_MARGIN,
)
from .errors import ArbitrageError, ValidationError
from .models import (
    ArbitrageOpportunity,
    BatchScanResult,
    Bet,
    CalculateStakesResponse,
    GameOdds,
    GameScanResult,
    Market,
    OpportunityFilters,
    Outcome,
    StakeRecommendation,
    TwoWayOdds,
)
from .odds_format import (
    american_to_decimal,
    decimal_to_american,
    decimal_to_implied_probability,
    format_american_odds,
    validate_odds,
)

logger = logging.getLogger(__name__)

BET_TYPES = {
    "h2h": "moneyline",
    "spreads": "spread",
    "totals": "total",
    "outrights": "outright",
}


class Leg(NamedTuple):
    bookmaker: str
    team: str
    odds: float  # American, as displayed
    decimal: float


def _leg(bookmaker: str, team: str, american_odds: float) -> Leg:
    return Leg(bookmaker, team, american_odds, american_to_decimal(american_odds))


def calculate_implied_probability(odds: float) -> float:
    """Calculate implied probability from decimal odds."""
    return decimal_to_implied_probability(odds)


def bet_type_for_market(market_key: str) -> str:
    return BET_TYPES.get(market_key, market_key)


def detect_draw_risk(outcome_names: Iterable[str], sport_key: Optional[str] = None) -> bool:
    """True when the market can settle on a result none of the legs cover."""
    if any(name.strip().lower() == "draw" for name in outcome_names):
        return True
    return bool(sport_key and sport_key.startswith(DRAW_SPORT_PREFIXES))


def calculate_optimal_stakes(odds1: float, odds2: float, total_stake: float) -> tuple[float, float]:
    """
    Split a stake across two American prices so both sides pay the same.

    stake1 * decimal1 == stake2 * decimal2, stake1 + stake2 == total_stake
    """
    decimal1 = american_to_decimal(odds1)
    decimal2 = american_to_decimal(odds2)

    stake1 = total_stake / (1 + (decimal1 / decimal2))
    stake2 = total_stake - stake1
    return stake1, stake2


def evaluate_legs(
    game: str,
    legs: list[Leg],
    total_stake: float,
    total_bookmakers: int,
    bet_type: str = "moneyline",
    has_draw_risk: bool = False,
    risk_warning: Optional[str] = None,
) -> ArbitrageOpportunity:
    """
    Price a set of best-odds legs as one arbitrage position.

    Stakes are proportional to implied probability, so every leg returns the
    same payout. The position is an arbitrage when the implied probabilities
    sum to less than 1; the profit margin is (1 - sum) as a percentage.
    """
    implied = [1 / leg.decimal for leg in legs]
    total_implied = sum(implied)
    is_arbitrage = total_implied < 1

    bets = []
    for leg, probability in zip(legs, implied):
        stake = total_stake * probability / total_implied
        bets.append(Bet(
            bookmaker=leg.bookmaker,
            team=leg.team,
            odds=leg.odds,
            stake=stake,
            potential_payout=stake * leg.decimal,
        ))

    guaranteed_profit = min(b.potential_payout for b in bets) - total_stake

    if has_draw_risk and risk_warning is None:
        risk_warning = DRAW_RISK_WARNING

    return ArbitrageOpportunity(
        game=game,
        team1=legs[0].team if legs else None,
        team2=legs[1].team if len(legs) > 1 else None,
        total_stake=total_stake,
        guaranteed_profit=guaranteed_profit if is_arbitrage else 0,
        profit_margin=(1 - total_implied) * 100 if is_arbitrage else 0,
        is_arbitrage=is_arbitrage,
        total_bookmakers=total_bookmakers,
        bet_type=bet_type,
        has_draw_risk=has_draw_risk,
        risk_warning=risk_warning,
        bets=bets,
    )


def _validate_teams(*names: str):
    for name in names:
        if not name or not name.strip():
            raise ValidationError("Team and game names are required", "team")


def _validate_stake(total_stake: float):
    if not math.isfinite(total_stake) or total_stake <= 0:
        raise ValidationError(f"Total stake must be positive, got {total_stake}", "total_stake")


def find_arbitrage_opportunity(
    first_book: TwoWayOdds,
    second_book: TwoWayOdds,
    team1: str,
    team2: str,
    game: str,
    total_stake: float = DEFAULT_TOTAL_STAKE,
    bookmakers: tuple[str, str] = ("DraftKings", "BetMGM"),
    sport_key: Optional[str] = None,
) -> ArbitrageOpportunity:
    """
    Compare two bookmakers' two-way prices and take the best side from each.

    Equal prices keep the first bookmaker.
    """
    _validate_teams(team1, team2, game)
    _validate_stake(total_stake)
    for book in (first_book, second_book):
        validate_odds(book.team1, "team1")
        validate_odds(book.team2, "team2")

    first_name, second_name = bookmakers

    if american_to_decimal(second_book.team1) > american_to_decimal(first_book.team1):
        best1 = _leg(second_name, team1, second_book.team1)
    else:
        best1 = _leg(first_name, team1, first_book.team1)

    if american_to_decimal(second_book.team2) > american_to_decimal(first_book.team2):
        best2 = _leg(second_name, team2, second_book.team2)
    else:
        best2 = _leg(first_name, team2, first_book.team2)

    return evaluate_legs(
        game,
        [best1, best2],
        total_stake,
        total_bookmakers=2,
        has_draw_risk=detect_draw_risk([team1, team2], sport_key),
    )


def find_best_arbitrage_opportunity(
    all_bookmaker_odds: dict[str, TwoWayOdds],
    team1: str,
    team2: str,
    game: str,
    total_stake: float = DEFAULT_TOTAL_STAKE,
    sport_key: Optional[str] = None,
) -> ArbitrageOpportunity:
    """Best price per side across any number of bookmakers."""
    if len(all_bookmaker_odds) < 2:
        raise ValidationError("Need at least 2 bookmakers to find arbitrage opportunities", "odds")
    _validate_teams(team1, team2, game)
    _validate_stake(total_stake)

    best1: Optional[Leg] = None
    best2: Optional[Leg] = None

    for bookmaker, odds in all_bookmaker_odds.items():
        validate_odds(odds.team1, "team1")
        validate_odds(odds.team2, "team2")

        candidate1 = _leg(bookmaker, team1, odds.team1)
        if best1 is None or candidate1.decimal > best1.decimal:
            best1 = candidate1

        candidate2 = _leg(bookmaker, team2, odds.team2)
        if best2 is None or candidate2.decimal > best2.decimal:
            best2 = candidate2

    return evaluate_legs(
        game,
        [best1, best2],
        total_stake,
        total_bookmakers=len(all_bookmaker_odds),
        has_draw_risk=detect_draw_risk([team1, team2], sport_key),
    )


def _outcome_names(game: GameOdds) -> list[str]:
    names: dict[str, None] = {}
    for prices in game.outcomes.values():
        for name in prices:
            names.setdefault(name, None)
    return list(names)


def _best_leg(game: GameOdds, outcome: str) -> Optional[Leg]:
    best: Optional[Leg] = None
    for bookmaker, prices in game.outcomes.items():
        odds = prices.get(outcome)
        if not odds:
            continue
        candidate = _leg(bookmaker, outcome, odds)
        if best is None or candidate.decimal > best.decimal:
            best = candidate
    return best


def find_game_opportunities(
    game: GameOdds,
    total_stake: float = DEFAULT_TOTAL_STAKE,
) -> GameScanResult:
    """
    Search every outcome pair and triple of one game for arbitrage.

    Pairs need their two best prices at different bookmakers; triples need at
    least two distinct bookmakers. A combination that leaves some of the
    market's outcomes uncovered is flagged with a risk warning.
    """
    result = GameScanResult(game_id=game.id, game=game.game)
    if len(game.outcomes) < 2:
        return result

    started = time.perf_counter()
    names = _outcome_names(game)
    best = {name: _best_leg(game, name) for name in names}
    bet_type = bet_type_for_market(game.market_key)
    draw_sport = detect_draw_risk([], game.sport_key)

    opportunities = []
    for size in (2, 3):
        if len(names) < size:
            break
        for combo in combinations(names, size):
            legs = [best[name] for name in combo]
            if any(leg is None for leg in legs):
                continue

            distinct = {leg.bookmaker for leg in legs}
            if len(distinct) < 2:
                continue

            uncovered = [name for name in names if name not in combo]
            warning = None
            if uncovered:
                warning = "Uncovered outcomes: " + ", ".join(uncovered)

            opportunity = evaluate_legs(
                game.game,
                legs,
                total_stake,
                total_bookmakers=len(distinct),
                bet_type=bet_type,
                has_draw_risk=bool(uncovered) or (draw_sport and size == 2),
                risk_warning=warning,
            )
            if opportunity.is_arbitrage:
                opportunity.game_id = game.id
                opportunities.append(opportunity)

    opportunities.sort(key=lambda o: o.profit_margin, reverse=True)
    result.opportunities = opportunities
    result.calculation_time_ms = (time.perf_counter() - started) * 1000
    return result


def score_opportunity(opportunity: ArbitrageOpportunity) -> float:
    """Rank an opportunity by margin, size, breadth and how easy it is to place."""
    score = opportunity.profit_margin * 10

    if opportunity.total_stake > 0:
        score += math.log(opportunity.total_stake / 100) * 2

    score += opportunity.total_bookmakers * 5

    # Small profits get eaten by transaction costs
    if opportunity.guaranteed_profit < 10:
        score -= 20

    stakes = [bet.stake for bet in opportunity.bets]
    if stakes and max(stakes) > 0:
        score += (min(stakes) / max(stakes)) * 10

    return max(0.0, score)


def filter_opportunities(
    opportunities: list[ArbitrageOpportunity],
    filters: Optional[OpportunityFilters] = None,
) -> list[ArbitrageOpportunity]:
    filters = filters or OpportunityFilters()
    kept = []

    for opp in opportunities:
        if opp.profit_margin < filters.min_profit_margin:
            continue
        if opp.guaranteed_profit < filters.min_guaranteed_profit:
            continue
        if filters.max_stake_per_bet is not None and opp.bets:
            if max(bet.stake for bet in opp.bets) > filters.max_stake_per_bet:
                continue
        if filters.allowed_bookmakers is not None:
            if not all(bet.bookmaker in filters.allowed_bookmakers for bet in opp.bets):
                continue
        if opp.total_bookmakers < filters.min_bookmakers:
            continue
        kept.append(opp)

    return kept


def process_games(
    games: list[GameOdds],
    filters: Optional[OpportunityFilters] = None,
    batch_size: int = BATCH_SIZE,
    total_stake: float = DEFAULT_TOTAL_STAKE,
) -> BatchScanResult:
    """
    Run the game search over many games.

    A game that fails to evaluate is reported with its error and skipped.
    """
    started = time.perf_counter()
    results: list[GameScanResult] = []

    for start in range(0, len(games), batch_size):
        for offset, game in enumerate(games[start:start + batch_size]):
            game_id = game.id or f"game_{start + offset}"
            try:
                game_result = find_game_opportunities(game, total_stake)
            except ArbitrageError as e:
                logger.warning("Skipping game %s: %s", game_id, e.message)
                game_result = GameScanResult(game=game.game, error=e.message)
            game_result.game_id = game_id
            results.append(game_result)

        logger.debug("Processed %d/%d games", min(start + batch_size, len(games)), len(games))

    all_opportunities = []
    for game_result in results:
        for opp in game_result.opportunities:
            opp.game_id = game_result.game_id
            opp.score = score_opportunity(opp)
            all_opportunities.append(opp)

    if filters is not None:
        all_opportunities = filter_opportunities(all_opportunities, filters)

    all_opportunities.sort(key=lambda o: o.score, reverse=True)

    return BatchScanResult(
        results=results,
        all_opportunities=all_opportunities,
        total_calculation_time_ms=(time.perf_counter() - started) * 1000,
        games_processed=len(results),
        opportunities_found=len(all_opportunities),
    )


def _line_key(market: Market) -> str:
    """Group spreads and totals by line so only complementary prices meet."""
    key = f"{market.event_id}:{market.market_key}"
    pointed = [o for o in market.outcomes if o.point is not None]
    if pointed:
        # Home -3.5 / Away +3.5 and Home +3.5 / Away -3.5 are different lines
        first = min(pointed, key=lambda o: o.name)
        key += f":{first.point:+g}"
    return key


def find_best_odds_per_outcome(markets: list[Market]) -> dict[str, dict[str, Outcome]]:
    """
    Group markets by event and line and find the best odds for each outcome.

    Returns:
        Dict mapping event_id:market_key[:line] -> outcome_name -> best Outcome
    """
    events: dict[str, dict[str, list[Outcome]]] = defaultdict(lambda: defaultdict(list))

    for market in markets:
        key = _line_key(market)
        for outcome in market.outcomes:
            if outcome.price > 0:
                events[key][outcome.name].append(outcome)

    best_odds: dict[str, dict[str, Outcome]] = {}

    for event_key, outcomes_dict in events.items():
        best_odds[event_key] = {}
        for outcome_name, outcomes in outcomes_dict.items():
            # Highest decimal price is best for the bettor; first seen wins ties
            best = max(outcomes, key=lambda o: o.price)
            best_odds[event_key][outcome_name] = best

    return best_odds


def check_arbitrage(outcomes: dict[str, Outcome]) -> Optional[tuple[float, float]]:
    """
    Check if arbitrage exists for a set of outcomes.

    Returns:
        Tuple of (profit_margin, total_implied_probability) if arbitrage exists,
        None otherwise.
    """
    if len(outcomes) < 2:
        return None

    total_implied = sum(o.implied_probability for o in outcomes.values())

    if total_implied < 1:
        return (1 - total_implied, total_implied)

    return None


def _outcome_leg(outcome: Outcome) -> Leg:
    american = outcome.american if outcome.american is not None else decimal_to_american(outcome.price)
    return Leg(outcome.bookmaker, outcome.name, american, outcome.price)


def find_arbitrage_opportunities(
    markets: list[Market],
    min_profit_margin: float = MIN_PROFIT_MARGIN,
    total_stake: float = DEFAULT_TOTAL_STAKE,
) -> list[ArbitrageOpportunity]:
    """
    Scan parsed bookmaker markets for arbitrage opportunities.

    Args:
        markets: List of Market objects from various bookmakers
        min_profit_margin: Minimum profit margin to consider, as a decimal (default 0.1%)
        total_stake: Stake used to size the returned bets

    Returns:
        List of ArbitrageOpportunity objects sorted by profit margin
    """
    opportunities = []
    best_odds = find_best_odds_per_outcome(markets)

    event_metadata: dict[str, Market] = {}
    bookmakers_seen: dict[str, set[str]] = defaultdict(set)
    for market in markets:
        key = _line_key(market)
        event_metadata.setdefault(key, market)
        for outcome in market.outcomes:
            bookmakers_seen[key].add(outcome.bookmaker)

    for event_key, outcomes in best_odds.items():
        arb_result = check_arbitrage(outcomes)
        if not arb_result or arb_result[0] < min_profit_margin:
            continue

        metadata = event_metadata[event_key]
        names = list(outcomes)
        opportunity = evaluate_legs(
            f"{metadata.away_team} @ {metadata.home_team}",
            [_outcome_leg(o) for o in outcomes.values()],
            total_stake,
            total_bookmakers=len(bookmakers_seen[event_key]),
            bet_type=bet_type_for_market(metadata.market_key),
            has_draw_risk=detect_draw_risk(names) if len(names) > 2 else False,
        )
        opportunity.game_id = metadata.event_id
        opportunities.append(opportunity)

    opportunities.sort(key=lambda o: o.profit_margin, reverse=True)

    return opportunities


def calculate_stakes(
    outcomes: list[Outcome],
    total_stake: float,
) -> CalculateStakesResponse:
    """
    Calculate optimal stake distribution for an arbitrage opportunity.

    The formula for optimal stake on outcome i is:
    stake_i = total_stake * (1/odds_i) / sum(1/odds for all outcomes)

    This ensures equal return regardless of which outcome wins.
    """
    valid = [o for o in outcomes if o.price > 0]
    if not valid or total_stake <= 0:
        return CalculateStakesResponse(
            total_stake=total_stake,
            guaranteed_profit=0,
            profit_percentage=0,
            stakes=[],
        )

    implied_probs = [calculate_implied_probability(o.price) for o in valid]
    total_implied = sum(implied_probs)

    stakes = []
    returns = []

    for outcome, implied_prob in zip(valid, implied_probs):
        stake = total_stake * (implied_prob / total_implied)
        potential_return = stake * outcome.price
        returns.append(potential_return)

        stakes.append(StakeRecommendation(
            outcome_name=outcome.name,
            bookmaker=outcome.bookmaker,
            odds=outcome.price,
            stake=round(stake, 2),
            potential_return=round(potential_return, 2),
        ))

    guaranteed_profit = min(returns) - total_stake
    profit_percentage = (guaranteed_profit / total_stake) * 100

    return CalculateStakesResponse(
        total_stake=total_stake,
        guaranteed_profit=round(guaranteed_profit, 2),
        profit_percentage=round(profit_percentage, 2),
        stakes=stakes,
    )


def format_opportunity_summary(opportunity: ArbitrageOpportunity) -> str:
    """Format an opportunity for display."""
    lines = [
        f"Event: {opportunity.game}",
        f"Market: {opportunity.bet_type}",
        f"Profit Margin: {opportunity.profit_margin:.2f}%",
        f"Guaranteed Profit: {opportunity.guaranteed_profit:.2f} on {opportunity.total_stake:.2f}",
    ]
    if opportunity.risk_warning:
        lines.append(f"Warning: {opportunity.risk_warning}")
    lines += ["", "Bets:"]

    for bet in opportunity.bets:
        lines.append(f"  {bet.team}: {format_american_odds(bet.odds)} @ {bet.bookmaker}, stake {bet.stake:.2f}")

    return "\n".join(lines)
