"""
Odds conversions and input validation.

American odds are what the dashboard and the upstream API (``oddsFormat=american``)
speak; decimal odds are what the stake maths uses.
"""

import math
import re
from typing import Any, Optional

from .config import VALID_BOOKMAKER_KEYS
from .errors import InvalidOddsError, ValidationError

SPORT_KEY_PATTERN = re.compile(r"^[a-zA-Z0-9_]+$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_INPUT_LENGTH = 1000


def _require_finite(value: float, label: str) -> float:
    if value is None or isinstance(value, bool):
        raise InvalidOddsError(f"Invalid {label}: {value}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidOddsError(f"Invalid {label}: {value}")
    if not math.isfinite(number):
        raise InvalidOddsError(f"Invalid {label}: {value}")
    return number


def american_to_decimal(american_odds: float) -> float:
    """Convert American odds (+150, -180) to decimal odds."""
    odds = _require_finite(american_odds, "American odds")
    if odds > 0:
        return (odds / 100) + 1
    if odds == 0:
        return 1.0
    return (100 / abs(odds)) + 1


def decimal_to_american(decimal_odds: float) -> int:
    """Convert decimal odds to rounded American odds."""
    odds = _require_finite(decimal_odds, "decimal odds")
    if odds <= 1.0:
        raise InvalidOddsError(f"Decimal odds must be greater than 1, got {decimal_odds}")
    if odds >= 2.0:
        return round((odds - 1) * 100)
    return round(-100 / (odds - 1))


def american_to_implied_probability(american_odds: float) -> float:
    """Implied probability (0-1) of American odds; zero odds imply nothing."""
    odds = _require_finite(american_odds, "American odds")
    if odds > 0:
        return 100 / (odds + 100)
    if odds == 0:
        return 0.0
    return abs(odds) / (abs(odds) + 100)


def decimal_to_implied_probability(decimal_odds: float) -> float:
    """Calculate implied probability from decimal odds."""
    if decimal_odds <= 0:
        return 0.0
    return 1 / decimal_odds


def format_american_odds(odds: float) -> str:
    if odds > 0 or odds == 0:
        return f"+{odds:g}"
    return f"{odds:g}"


def calculate_bet_profit(stake: float, american_odds: float) -> float:
    """Net winnings of a single bet if it wins."""
    odds = _require_finite(american_odds, "American odds")
    if odds > 0:
        return stake * (odds / 100)
    if odds == 0:
        return 0.0
    return stake * (100 / abs(odds))


# Input validation


def sanitize_input(value: Any) -> str:
    """Strip markup and script vectors from free text."""
    if not isinstance(value, str):
        return ""
    cleaned = re.sub(r"[<>]", "", value)
    cleaned = re.sub(r"javascript:", "", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"on\w+=", "", cleaned, flags=re.IGNORECASE)
    return cleaned.strip()[:MAX_INPUT_LENGTH]


def validate_number(
    value: Any,
    minimum: float = 0,
    maximum: float = float(2 ** 53 - 1),
    field: Optional[str] = None,
) -> float:
    if isinstance(value, bool):
        raise ValidationError(f"Invalid number: {value}", field)
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid number: {value}", field)
    if not math.isfinite(number):
        raise ValidationError(f"Invalid number: {value}", field)
    if number < minimum or number > maximum:
        raise ValidationError(f"Number {number:g} must be between {minimum:g} and {maximum:g}", field)
    return number


def validate_bet_amount(amount: Any) -> float:
    """Bet amount between 0.01 and 100000, rounded to cents."""
    return round(validate_number(amount, 0.01, 100000, field="amount"), 2)


def validate_odds(odds: Any, field: str = "odds") -> float:
    value = validate_number(odds, -10000, 10000, field=field)
    if value == 0:
        raise ValidationError("Odds cannot be zero", field)
    return value


def validate_email(email: Any) -> bool:
    sanitized = sanitize_input(email)
    return bool(EMAIL_PATTERN.match(sanitized)) and len(sanitized) <= 254


def validate_sport_key(sport_key: Any) -> str:
    sanitized = sanitize_input(sport_key)
    if not SPORT_KEY_PATTERN.match(sanitized):
        raise ValidationError(f"Invalid sport key: {sport_key}", "sport")
    return sanitized


def validate_bookmaker(bookmaker: Any, field: str = "bookmaker") -> str:
    sanitized = sanitize_input(bookmaker).lower()
    if sanitized not in VALID_BOOKMAKER_KEYS:
        raise ValidationError(f"Invalid bookmaker: {bookmaker}", field)
    return sanitized


def validate_bet_form(data: dict) -> dict:
    """
    Validate a two-bookmaker arbitrage bet form.

    Returns the cleaned form; raises ValidationError naming the first bad field.
    """
    amount = validate_bet_amount(data.get("amount"))
    bookmaker1 = validate_bookmaker(data.get("bookmaker1"), "bookmaker1")
    bookmaker2 = validate_bookmaker(data.get("bookmaker2"), "bookmaker2")
    odds1 = validate_odds(data.get("odds1"), "odds1")
    odds2 = validate_odds(data.get("odds2"), "odds2")

    if bookmaker1 == bookmaker2:
        raise ValidationError("Cannot bet on same bookmaker for arbitrage", "bookmaker2")

    sport = validate_sport_key(data["sport"]) if data.get("sport") else None

    return {
        "amount": amount,
        "bookmaker1": bookmaker1,
        "bookmaker2": bookmaker2,
        "odds1": odds1,
        "odds2": odds2,
        "sport": sport,
    }
