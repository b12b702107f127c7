"""Account-switch urgency score."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional

WEEKLY_WEIGHT = 0.6
DAILY_WEIGHT = 0.3
BURN_RATE_WEIGHT = 0.1

# $/hour that counts as a 100% burn factor
BURN_RATE_CEILING = 20.0

# Minutes of budget below which the low-budget bonus (up to 10) kicks in
LOW_BUDGET_MINUTES = 30


@dataclass
class UrgencyResult:
    score: int
    level: str           # low | medium | high | urgent
    recommendation: str  # none | swap_recommended | swap_urgent
    factors: Dict[str, float] = field(default_factory=dict)


def _round(x: float) -> int:
    return int(x + 0.5) if x >= 0 else -int(-x + 0.5)


def _clamp(x: float) -> float:
    return min(100.0, max(0.0, x))


def score_to_level(score: int) -> str:
    if score >= 95:
        return "urgent"
    if score >= 80:
        return "high"
    if score >= 50:
        return "medium"
    return "low"


def score_to_recommendation(score: int) -> str:
    if score >= 95:
        return "swap_urgent"
    if score >= 80:
        return "swap_recommended"
    return "none"


def calculate(
    *,
    weekly_percent_used: float = 0,
    daily_percent_used: float = 0,
    burn_rate_per_hour: float = 0,
    budget_remaining_minutes: Optional[float] = None,
) -> UrgencyResult:
    weekly = _clamp(weekly_percent_used or 0)
    daily = _clamp(daily_percent_used or 0)
    burn = _clamp((burn_rate_per_hour or 0) / BURN_RATE_CEILING * 100)

    bonus = 0
    if budget_remaining_minutes is not None and budget_remaining_minutes < LOW_BUDGET_MINUTES:
        bonus = _round((1 - budget_remaining_minutes / LOW_BUDGET_MINUTES) * 10)

    weekly_c = weekly * WEEKLY_WEIGHT
    daily_c = daily * DAILY_WEIGHT
    burn_c = burn * BURN_RATE_WEIGHT
    score = min(100, _round(weekly_c + daily_c + burn_c + bonus))

    return UrgencyResult(
        score=score,
        level=score_to_level(score),
        recommendation=score_to_recommendation(score),
        factors={
            "weekly": round(weekly_c, 1),
            "daily": round(daily_c, 1),
            "burn_rate": round(burn_c, 1),
        },
    )
