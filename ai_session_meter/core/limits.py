"""
Budget limits and threshold checks.

Defines the known plan budgets and grades how close a window is to them.

Threshold Order:
1. CRITICAL - any configured ceiling above 95%
2. APPROACHING - highest ceiling above 80%
3. OK - everything else
"""

from dataclasses import dataclass
from enum import Enum, auto
from typing import Dict, Optional

from .windower import Window


class LimitLevel(Enum):
    """Severity of limit usage, in ascending order."""
    OK = auto()
    APPROACHING = auto()
    CRITICAL = auto()


@dataclass(frozen=True)
class Budget:
    """Named per-window limits. A token limit of 0 means unbounded."""
    name: str
    cost_limit_usd: float
    message_limit: int
    token_limit: int = 0

    def __post_init__(self):
        """Validate limits are non-negative."""
        if self.cost_limit_usd < 0:
            raise ValueError("cost_limit_usd cannot be negative")
        if self.message_limit < 0:
            raise ValueError("message_limit cannot be negative")
        if self.token_limit < 0:
            raise ValueError("token_limit cannot be negative")


@dataclass(frozen=True)
class LimitStatus:
    """Highest percentage across a window's configured limits."""
    percent: float
    limit_type: Optional[str]
    level: LimitLevel


# No plan has a per-window token limit; the context window is per conversation
PREDEFINED_BUDGETS: Dict[str, Budget] = {
    "pro": Budget(name="Pro", cost_limit_usd=18.0, message_limit=250),
    "max5": Budget(name="Max5", cost_limit_usd=35.0, message_limit=1000),
    "max20": Budget(name="Max20", cost_limit_usd=140.0, message_limit=2000),
}

CRITICAL_PCT = 95.0
APPROACHING_PCT = 80.0
UTILIZATION_CRITICAL_PCT = 95.0
UTILIZATION_WARNING_PCT = 85.0


@dataclass(frozen=True)
class WeeklyHours:
    """Approximate weekly per-model allowance in hours. 0 means not enforced."""
    sonnet_hours: float
    opus_hours: float

    def limit_for(self, model: str) -> float:
        return self.sonnet_hours if model == "sonnet" else self.opus_hours

    def used_hours(self, model: str, percent_used: float) -> float:
        """Convert a per-model weekly percentage into hours of that allowance."""
        limit = self.limit_for(model)
        if limit <= 0:
            return 0.0
        return percent_used / 100.0 * limit


# Mid-range of the published allowances; Opus weekly limits are not enforced
PREDEFINED_WEEKLY_HOURS: Dict[str, WeeklyHours] = {
    "pro": WeeklyHours(sonnet_hours=60, opus_hours=0),
    "max5": WeeklyHours(sonnet_hours=210, opus_hours=0),
    "max20": WeeklyHours(sonnet_hours=360, opus_hours=0),
}


def get_weekly_hours(plan: str) -> Optional[WeeklyHours]:
    """Return the weekly per-model allowance, or None for custom plans."""
    return PREDEFINED_WEEKLY_HOURS.get(plan)


def get_budget(plan: str) -> Budget:
    """Return the budget for a plan, defaulting to Pro for unknown names."""
    return PREDEFINED_BUDGETS.get(plan, PREDEFINED_BUDGETS["pro"])


def custom_budget(tokens: int = 0, cost: float = 0.0, messages: int = 0) -> Budget:
    """Build a Custom budget from user-supplied limits."""
    return Budget(name="Custom", cost_limit_usd=cost, message_limit=messages, token_limit=tokens)


def assess_window_limits(window: Optional[Window], budget: Budget) -> LimitStatus:
    """Grade a window against every configured ceiling of a budget.

    Ceilings set to 0 are ignored. The token check uses display tokens.

    Args:
        window: Window to check (None yields OK)
        budget: Budget to compare against

    Returns:
        LimitStatus with the highest percentage and which limit it came from
    """
    if window is None or window.is_gap:
        return LimitStatus(percent=0.0, limit_type=None, level=LimitLevel.OK)

    percents = {}
    if budget.token_limit > 0:
        percents["tokens"] = window.display_tokens / budget.token_limit * 100
    if budget.cost_limit_usd > 0:
        percents["cost"] = window.cost_usd / budget.cost_limit_usd * 100
    if budget.message_limit > 0:
        percents["messages"] = window.message_count / budget.message_limit * 100

    limit_type = None
    highest = 0.0
    for name, percent in percents.items():
        if percent > highest:
            highest = percent
            limit_type = name

    if highest > CRITICAL_PCT:
        level = LimitLevel.CRITICAL
    elif highest > APPROACHING_PCT:
        level = LimitLevel.APPROACHING
    else:
        level = LimitLevel.OK

    return LimitStatus(percent=highest, limit_type=limit_type, level=level)


def utilization_warning_level(percent: float) -> LimitLevel:
    """Grade an externally reported utilization that has already been clamped."""
    if percent > UTILIZATION_CRITICAL_PCT:
        return LimitLevel.CRITICAL
    if percent > UTILIZATION_WARNING_PCT:
        return LimitLevel.APPROACHING
    return LimitLevel.OK
