"""
Quota aggregation and plan inference.

Infers the budget tier from historical windows using a P90 over the windows
that came close to a known tier ceiling.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Tuple

from .windower import Window

# Known total-token ceilings per 5-hour window, ascending
TIER_TOKEN_CEILINGS: Dict[str, int] = {
    "pro": 19_000,
    "max5": 88_000,
    "max20": 220_000,
}

SWITCH_THRESHOLD = 0.3


@dataclass(frozen=True)
class P90Config:
    """Configuration for P90 limit inference."""
    common_limits: Tuple[int, ...] = tuple(sorted(TIER_TOKEN_CEILINGS.values()))
    limit_threshold: float = 0.95
    default_min_limit: int = 19_000

    def __post_init__(self):
        """Validate threshold and limits."""
        if not 0 < self.limit_threshold <= 1:
            raise ValueError("limit_threshold must be in (0, 1]")
        if self.default_min_limit < 0:
            raise ValueError("default_min_limit cannot be negative")


@dataclass(frozen=True)
class QuotaSummary:
    """Result of tier inference over completed windows."""
    p90_limit: int
    detected_plan: str
    completed_windows: int
    hit_windows: int
    per_model_tokens: Dict[str, int] = field(default_factory=dict)


def completed_windows(windows: Sequence[Window]) -> List[Window]:
    """Non-gap windows that are no longer active."""
    return [w for w in windows if not w.is_gap and not w.is_active]


def quantile(values: Sequence[int], q: float) -> int:
    """Nearest-rank quantile on the ascending-sorted values.

    Uses ``index = floor((n - 1) * q)`` clamped to ``[0, n - 1]``.
    Returns 0 for an empty input.
    """
    if not values:
        return 0
    sorted_values = sorted(values)
    index = int((len(sorted_values) - 1) * q)
    index = min(max(index, 0), len(sorted_values) - 1)
    return sorted_values[index]


def calculate_p90_limit(windows: Sequence[Window], config: P90Config = P90Config()) -> int:
    """Calculate the P90 token limit from completed windows.

    Total tokens (including cache) are used because tier ceilings track total
    consumption. Windows within ``limit_threshold`` of any known ceiling form
    the sample; if none qualify, all completed windows with tokens are used.

    Args:
        windows: Classified windows
        config: Inference configuration

    Returns:
        P90 of the sample, floored at ``default_min_limit``
    """
    done = completed_windows(windows)

    hits = [
        w.total_tokens for w in done
        if any(w.total_tokens >= limit * config.limit_threshold for limit in config.common_limits)
    ]
    if not hits:
        hits = [w.total_tokens for w in done if w.total_tokens > 0]

    if not hits:
        return config.default_min_limit

    return max(quantile(hits, 0.90), config.default_min_limit)


def detect_plan(windows: Sequence[Window], config: P90Config = P90Config()) -> str:
    """Guess the plan name from the P90 token limit."""
    p90 = calculate_p90_limit(windows, config)
    if p90 >= 200_000:
        return "max20"
    if p90 >= 80_000:
        return "max5"
    if p90 >= 15_000:
        return "pro"
    return "custom"


def should_switch_tier(
    windows: Sequence[Window],
    current_plan: str,
    ceilings: Dict[str, int] = TIER_TOKEN_CEILINGS,
) -> bool:
    """Flag a plan mismatch when over 30% of completed windows exceed its ceiling.

    Always False for ``custom`` and for plans without a known ceiling.
    """
    ceiling = ceilings.get(current_plan)
    if ceiling is None:
        return False

    done = completed_windows(windows)
    if not done:
        return False

    exceeded = sum(1 for w in done if w.total_tokens > ceiling)
    return exceeded / len(done) > SWITCH_THRESHOLD


def summarize_quota(windows: Sequence[Window], config: P90Config = P90Config()) -> QuotaSummary:
    """Roll up per-model totals and tier inference for completed windows."""
    done = completed_windows(windows)
    per_model: Dict[str, int] = {}
    for window in done:
        for model, breakdown in window.per_model.items():
            per_model[model] = per_model.get(model, 0) + breakdown.total_tokens

    hit_count = sum(
        1 for w in done
        if any(w.total_tokens >= limit * config.limit_threshold for limit in config.common_limits)
    )

    return QuotaSummary(
        p90_limit=calculate_p90_limit(windows, config),
        detected_plan=detect_plan(windows, config),
        completed_windows=len(done),
        hit_windows=hit_count,
        per_model_tokens=per_model,
    )
