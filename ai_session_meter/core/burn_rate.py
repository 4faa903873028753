"""
Burn rate estimation.

Computes a trailing consumption velocity using proportional time-overlap
weighting, so a window spanning the lookback boundary is never counted twice.
The weighting assumes consumption is uniform within a window; it is a
smoothing heuristic rather than a measurement.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Sequence

from .windower import Window

LOOKBACK = timedelta(hours=1)


@dataclass(frozen=True)
class VelocityEstimate:
    """Consumption velocity computed for a specific reference time."""
    tokens_per_minute: float
    cost_per_minute: float
    computed_at: datetime

    def __post_init__(self):
        """Validate velocity is non-negative."""
        if self.tokens_per_minute < 0:
            raise ValueError("tokens_per_minute cannot be negative")
        if self.cost_per_minute < 0:
            raise ValueError("cost_per_minute cannot be negative")

    @property
    def cost_per_hour(self) -> float:
        return self.cost_per_minute * 60


def calculate_velocity(
    windows: Sequence[Window],
    now: datetime,
    lookback: timedelta = LOOKBACK,
) -> VelocityEstimate:
    """Calculate the trailing burn rate over ``lookback`` ending at ``now``.

    Each window contributes ``displayTokens`` (and cost) in proportion to how
    much of its effective span overlaps the lookback interval. The effective
    end is ``actual_end`` for closed windows, ``now`` for active ones and the
    nominal end otherwise. Zero-length windows are skipped.

    Args:
        windows: Classified windows
        now: Reference time
        lookback: Trailing interval length

    Returns:
        VelocityEstimate in tokens and USD per minute
    """
    lookback_start = now - lookback
    tokens = 0.0
    cost = 0.0

    for window in windows:
        if window.is_gap:
            continue

        effective_end = _effective_end(window, now)
        if effective_end < lookback_start:
            continue  # Ended before the lookback interval
        if window.start > now:
            continue  # Not started yet

        overlap_start = max(window.start, lookback_start)
        overlap_end = min(effective_end, now)
        if overlap_end < overlap_start:
            continue

        total_minutes = (effective_end - window.start).total_seconds() / 60
        if total_minutes <= 0:
            continue

        proportion = ((overlap_end - overlap_start).total_seconds() / 60) / total_minutes
        tokens += window.display_tokens * proportion
        cost += window.cost_usd * proportion

    lookback_minutes = lookback.total_seconds() / 60
    return VelocityEstimate(
        tokens_per_minute=tokens / lookback_minutes,
        cost_per_minute=cost / lookback_minutes,
        computed_at=now,
    )


def window_cost_rate(window: Window, now: datetime) -> float:
    """Average cost per minute across a single window's elapsed time.

    Returns 0.0 for gap windows and windows with no elapsed time.
    """
    if window.is_gap:
        return 0.0
    elapsed_minutes = window.elapsed(now).total_seconds() / 60
    if elapsed_minutes <= 0:
        return 0.0
    return window.cost_usd / elapsed_minutes


def _effective_end(window: Window, now: datetime) -> datetime:
    if window.is_active:
        return now
    if window.actual_end is not None:
        return window.actual_end
    return window.end
