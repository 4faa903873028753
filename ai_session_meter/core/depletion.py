"""
Depletion forecasting.

Projects when a budget will be exhausted, both for the short rolling window
and for the long (weekly) period reported by the usage API.

Forecasts are either a concrete instant or the explicit undefined sentinel;
degenerate input never yields NaN, infinity or an exception.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

WEEKLY_PERIOD = timedelta(days=7)
MIN_WEEKLY_SAMPLE = timedelta(hours=24)


@dataclass(frozen=True)
class DepletionForecast:
    """Projected exhaustion time for a budget."""
    depletes_at: Optional[datetime] = None
    will_exceed_before_reset: bool = False

    @property
    def is_defined(self) -> bool:
        return self.depletes_at is not None

    def seconds_until(self, now: datetime) -> Optional[int]:
        """Seconds from ``now`` to depletion, floored at zero."""
        if self.depletes_at is None:
            return None
        return max(0, int((self.depletes_at - now).total_seconds()))


UNDEFINED_FORECAST = DepletionForecast()


def predict_short_budget_depletion(
    velocity: float,
    remaining_budget: float,
    now: datetime,
    window_end: datetime,
) -> DepletionForecast:
    """Project when the remaining budget runs out at the given velocity.

    The units of ``velocity`` and ``remaining_budget`` only need to agree
    per minute (USD/min with USD, tokens/min with tokens).

    Args:
        velocity: Consumption per minute
        remaining_budget: Budget left in the current window
        now: Reference time
        window_end: When the current window resets

    Returns:
        DepletionForecast, undefined for non-positive velocity or budget
    """
    if not (math.isfinite(velocity) and math.isfinite(remaining_budget)):
        return UNDEFINED_FORECAST
    if velocity <= 0 or remaining_budget <= 0:
        return UNDEFINED_FORECAST

    try:
        eta = now + timedelta(minutes=remaining_budget / velocity)
    except OverflowError:
        return UNDEFINED_FORECAST

    return DepletionForecast(depletes_at=eta, will_exceed_before_reset=eta < window_end)


def predict_weekly_depletion(
    utilization_pct: float,
    resets_at: datetime,
    now: datetime,
    period: timedelta = WEEKLY_PERIOD,
    min_sample: timedelta = MIN_WEEKLY_SAMPLE,
) -> DepletionForecast:
    """Project weekly exhaustion from the average rate since the period began.

    Uses the real average over the whole period (utilization / hours elapsed)
    rather than momentary session intensity. With less than ``min_sample``
    elapsed no forecast is made, since short samples over-weight bursts and
    idle gaps.

    Args:
        utilization_pct: Reported weekly utilization (0-100+)
        resets_at: When the weekly period resets
        now: Reference time
        period: Length of the weekly period
        min_sample: Minimum elapsed time before forecasting

    Returns:
        DepletionForecast, ``now`` when already at or over 100%
    """
    elapsed = now - (resets_at - period)
    if elapsed < min_sample:
        return UNDEFINED_FORECAST

    if utilization_pct >= 100:
        return DepletionForecast(depletes_at=now, will_exceed_before_reset=now < resets_at)

    if not math.isfinite(utilization_pct):
        return UNDEFINED_FORECAST

    rate_per_hour = utilization_pct / (elapsed.total_seconds() / 3600)
    if rate_per_hour <= 0:
        return UNDEFINED_FORECAST

    hours_to_go = (100 - utilization_pct) / rate_per_hour
    try:
        eta = now + timedelta(hours=hours_to_go)
    except OverflowError:
        return UNDEFINED_FORECAST

    return DepletionForecast(depletes_at=eta, will_exceed_before_reset=eta < resets_at)
