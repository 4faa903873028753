"""
Staleness guard for externally reported utilization.

Right after a window rolls over, the usage API can keep reporting the
previous window's percentage for a while. A value far above what is
possible for the time elapsed in the new window is treated as stale.
"""

from datetime import datetime, timedelta

from .windower import SESSION_DURATION
from ai_session_meter.data.models import ExternalUtilization

MIN_PLAUSIBLE_PCT = 1.0
STALENESS_FACTOR = 2.0


def max_plausible_percent(
    resets_at: datetime,
    now: datetime,
    window_duration: timedelta = SESSION_DURATION,
) -> float:
    """Highest utilization reachable since ``resets_at``, floored at 1%."""
    elapsed = now - resets_at
    return max(MIN_PLAUSIBLE_PCT, elapsed / window_duration * 100)


def clamp_stale_utilization(
    utilization: ExternalUtilization,
    now: datetime,
    window_duration: timedelta = SESSION_DURATION,
) -> ExternalUtilization:
    """Clamp an implausible post-rollover utilization to zero.

    Must be applied once, where the external value enters the snapshot, so
    that display, depletion and warnings all see the same value.

    Args:
        utilization: Value as reported by the usage API
        now: Reference time
        window_duration: Length of the window the percentage refers to

    Returns:
        The input unchanged, or a copy at 0% flagged ``is_stale``
    """
    if utilization.resets_at > now:
        return utilization

    limit = max_plausible_percent(utilization.resets_at, now, window_duration)
    if utilization.percent_used > STALENESS_FACTOR * limit:
        return utilization.cleared()
    return utilization
