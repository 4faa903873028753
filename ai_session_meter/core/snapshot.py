"""
Per-cycle usage snapshot.

Folds the full event list and the latest external poll into one immutable
snapshot. This is read-only and deterministic: calling it twice with the
same inputs yields equal snapshots.

Pipeline:
1. Windower - partition events into windows and gaps
2. ActivityClassifier - mark active/closed windows at ``now``
3. RateEstimator and QuotaAggregator - velocity and tier inference
4. StalenessGuard - clamp the external session percentage once, here
5. DepletionPredictor - short- and long-budget forecasts
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Sequence, Tuple

from .activity import classify_windows, get_active_window, get_current_window
from .burn_rate import LOOKBACK, VelocityEstimate, calculate_velocity, window_cost_rate
from .depletion import (
    UNDEFINED_FORECAST,
    DepletionForecast,
    predict_short_budget_depletion,
    predict_weekly_depletion,
)
from .limits import Budget, LimitStatus, assess_window_limits, get_budget
from .quota import P90Config, QuotaSummary, should_switch_tier, summarize_quota
from .staleness import clamp_stale_utilization
from .windower import SESSION_DURATION, Window, build_windows
from ai_session_meter.data.models import ExternalUsage, ExternalUtilization, UsageEvent


@dataclass(frozen=True)
class SnapshotOptions:
    """Inputs to the reducer that come from configuration."""
    plan: str = "max5"
    budget: Optional[Budget] = None
    window_duration: timedelta = SESSION_DURATION
    lookback: timedelta = LOOKBACK
    p90: P90Config = field(default_factory=P90Config)

    @property
    def effective_budget(self) -> Budget:
        return self.budget if self.budget is not None else get_budget(self.plan)


@dataclass(frozen=True)
class UsageSnapshot:
    """Everything consumers need from one refresh cycle."""
    refreshed_at: datetime
    plan: str
    budget: Budget
    windows: Tuple[Window, ...]
    current_window: Optional[Window]
    velocity: VelocityEstimate
    window_cost_rate: float
    limit_status: LimitStatus
    quota: QuotaSummary
    tier_mismatch: bool
    external: Optional[ExternalUsage] = None
    session_utilization: Optional[ExternalUtilization] = None
    weekly_utilization: Optional[ExternalUtilization] = None
    session_forecast: DepletionForecast = UNDEFINED_FORECAST
    token_forecast: DepletionForecast = UNDEFINED_FORECAST
    weekly_forecast: DepletionForecast = UNDEFINED_FORECAST

    @property
    def has_data(self) -> bool:
        return any(not w.is_gap for w in self.windows)

    @property
    def session_is_stale(self) -> bool:
        return self.session_utilization is not None and self.session_utilization.is_stale


def build_snapshot(
    previous: Optional[UsageSnapshot],
    events: Sequence[UsageEvent],
    external: Optional[ExternalUsage],
    now: datetime,
    options: SnapshotOptions = SnapshotOptions(),
    keep_previous_external: bool = True,
) -> UsageSnapshot:
    """Build the snapshot for one refresh cycle.

    Args:
        previous: Last published snapshot, used only to carry forward the
            external poll when this cycle has none
        events: Full sorted, deduplicated event list
        external: Fresh usage API poll, or None if none happened this cycle
        now: Reference time
        options: Plan, budget and window parameters
        keep_previous_external: Set False once the usage API is disabled so
            old percentages are dropped rather than carried forward

    Returns:
        New immutable UsageSnapshot
    """
    if external is None and keep_previous_external and previous is not None:
        external = previous.external

    windows = classify_windows(build_windows(events, options.window_duration), now)
    current = get_current_window(windows)
    active = get_active_window(windows)
    budget = options.effective_budget

    velocity = calculate_velocity(windows, now, options.lookback)
    cost_rate = window_cost_rate(active, now) if active is not None else 0.0

    session_utilization = None
    weekly_utilization = None
    if external is not None:
        if external.session is not None:
            session_utilization = clamp_stale_utilization(
                external.session, now, options.window_duration
            )
        weekly_utilization = external.weekly

    session_forecast = UNDEFINED_FORECAST
    token_forecast = UNDEFINED_FORECAST
    if active is not None:
        if budget.cost_limit_usd > 0:
            session_forecast = predict_short_budget_depletion(
                cost_rate, budget.cost_limit_usd - active.cost_usd, now, active.end
            )
        if budget.token_limit > 0:
            token_forecast = predict_short_budget_depletion(
                velocity.tokens_per_minute,
                budget.token_limit - active.display_tokens,
                now,
                active.end,
            )

    weekly_forecast = UNDEFINED_FORECAST
    if weekly_utilization is not None:
        weekly_forecast = predict_weekly_depletion(
            weekly_utilization.percent_used, weekly_utilization.resets_at, now
        )

    return UsageSnapshot(
        refreshed_at=now,
        plan=options.plan,
        budget=budget,
        windows=tuple(windows),
        current_window=current,
        velocity=velocity,
        window_cost_rate=cost_rate,
        limit_status=assess_window_limits(current, budget),
        quota=summarize_quota(windows, options.p90),
        tier_mismatch=should_switch_tier(windows, options.plan),
        external=external,
        session_utilization=session_utilization,
        weekly_utilization=weekly_utilization,
        session_forecast=session_forecast,
        token_forecast=token_forecast,
        weekly_forecast=weekly_forecast,
    )
