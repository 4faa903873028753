"""
Tests for budgets and limit grading.
"""

from datetime import datetime, timezone

import pytest

from ai_session_meter.core.limits import (
    PREDEFINED_BUDGETS,
    Budget,
    WeeklyHours,
    LimitLevel,
    assess_window_limits,
    custom_budget,
    get_budget,
    get_weekly_hours,
    utilization_warning_level,
)
from ai_session_meter.core.windower import Window


def _window(cost: float = 0.0, messages: int = 0, tokens: int = 0, is_gap: bool = False) -> Window:
    start = datetime(2025, 1, 1, 10, tzinfo=timezone.utc)
    return Window(
        id="w",
        start=start,
        end=datetime(2025, 1, 1, 15, tzinfo=timezone.utc),
        cost_usd=cost,
        message_count=messages,
        display_tokens=tokens,
        total_tokens=tokens,
        is_gap=is_gap,
    )


class TestBudgets:
    """Test predefined and custom budgets."""

    def test_predefined_values(self):
        assert get_budget("pro").cost_limit_usd == 18.0
        assert get_budget("max5").message_limit == 1000
        assert get_budget("max20").cost_limit_usd == 140.0
        assert all(b.token_limit == 0 for b in PREDEFINED_BUDGETS.values())

    def test_unknown_plan_falls_back_to_pro(self):
        assert get_budget("enterprise") == PREDEFINED_BUDGETS["pro"]

    def test_custom_budget(self):
        budget = custom_budget(tokens=50_000, cost=10.0, messages=100)

        assert budget.name == "Custom"
        assert budget.token_limit == 50_000

    def test_negative_limits_rejected(self):
        with pytest.raises(ValueError):
            Budget(name="bad", cost_limit_usd=-1, message_limit=0)


class TestWeeklyHours:
    """Test the per-model weekly allowances."""

    def test_predefined_allowances(self):
        assert get_weekly_hours("pro").sonnet_hours == 60
        assert get_weekly_hours("max5").sonnet_hours == 210
        assert get_weekly_hours("max20").sonnet_hours == 360
        assert get_weekly_hours("max20").opus_hours == 0

    def test_custom_plan_has_no_allowance(self):
        assert get_weekly_hours("custom") is None

    def test_used_hours(self):
        hours = WeeklyHours(sonnet_hours=210, opus_hours=0)

        assert hours.used_hours("sonnet", 50.0) == pytest.approx(105.0)
        assert hours.used_hours("opus", 50.0) == 0.0
        assert hours.limit_for("opus") == 0


class TestAssessWindowLimits:
    """Test grading a window against its budget."""

    def test_highest_percentage_wins(self):
        budget = Budget(name="b", cost_limit_usd=10.0, message_limit=100)

        status = assess_window_limits(_window(cost=5.0, messages=90), budget)

        assert status.limit_type == "messages"
        assert status.percent == pytest.approx(90.0)
        assert status.level == LimitLevel.APPROACHING

    def test_critical_above_95(self):
        budget = Budget(name="b", cost_limit_usd=10.0, message_limit=0)

        assert assess_window_limits(_window(cost=9.6), budget).level == LimitLevel.CRITICAL
        assert assess_window_limits(_window(cost=9.5), budget).level == LimitLevel.APPROACHING

    def test_zero_limits_ignored(self):
        budget = Budget(name="b", cost_limit_usd=0.0, message_limit=0, token_limit=1000)

        status = assess_window_limits(_window(cost=500.0, tokens=100), budget)

        assert status.limit_type == "tokens"
        assert status.level == LimitLevel.OK

    def test_no_window_or_gap_is_ok(self):
        budget = get_budget("pro")

        assert assess_window_limits(None, budget).level == LimitLevel.OK
        assert assess_window_limits(_window(is_gap=True), budget).limit_type is None


class TestUtilizationWarningLevel:
    """Test thresholds for externally reported utilization."""

    @pytest.mark.parametrize("percent,level", [
        (50.0, LimitLevel.OK),
        (85.0, LimitLevel.OK),
        (85.1, LimitLevel.APPROACHING),
        (95.0, LimitLevel.APPROACHING),
        (95.1, LimitLevel.CRITICAL),
    ])
    def test_thresholds(self, percent, level):
        assert utilization_warning_level(percent) == level
