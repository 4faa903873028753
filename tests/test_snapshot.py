"""
Tests for the per-cycle snapshot reducer.
"""

from datetime import datetime, timedelta, timezone

import pytest

from ai_session_meter.core.limits import custom_budget
from ai_session_meter.core.snapshot import SnapshotOptions, build_snapshot
from ai_session_meter.data.models import ExternalUsage, ExternalUtilization, UsageEvent

NOW = datetime(2025, 3, 10, 10, 30, tzinfo=timezone.utc)


def _event(timestamp: datetime, tokens: int = 1000, cost: float = 0.5, msg: str = "") -> UsageEvent:
    return UsageEvent(
        timestamp=timestamp,
        input_tokens=tokens,
        output_tokens=0,
        cost_usd=cost,
        model="claude-sonnet-4-5-20250929",
        message_id=msg or f"msg_{timestamp.isoformat()}",
    )


def _external(session_pct=None, session_resets=None, weekly_pct=None, weekly_resets=None):
    session = weekly = None
    if session_pct is not None:
        session = ExternalUtilization(session_pct, session_resets, NOW)
    if weekly_pct is not None:
        weekly = ExternalUtilization(weekly_pct, weekly_resets, NOW)
    return ExternalUsage(session=session, weekly=weekly)


class TestBuildSnapshot:
    """Test folding events and external data into a snapshot."""

    def test_empty_events(self):
        snapshot = build_snapshot(None, [], None, NOW)

        assert not snapshot.has_data
        assert snapshot.current_window is None
        assert not snapshot.session_forecast.is_defined
        assert snapshot.velocity.tokens_per_minute == 0.0

    def test_active_window_and_velocity(self):
        events = [_event(NOW - timedelta(minutes=30)), _event(NOW - timedelta(minutes=10))]

        snapshot = build_snapshot(None, events, None, NOW)

        assert snapshot.has_data
        assert snapshot.current_window.is_active
        assert snapshot.velocity.tokens_per_minute == pytest.approx(2000 / 60)
        assert snapshot.window_cost_rate == pytest.approx(1.0 / 30)

    def test_session_forecast_uses_window_cost_rate(self):
        """$3 over 30 minutes against a $35 budget depletes in 320 minutes."""
        events = [_event(NOW - timedelta(minutes=30), cost=3.0)]

        snapshot = build_snapshot(None, events, None, NOW, SnapshotOptions(plan="max5"))

        assert snapshot.session_forecast.depletes_at == NOW + timedelta(minutes=320)
        assert not snapshot.session_forecast.will_exceed_before_reset

    def test_token_forecast_only_with_token_limit(self):
        events = [_event(NOW - timedelta(minutes=30), tokens=3000)]
        options = SnapshotOptions(plan="custom", budget=custom_budget(tokens=6000))

        snapshot = build_snapshot(None, events, None, NOW, options)

        assert snapshot.token_forecast.depletes_at == NOW + timedelta(minutes=60)
        assert not snapshot.session_forecast.is_defined

    def test_no_forecast_for_closed_window(self):
        events = [_event(NOW - timedelta(hours=8))]

        snapshot = build_snapshot(None, events, None, NOW)

        assert not snapshot.current_window.is_active
        assert not snapshot.session_forecast.is_defined
        assert snapshot.window_cost_rate == 0.0

    def test_stale_session_clamped_once(self):
        external = _external(session_pct=100.0, session_resets=NOW - timedelta(minutes=30))

        snapshot = build_snapshot(None, [_event(NOW - timedelta(minutes=20))], external, NOW)

        assert snapshot.session_utilization.percent_used == 0.0
        assert snapshot.session_is_stale
        assert snapshot.external.session.percent_used == 100.0

    def test_weekly_forecast(self):
        external = _external(weekly_pct=100.0, weekly_resets=NOW + timedelta(days=3))

        snapshot = build_snapshot(None, [], external, NOW)

        assert snapshot.weekly_forecast.depletes_at == NOW
        assert snapshot.weekly_forecast.will_exceed_before_reset

    def test_previous_external_carried_forward(self):
        external = _external(session_pct=40.0, session_resets=NOW + timedelta(hours=2))
        first = build_snapshot(None, [], external, NOW)

        second = build_snapshot(first, [], None, NOW + timedelta(seconds=30))

        assert second.external == external
        assert second.session_utilization.percent_used == 40.0

    def test_previous_external_dropped_when_disabled(self):
        external = _external(session_pct=40.0, session_resets=NOW + timedelta(hours=2))
        first = build_snapshot(None, [], external, NOW)

        second = build_snapshot(first, [], None, NOW, keep_previous_external=False)

        assert second.external is None
        assert second.session_utilization is None

    def test_deterministic(self):
        events = [_event(NOW - timedelta(hours=h)) for h in (1, 7, 20)]
        external = _external(weekly_pct=30.0, weekly_resets=NOW + timedelta(days=2))

        assert build_snapshot(None, events, external, NOW) == build_snapshot(None, events, external, NOW)

    def test_tier_mismatch_flagged(self):
        events = [
            _event(NOW - timedelta(days=d), tokens=25_000, msg=f"m{d}")
            for d in (1, 2, 3)
        ]

        snapshot = build_snapshot(None, events, None, NOW, SnapshotOptions(plan="pro"))

        assert snapshot.tier_mismatch
        assert snapshot.budget.name == "Pro"
