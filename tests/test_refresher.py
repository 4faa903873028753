"""
Tests for the refresh controller.
"""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from ai_session_meter.core.snapshot import SnapshotOptions
from ai_session_meter.data.models import ExternalUsage, ExternalUtilization, UsageEvent
from ai_session_meter.oauth.client import TokenExpiredError, UsageApiError
from ai_session_meter.runtime.refresher import RefreshController

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def _usage(session_pct=30.0, resets_at=None) -> ExternalUsage:
    return ExternalUsage(
        session=ExternalUtilization(session_pct, resets_at or NOW + timedelta(hours=2), NOW),
        weekly=ExternalUtilization(20.0, NOW + timedelta(days=3), NOW),
    )


@pytest.fixture
def api_client():
    client = MagicMock()
    client.fetch_usage.return_value = _usage()
    return client


@pytest.fixture
def events():
    return [UsageEvent(timestamp=NOW - timedelta(minutes=20), input_tokens=500,
                       output_tokens=500, cost_usd=1.0, message_id="m1")]


def _controller(events, api_client=None, **kwargs) -> RefreshController:
    return RefreshController(
        load_events=lambda now: events,
        options=SnapshotOptions(plan="max5"),
        interval=timedelta(seconds=30),
        api_client=api_client,
        clock=lambda: NOW,
        **kwargs,
    )


class TestRefresh:
    """Test a single refresh cycle."""

    def test_first_refresh_polls_api(self, events, api_client):
        controller = _controller(events, api_client)

        snapshot = controller.refresh(NOW)

        api_client.fetch_usage.assert_called_once_with(NOW)
        assert snapshot.session_utilization.percent_used == 30.0
        assert controller.snapshot is snapshot

    def test_runs_without_api(self, events):
        snapshot = _controller(events).refresh(NOW)

        assert snapshot.has_data
        assert snapshot.external is None

    def test_publishes_snapshot(self, events):
        published = []
        controller = _controller(events, on_snapshot=published.append)

        controller.refresh(NOW)

        assert len(published) == 1

    def test_uses_clock_when_now_omitted(self, events):
        snapshot = _controller(events).refresh()

        assert snapshot.refreshed_at == NOW


class TestApiPolling:
    """Test when the usage API is polled."""

    def test_not_polled_within_interval(self, events, api_client):
        controller = _controller(events, api_client)
        controller.refresh(NOW)

        controller.refresh(NOW + timedelta(seconds=30))

        assert api_client.fetch_usage.call_count == 1

    def test_polled_after_interval(self, events, api_client):
        controller = _controller(events, api_client)
        controller.refresh(NOW)

        controller.refresh(NOW + timedelta(seconds=60))

        assert api_client.fetch_usage.call_count == 2

    def test_idle_session_polls_on_weekly_safety_net(self, api_client):
        """Test the 60s cadence pauses without an active session."""
        idle = [UsageEvent(timestamp=NOW - timedelta(hours=6), input_tokens=500,
                           output_tokens=500, cost_usd=1.0, message_id="m1")]
        controller = _controller(idle, api_client)
        controller.refresh(NOW)

        controller.refresh(NOW + timedelta(minutes=5))
        assert api_client.fetch_usage.call_count == 1

        controller.refresh(NOW + timedelta(minutes=15))
        assert api_client.fetch_usage.call_count == 2
        assert controller.state.last_weekly_fetch == NOW + timedelta(minutes=15)

    def test_cached_data_carried_between_polls(self, events, api_client):
        controller = _controller(events, api_client)
        controller.refresh(NOW)

        snapshot = controller.refresh(NOW + timedelta(seconds=30))

        assert snapshot.weekly_utilization.percent_used == 20.0

    def test_rolled_over_session_forces_poll(self, events, api_client):
        api_client.fetch_usage.return_value = _usage(resets_at=NOW + timedelta(seconds=10))
        controller = _controller(events, api_client)
        controller.refresh(NOW)

        controller.refresh(NOW + timedelta(seconds=20))

        assert api_client.fetch_usage.call_count == 2

    def test_force_polls(self, events, api_client):
        controller = _controller(events, api_client)
        controller.refresh(NOW)

        controller.refresh(NOW + timedelta(seconds=5), force_api=True)

        assert api_client.fetch_usage.call_count == 2


class TestApiFailures:
    """Test degradation on usage API errors."""

    def test_transient_error_keeps_cached_data(self, events, api_client):
        controller = _controller(events, api_client)
        controller.refresh(NOW)
        api_client.fetch_usage.side_effect = UsageApiError("timed out", transient=True)

        snapshot = controller.refresh(NOW + timedelta(seconds=60))

        assert not controller.state.api_disabled
        assert controller.state.last_api_error == "timed out"
        assert snapshot.session_utilization.percent_used == 30.0

    def test_transient_error_retried_next_tick(self, events, api_client):
        api_client.fetch_usage.side_effect = UsageApiError("timed out", transient=True)
        controller = _controller(events, api_client)
        controller.refresh(NOW)

        controller.refresh(NOW + timedelta(seconds=30))

        assert api_client.fetch_usage.call_count == 2

    def test_permanent_error_disables_api(self, events, api_client):
        controller = _controller(events, api_client)
        controller.refresh(NOW)
        api_client.fetch_usage.side_effect = TokenExpiredError()

        snapshot = controller.refresh(NOW + timedelta(seconds=60))
        controller.refresh(NOW + timedelta(seconds=120))

        assert controller.state.api_disabled
        assert snapshot.external is None
        assert snapshot.has_data
        assert api_client.fetch_usage.call_count == 2

    def test_permanent_error_retried_after_five_minutes(self, events, api_client):
        controller = _controller(events, api_client)
        controller.refresh(NOW)
        api_client.fetch_usage.side_effect = UsageApiError("Usage API returned status 403: forbidden", status_code=403)
        failed_at = NOW + timedelta(seconds=60)
        controller.refresh(failed_at)

        controller.refresh(failed_at + timedelta(minutes=4))
        assert api_client.fetch_usage.call_count == 2
        assert controller.state.api_disabled

        api_client.fetch_usage.side_effect = None
        snapshot = controller.refresh(failed_at + timedelta(minutes=5))

        assert api_client.fetch_usage.call_count == 3
        assert not controller.state.api_disabled
        assert snapshot.session_utilization.percent_used == 30.0

    def test_expired_token_never_retried(self, events, api_client):
        """Test failures that need re-authentication keep the API off."""
        api_client.fetch_usage.side_effect = TokenExpiredError()
        controller = _controller(events, api_client)
        controller.refresh(NOW)

        controller.refresh(NOW + timedelta(minutes=30))

        assert not controller.should_retry_api(NOW + timedelta(minutes=30))
        assert controller.state.api_disabled
        assert api_client.fetch_usage.call_count == 1


class TestTick:
    """Test periodic ticks and clock jump handling."""

    def test_clock_jump_forces_poll(self, events, api_client):
        controller = _controller(events, api_client)
        controller.tick(NOW)

        controller.tick(NOW + timedelta(seconds=50))
        assert api_client.fetch_usage.call_count == 1

        controller.tick(NOW + timedelta(seconds=50) + timedelta(seconds=61))
        assert api_client.fetch_usage.call_count == 2
        assert controller.state.clock_jumps == 1

    def test_regular_ticks_do_not_count_as_jumps(self, events):
        controller = _controller(events)
        for i in range(4):
            controller.tick(NOW + timedelta(seconds=30 * i))

        assert controller.state.clock_jumps == 0

    def test_run_stops_on_event(self, events):
        stop = threading.Event()
        ticks = []

        def on_snapshot(snapshot):
            ticks.append(snapshot)
            stop.set()

        _controller(events, on_snapshot=on_snapshot).run(stop)

        assert len(ticks) == 1

    def test_run_serves_pending_manual_request(self, events, api_client):
        stop = threading.Event()
        controller = _controller(events, api_client, on_snapshot=lambda s: stop.set())
        controller.request_manual_refresh()

        controller.run(stop)

        assert controller.state.manual_refresh_count == 1
        assert controller.state.last_tick == NOW
        api_client.fetch_usage.assert_called_once_with(NOW)

    def test_manual_request_wakes_waiting_loop(self, events):
        stop = threading.Event()
        first = threading.Event()
        snapshots = []

        def on_snapshot(snapshot):
            snapshots.append(snapshot)
            first.set()
            if len(snapshots) == 2:
                stop.set()

        controller = _controller(events, on_snapshot=on_snapshot)
        thread = threading.Thread(target=controller.run, args=(stop,), daemon=True)
        thread.start()
        assert first.wait(5)

        controller.request_manual_refresh()
        thread.join(5)

        assert not thread.is_alive()
        assert controller.state.manual_refresh_count == 1


class TestManualRefresh:
    """Test manual refresh rate limiting."""

    def test_backoff_sequence(self, events):
        controller = _controller(events)
        t = NOW

        assert controller.manual_refresh(t) is not None
        assert controller.manual_refresh(t + timedelta(milliseconds=500)) is None

        t += timedelta(seconds=1)
        assert controller.manual_refresh(t) is not None
        t += timedelta(seconds=1)
        assert controller.manual_refresh(t) is None

        t += timedelta(seconds=1)
        assert controller.manual_refresh(t) is not None

    def test_wait_reported(self, events):
        controller = _controller(events)
        controller.manual_refresh(NOW)

        allowed, wait = controller.check_manual_refresh(NOW + timedelta(milliseconds=250))

        assert not allowed
        assert wait == timedelta(milliseconds=750)

    def test_backoff_capped(self, events):
        controller = _controller(events)
        controller.state.last_manual_refresh = NOW
        controller.state.manual_refresh_count = 40

        allowed, wait = controller.check_manual_refresh(NOW + timedelta(seconds=20))

        assert not allowed
        assert wait <= timedelta(seconds=60)

    def test_backoff_resets_after_quiet_period(self, events):
        controller = _controller(events)
        controller.state.last_manual_refresh = NOW
        controller.state.manual_refresh_count = 10

        assert controller.manual_refresh(NOW + timedelta(seconds=30)) is not None
        assert controller.state.manual_refresh_count == 1

    def test_manual_refresh_forces_poll(self, events, api_client):
        controller = _controller(events, api_client)
        controller.refresh(NOW)

        controller.manual_refresh(NOW + timedelta(seconds=5))

        assert api_client.fetch_usage.call_count == 2
