"""
Refresh controller.

Decides when to recompute the snapshot and when to poll the usage API.

Triggers:
- A periodic tick every ``interval``
- A clock jump (tick gap over twice the interval, e.g. after sleep/wake)
  forces a fresh API poll
- Manual refreshes, rate limited with a doubling backoff
- A safety net polling the API at least every 15 minutes for weekly data
  while no session is active and the 60s cadence is paused

A permanent API failure disables polling; the snapshot then degrades to
log data only. Polling is retried after 5 minutes unless the failure needs
user action (expired token, missing credentials).
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from ai_session_meter.core.snapshot import SnapshotOptions, UsageSnapshot, build_snapshot
from ai_session_meter.data.models import ExternalUsage, UsageEvent
from ai_session_meter.oauth.client import (
    CredentialsError,
    TokenExpiredError,
    UsageApiClient,
    UsageApiError,
    is_transient_error,
)

logger = logging.getLogger(__name__)

API_POLL_INTERVAL = timedelta(seconds=60)
WEEKLY_SAFETY_NET = timedelta(minutes=15)
API_RETRY_AFTER = timedelta(minutes=5)
MANUAL_BACKOFF_RESET = timedelta(seconds=30)
MANUAL_BACKOFF_CAP = timedelta(seconds=60)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RefreshState:
    """Mutable bookkeeping owned by a single RefreshController."""
    last_tick: Optional[datetime] = None
    last_api_fetch: Optional[datetime] = None
    last_weekly_fetch: Optional[datetime] = None
    last_api_error: Optional[str] = None
    api_disabled: bool = False
    api_disable_reason: Optional[str] = None
    api_disabled_at: Optional[datetime] = None
    api_retryable: bool = False
    last_manual_refresh: Optional[datetime] = None
    manual_refresh_count: int = 0
    clock_jumps: int = 0


class RefreshController:
    """Owns the refresh cycle: load events, poll the API, rebuild the snapshot."""

    def __init__(
        self,
        load_events: Callable[[datetime], List[UsageEvent]],
        options: SnapshotOptions,
        interval: timedelta = timedelta(seconds=30),
        api_client: Optional[UsageApiClient] = None,
        on_snapshot: Optional[Callable[[UsageSnapshot], None]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the controller.

        Args:
            load_events: Returns the full sorted event list for a reference time
            options: Snapshot options (plan, budget, window parameters)
            interval: Periodic refresh interval
            api_client: Usage API client, or None to run on log data only
            on_snapshot: Called with every new snapshot (e.g. to publish it)
            clock: Source of the current time
        """
        self.load_events = load_events
        self.options = options
        self.interval = interval
        self.api_client = api_client
        self.on_snapshot = on_snapshot
        self.clock = clock
        self.state = RefreshState()
        self.snapshot: Optional[UsageSnapshot] = None
        self._wake = threading.Event()
        self._manual_pending = False

    def tick(self, now: Optional[datetime] = None) -> UsageSnapshot:
        """Handle a periodic timer tick."""
        now = now or self.clock()
        force = False
        if self.state.last_tick is not None and now - self.state.last_tick > self.interval * 2:
            self.state.clock_jumps += 1
            logger.info("Clock jump of %s detected, forcing usage API refresh", now - self.state.last_tick)
            force = True
        self.state.last_tick = now
        return self.refresh(now, force_api=force)

    def check_manual_refresh(self, now: datetime) -> Tuple[bool, timedelta]:
        """Check whether a manual refresh is allowed at ``now``.

        The required gap doubles every two requests (1s, 1s, 2s, 2s, 4s, ...)
        up to 60s, and resets after 30s without a manual refresh.

        Returns:
            (allowed, wait) where ``wait`` is how long until it is allowed
        """
        last = self.state.last_manual_refresh
        count = self.state.manual_refresh_count
        if last is not None and now - last >= MANUAL_BACKOFF_RESET:
            count = 0

        required = min(timedelta(seconds=2 ** (count // 2)), MANUAL_BACKOFF_CAP)
        if last is not None and now - last < required:
            return False, required - (now - last)
        return True, timedelta(0)

    def manual_refresh(self, now: Optional[datetime] = None) -> Optional[UsageSnapshot]:
        """Refresh on user request, unless rate limited.

        Returns:
            The new snapshot, or None if the request was rate limited
        """
        now = now or self.clock()
        allowed, wait = self.check_manual_refresh(now)
        if not allowed:
            logger.info("Manual refresh rate limited, retry in %.0fs", wait.total_seconds())
            return None

        last = self.state.last_manual_refresh
        if last is not None and now - last >= MANUAL_BACKOFF_RESET:
            self.state.manual_refresh_count = 0
        self.state.last_manual_refresh = now
        self.state.manual_refresh_count += 1
        self.state.last_tick = now
        return self.refresh(now, force_api=True)

    def request_manual_refresh(self) -> None:
        """Ask a running loop for a manual refresh; safe from signal handlers."""
        self._manual_pending = True
        self._wake.set()

    def wake(self) -> None:
        """Cut the current wait short, e.g. after setting the stop event."""
        self._wake.set()

    def should_poll_api(self, now: datetime, force: bool = False) -> bool:
        """Decide whether this cycle should call the usage API.

        The 60s cadence only runs while a session is active; otherwise the
        weekly safety net keeps the long-budget data at most 15 minutes old.
        """
        if self.api_client is None or self.state.api_disabled:
            return False
        if force or self.state.last_api_fetch is None:
            return True
        if self._session_active() and now - self.state.last_api_fetch >= API_POLL_INTERVAL:
            return True
        last_weekly = self.state.last_weekly_fetch
        if last_weekly is not None and now - last_weekly >= WEEKLY_SAFETY_NET:
            return True
        return self._cached_session_outdated(now)

    def should_retry_api(self, now: datetime) -> bool:
        """True once a disabled API has waited long enough to be retried."""
        if not self.state.api_disabled or not self.state.api_retryable:
            return False
        return now - self.state.api_disabled_at >= API_RETRY_AFTER

    def refresh(self, now: Optional[datetime] = None, force_api: bool = False) -> UsageSnapshot:
        """Run one refresh cycle and publish the resulting snapshot."""
        now = now or self.clock()
        if self.should_retry_api(now):
            logger.info("Re-enabling usage API after: %s", self.state.api_disable_reason)
            self._reenable_api()
        external = self._poll_api(now) if self.should_poll_api(now, force_api) else None
        events = self.load_events(now)

        self.snapshot = build_snapshot(
            self.snapshot,
            events,
            external,
            now,
            self.options,
            keep_previous_external=not self.state.api_disabled,
        )
        if self.on_snapshot is not None:
            self.on_snapshot(self.snapshot)
        return self.snapshot

    def run(self, stop: threading.Event) -> None:
        """Tick every ``interval`` until ``stop`` is set.

        A pending manual refresh request replaces the next tick.
        """
        logger.info("Refresh loop started (interval=%ss)", self.interval.total_seconds())
        while not stop.is_set():
            manual, self._manual_pending = self._manual_pending, False
            try:
                if manual:
                    self.manual_refresh()
                else:
                    self.tick()
            except OSError as e:
                logger.error("Refresh failed: %s", e)
            if stop.is_set():
                break
            self._wake.wait(self.interval.total_seconds())
            self._wake.clear()
        logger.info("Refresh loop stopped")

    def _poll_api(self, now: datetime) -> Optional[ExternalUsage]:
        try:
            usage = self.api_client.fetch_usage(now)
        except UsageApiError as e:
            self.state.last_api_error = str(e)
            if is_transient_error(e):
                logger.warning("Usage API unavailable, will retry: %s", e)
            else:
                self._disable_api(e, now)
            return None

        self.state.last_api_fetch = now
        if usage.weekly is not None:
            self.state.last_weekly_fetch = now
        self.state.last_api_error = None
        return usage

    def _disable_api(self, err: UsageApiError, now: datetime) -> None:
        self.state.api_disabled = True
        self.state.api_disable_reason = str(err)
        self.state.api_disabled_at = now
        self.state.api_retryable = not isinstance(err, (TokenExpiredError, CredentialsError))
        if self.state.api_retryable:
            logger.warning("Usage API disabled, retrying in %s (falling back to log data): %s", API_RETRY_AFTER, err)
        else:
            logger.warning("Usage API disabled until re-authentication (falling back to log data): %s", err)

    def _reenable_api(self) -> None:
        self.state.api_disabled = False
        self.state.api_disable_reason = None
        self.state.api_disabled_at = None
        self.state.api_retryable = False

    def _session_active(self) -> bool:
        if self.snapshot is None:
            return True
        window = self.snapshot.current_window
        return window is not None and window.is_active

    def _cached_session_outdated(self, now: datetime) -> bool:
        """True once the cached session period has rolled over or looks stale."""
        if self.snapshot is None or self.snapshot.external is None:
            return False
        session = self.snapshot.external.session
        if session is None:
            return False
        return session.resets_at <= now or self.snapshot.session_is_stale
