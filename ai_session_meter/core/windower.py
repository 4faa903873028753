"""
Session windowing.

Partitions a chronological event stream into fixed-duration windows and
inserts explicit gap markers for long silences.

Window rules:
1. A window opens at the first event's timestamp floored to the hour (UTC)
2. Events strictly before the window end join the current window
3. A silence strictly longer than one window duration emits a gap window
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from ai_session_meter.data.models import UsageEvent, normalise_model_name

SESSION_DURATION = timedelta(hours=5)
GAP_THRESHOLD = SESSION_DURATION


@dataclass(frozen=True)
class ModelBreakdown:
    """Per-model token, cost and message sums within one window."""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    cost_usd: float = 0.0
    message_count: int = 0

    @property
    def display_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def total_tokens(self) -> int:
        return (self.input_tokens + self.output_tokens
                + self.cache_creation_tokens + self.cache_read_tokens)

    def add(self, event: UsageEvent) -> "ModelBreakdown":
        """Return a new breakdown including the given event."""
        return ModelBreakdown(
            input_tokens=self.input_tokens + event.input_tokens,
            output_tokens=self.output_tokens + event.output_tokens,
            cache_creation_tokens=self.cache_creation_tokens + event.cache_creation_tokens,
            cache_read_tokens=self.cache_read_tokens + event.cache_read_tokens,
            cost_usd=self.cost_usd + event.cost_usd,
            message_count=self.message_count + 1,
        )


@dataclass(frozen=True)
class Window:
    """A fixed-duration usage window, or a gap marker between windows.

    Windows are rebuilt from the full event list on every refresh and are
    never mutated; classification produces updated copies.
    """
    id: str
    start: datetime
    end: datetime
    events: Tuple[UsageEvent, ...] = ()
    actual_end: Optional[datetime] = None
    display_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0
    message_count: int = 0
    per_model: Dict[str, ModelBreakdown] = field(default_factory=dict)
    is_active: bool = False
    is_gap: bool = False

    def __post_init__(self):
        """Validate window bounds and gap contents."""
        if self.end < self.start:
            raise ValueError("window end must not be before start")
        if self.is_gap and self.events:
            raise ValueError("gap windows cannot contain events")

    @property
    def duration(self) -> timedelta:
        """Effective duration: up to the actual end once closed."""
        if self.actual_end is not None:
            return self.actual_end - self.start
        return self.end - self.start

    def elapsed(self, now: datetime) -> timedelta:
        """Time elapsed within this window at ``now``."""
        if now > self.end:
            return self.duration
        if now < self.start:
            return timedelta(0)
        return now - self.start

    def remaining(self, now: datetime) -> timedelta:
        """Time left before the nominal end at ``now``."""
        if now > self.end:
            return timedelta(0)
        if now < self.start:
            return self.duration
        return self.end - now

    def progress(self, now: datetime) -> float:
        """Progress through the window as a percentage (0-100)."""
        total = self.duration.total_seconds()
        if total <= 0:
            return 0.0
        return min(self.elapsed(now).total_seconds() / total * 100, 100.0)


def floor_to_hour(timestamp: datetime) -> datetime:
    """Round a timestamp down to the start of its UTC hour."""
    return timestamp.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def build_windows(
    events: Sequence[UsageEvent],
    duration: timedelta = SESSION_DURATION,
) -> List[Window]:
    """Partition chronologically sorted events into windows.

    Activity at 12:52 opens a window at 12:00; an event at exactly the
    window end opens the next window. A gap marker is emitted only when the
    silence after a window's end is strictly longer than ``duration``.

    Args:
        events: Usage events sorted ascending by timestamp
        duration: Nominal window length

    Returns:
        Windows and gap markers in chronological order (empty for no events)
    """
    windows: List[Window] = []
    current_start: Optional[datetime] = None
    current_events: List[UsageEvent] = []

    for event in events:
        if current_start is not None:
            current_end = current_start + duration
            if event.timestamp < current_end:
                current_events.append(event)
                continue

            windows.append(_session_window(current_start, duration, current_events))
            if event.timestamp - current_end > duration:
                windows.append(_gap_window(current_end, event.timestamp))

        current_start = floor_to_hour(event.timestamp)
        current_events = [event]

    if current_start is not None:
        windows.append(_session_window(current_start, duration, current_events))

    return windows


def _session_window(start: datetime, duration: timedelta, events: List[UsageEvent]) -> Window:
    """Aggregate one window's events into an immutable Window."""
    per_model: Dict[str, ModelBreakdown] = {}
    display_tokens = 0
    total_tokens = 0
    cost_usd = 0.0

    for event in events:
        display_tokens += event.display_tokens
        total_tokens += event.total_tokens
        cost_usd += event.cost_usd
        model = normalise_model_name(event.model)
        per_model[model] = per_model.get(model, ModelBreakdown()).add(event)

    return Window(
        id=f"session_{int(start.timestamp())}",
        start=start,
        end=start + duration,
        events=tuple(events),
        display_tokens=display_tokens,
        total_tokens=total_tokens,
        cost_usd=cost_usd,
        message_count=len(events),
        per_model=per_model,
    )


def _gap_window(start: datetime, end: datetime) -> Window:
    return Window(
        id=f"gap_{int(start.timestamp())}",
        start=start,
        end=end,
        is_gap=True,
    )
