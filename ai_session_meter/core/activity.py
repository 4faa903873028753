"""
Window activity classification.

Marks windows active or closed relative to a reference time and freezes a
closed window's actual end at its last event.
"""

from dataclasses import replace
from datetime import datetime
from typing import List, Optional, Sequence

from .windower import Window


def classify_windows(windows: Sequence[Window], now: datetime) -> List[Window]:
    """Mark each window active or closed at ``now``.

    A window is active iff ``start < now < end``. A closed, non-gap window
    with events gets ``actual_end`` set once, to its last event's timestamp.
    Gap windows pass through untouched.

    Args:
        windows: Windows as produced by ``build_windows``
        now: Reference time

    Returns:
        New list of classified windows (inputs are not modified)
    """
    classified = []
    for window in windows:
        if window.is_gap:
            classified.append(window)
            continue

        is_active = window.start < now < window.end
        actual_end = window.actual_end
        if not is_active and actual_end is None and window.events:
            actual_end = window.events[-1].timestamp

        classified.append(replace(window, is_active=is_active, actual_end=actual_end))
    return classified


def get_active_window(windows: Sequence[Window]) -> Optional[Window]:
    """Return the first active non-gap window, if any."""
    for window in windows:
        if window.is_active and not window.is_gap:
            return window
    return None


def get_most_recent_window(windows: Sequence[Window]) -> Optional[Window]:
    """Return the last non-gap window, if any."""
    for window in reversed(windows):
        if not window.is_gap:
            return window
    return None


def get_current_window(windows: Sequence[Window]) -> Optional[Window]:
    """Return the active window, falling back to the most recent one."""
    return get_active_window(windows) or get_most_recent_window(windows)
