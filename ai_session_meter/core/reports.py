"""
Periodic usage reports.

Aggregates usage events into daily, ISO-weekly or monthly periods per
normalised model name.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from enum import Enum
from typing import Dict, List, Sequence

from ai_session_meter.data.models import UsageEvent, normalise_model_name


class ReportPeriod(Enum):
    """Granularity of a usage report."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass
class ModelTotals:
    """Token and cost totals for one model within one period."""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0
    message_count: int = 0


@dataclass
class PeriodStats:
    """Aggregated statistics for one reporting period."""
    key: str
    period_start: datetime
    models: Dict[str, ModelTotals] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return sum(m.total_tokens for m in self.models.values())

    @property
    def cost_usd(self) -> float:
        return sum(m.cost_usd for m in self.models.values())

    @property
    def message_count(self) -> int:
        return sum(m.message_count for m in self.models.values())


def aggregate_report(
    events: Sequence[UsageEvent],
    period: ReportPeriod,
    tz: tzinfo,
) -> List[PeriodStats]:
    """Group events into periods of the local calendar in ``tz``.

    Weeks follow ISO numbering and start on Monday.

    Args:
        events: Usage events in any order
        period: Report granularity
        tz: Timezone used to decide period boundaries

    Returns:
        Period statistics sorted by period start (oldest first)
    """
    stats: Dict[str, PeriodStats] = {}

    for event in events:
        local = event.timestamp.astimezone(tz)
        key, start = _period_key(local, period, tz)

        if key not in stats:
            stats[key] = PeriodStats(key=key, period_start=start)
        totals = stats[key].models.setdefault(normalise_model_name(event.model), ModelTotals())

        totals.input_tokens += event.input_tokens
        totals.output_tokens += event.output_tokens
        totals.cache_creation_tokens += event.cache_creation_tokens
        totals.cache_read_tokens += event.cache_read_tokens
        totals.total_tokens += event.total_tokens
        totals.cost_usd += event.cost_usd
        totals.message_count += 1

    return sorted(stats.values(), key=lambda s: s.period_start)


def _period_key(local: datetime, period: ReportPeriod, tz: tzinfo):
    if period == ReportPeriod.DAILY:
        start = datetime(local.year, local.month, local.day, tzinfo=tz)
        return local.strftime("%Y-%m-%d"), start
    if period == ReportPeriod.WEEKLY:
        year, week, weekday = local.isocalendar()
        day = datetime(local.year, local.month, local.day, tzinfo=tz)
        return f"{year}-W{week:02d}", day - timedelta(days=weekday - 1)
    start = datetime(local.year, local.month, 1, tzinfo=tz)
    return local.strftime("%Y-%m"), start
