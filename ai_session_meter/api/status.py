"""
Status document for the local HTTP endpoint.

Serialises a UsageSnapshot into the compact JSON consumed by small
dashboards and displays. Sections without data are omitted.
"""

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel

from ai_session_meter.core.depletion import DepletionForecast
from ai_session_meter.core.limits import WeeklyHours, get_weekly_hours
from ai_session_meter.core.snapshot import UsageSnapshot
from ai_session_meter.core.windower import Window
from ai_session_meter.data.models import ExternalUtilization


class WeeklyModelSection(BaseModel):
    utilization_pct: float
    used_hours: float
    limit_hours: float
    resets_at: str
    resets_in_seconds: int


class WeeklySection(BaseModel):
    utilization_pct: float
    resets_at: str
    resets_in_seconds: int
    sonnet: Optional[WeeklyModelSection] = None
    opus: Optional[WeeklyModelSection] = None


class ModelShare(BaseModel):
    model: str
    cost_pct: float


class SessionSection(BaseModel):
    utilization_pct: float
    resets_at: str
    resets_in_seconds: int
    elapsed_seconds: int
    total_seconds: int
    remaining_seconds: int
    remaining_pct: float
    cost_usd: float
    message_count: int
    model_distribution: List[ModelShare] = []


class BurnRateSection(BaseModel):
    tokens_per_min: float
    cost_per_min_usd: float
    cost_per_hour_usd: float


class PredictionSection(BaseModel):
    session_limit_at: Optional[str] = None
    session_limit_in_seconds: Optional[int] = None
    session_will_hit_limit: bool = False
    weekly_limit_at: Optional[str] = None
    weekly_limit_in_seconds: Optional[int] = None
    weekly_will_hit_limit: bool = False


class StatusDocument(BaseModel):
    """Top-level response body for ``GET /api/status``."""
    plan: str
    server_time: str
    data_age_seconds: int
    weekly: Optional[WeeklySection] = None
    session: Optional[SessionSection] = None
    burn_rate: Optional[BurnRateSection] = None
    prediction: Optional[PredictionSection] = None


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _seconds(value) -> int:
    return max(0, int(value.total_seconds()))


def build_status_document(snapshot: UsageSnapshot, now: datetime) -> StatusDocument:
    """Assemble the status document for a snapshot at ``now``."""
    doc = StatusDocument(
        plan=snapshot.plan.lower(),
        server_time=_iso(now),
        data_age_seconds=_seconds(now - snapshot.refreshed_at),
    )

    weekly = snapshot.weekly_utilization
    if weekly is not None:
        doc.weekly = WeeklySection(
            utilization_pct=weekly.percent_used,
            resets_at=_iso(weekly.resets_at),
            resets_in_seconds=_seconds(weekly.resets_at - now),
        )
        _fill_model_sections(doc.weekly, snapshot, now)

    current = snapshot.current_window
    if current is not None and not current.is_gap:
        doc.session = _session_section(snapshot, current, now)

    cost_per_min = snapshot.window_cost_rate if current is not None and current.is_active else 0.0
    doc.burn_rate = BurnRateSection(
        tokens_per_min=snapshot.velocity.tokens_per_minute,
        cost_per_min_usd=cost_per_min,
        cost_per_hour_usd=cost_per_min * 60,
    )

    prediction = PredictionSection()
    _fill_forecast(prediction, "session", snapshot.session_forecast, now)
    if snapshot.weekly_utilization is not None:
        _fill_forecast(prediction, "weekly", snapshot.weekly_forecast, now)
    doc.prediction = prediction

    return doc


def render_status(snapshot: UsageSnapshot, now: datetime) -> bytes:
    """Serialise the status document as compact JSON, omitting null fields."""
    return build_status_document(snapshot, now).model_dump_json(exclude_none=True).encode("utf-8")


def _session_section(snapshot: UsageSnapshot, window: Window, now: datetime) -> SessionSection:
    # Prefer the externally tracked percentage; estimate from cost otherwise.
    if snapshot.session_utilization is not None:
        utilization = snapshot.session_utilization.percent_used
    elif snapshot.budget.cost_limit_usd > 0:
        utilization = window.cost_usd / snapshot.budget.cost_limit_usd * 100
    else:
        utilization = 0.0

    total = window.duration
    remaining_pct = 0.0
    if total.total_seconds() > 0:
        remaining_pct = max(0.0, 100 - window.progress(now))

    distribution = [] if snapshot.session_is_stale else _model_distribution(window)
    remaining = _seconds(window.remaining(now))

    return SessionSection(
        utilization_pct=utilization,
        resets_at=_iso(window.end),
        resets_in_seconds=remaining,
        elapsed_seconds=_seconds(window.elapsed(now)),
        total_seconds=_seconds(total),
        remaining_seconds=remaining,
        remaining_pct=remaining_pct,
        cost_usd=window.cost_usd,
        message_count=window.message_count,
        model_distribution=distribution,
    )


def _model_distribution(window: Window) -> List[ModelShare]:
    if not window.per_model or window.cost_usd <= 0:
        return []
    shares = [
        ModelShare(model=model, cost_pct=stats.cost_usd / window.cost_usd * 100)
        for model, stats in window.per_model.items()
    ]
    return sorted(shares, key=lambda s: s.cost_pct, reverse=True)


def _fill_forecast(prediction: PredictionSection, prefix: str, forecast: DepletionForecast, now: datetime) -> None:
    if forecast.is_defined:
        setattr(prediction, f"{prefix}_limit_at", _iso(forecast.depletes_at))
        setattr(prediction, f"{prefix}_limit_in_seconds", forecast.seconds_until(now))
    setattr(prediction, f"{prefix}_will_hit_limit", forecast.will_exceed_before_reset)


def _fill_model_sections(section: WeeklySection, snapshot: UsageSnapshot, now: datetime) -> None:
    external = snapshot.external
    hours = get_weekly_hours(snapshot.plan.lower())
    if external is None or hours is None:
        return

    # Sonnet hours only mean something while the plan has an allowance
    if external.weekly_sonnet is not None and hours.sonnet_hours > 0:
        section.sonnet = _model_section(external.weekly_sonnet, "sonnet", hours, now)
    if external.weekly_opus is not None:
        section.opus = _model_section(external.weekly_opus, "opus", hours, now)


def _model_section(period: ExternalUtilization, model: str, hours: WeeklyHours, now: datetime) -> WeeklyModelSection:
    return WeeklyModelSection(
        utilization_pct=period.percent_used,
        used_hours=hours.used_hours(model, period.percent_used),
        limit_hours=hours.limit_for(model),
        resets_at=_iso(period.resets_at),
        resets_in_seconds=_seconds(period.resets_at - now),
    )
