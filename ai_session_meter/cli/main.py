"""
CLI interface for AI Session Meter.

Commands:
- status: one refresh, printed once
- watch: live refresh loop, optionally serving the status endpoint
- serve: headless refresh loop serving the status endpoint
- report: daily, weekly or monthly usage totals
"""

import logging
import os
import signal
import sys
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import typer
import yaml
from rich.console import Console
from rich.table import Table

from ai_session_meter.api.server import SnapshotStore, create_app, start_server
from ai_session_meter.api.status import render_status
from ai_session_meter.config.loader import MeterConfig, load_config, parse_plan
from ai_session_meter.core.depletion import DepletionForecast
from ai_session_meter.core.limits import LimitLevel, utilization_warning_level
from ai_session_meter.core.reports import ReportPeriod, aggregate_report
from ai_session_meter.core.snapshot import UsageSnapshot
from ai_session_meter.data.reader import UsageReader
from ai_session_meter.oauth.client import CredentialsError, UsageApiClient, load_credentials
from ai_session_meter.runtime.refresher import RefreshController, utc_now

app = typer.Typer()
console = Console()
logger = logging.getLogger(__name__)

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

# Enough history for the weekly view and P90 inference
MIN_HOURS_TO_LOAD = 168

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

_LEVEL_STYLES = {
    LimitLevel.OK: "green",
    LimitLevel.APPROACHING: "yellow",
    LimitLevel.CRITICAL: "red",
}


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """AI Session Meter CLI."""
    if ctx.invoked_subcommand is None:
        console.print("AI Session Meter - Use --help to see available commands")


def _load_settings(
    config_path: Optional[str],
    plan: Optional[str] = None,
    data_path: Optional[str] = None,
    interval: Optional[int] = None,
) -> MeterConfig:
    """Load config, apply CLI overrides and configure logging."""
    config = load_config(config_path, environ=os.environ)
    overrides = {}
    if plan:
        overrides["plan"] = parse_plan(plan)
    if data_path:
        overrides["data_path"] = data_path
    if interval is not None:
        overrides["refresh_interval"] = interval
    if overrides:
        config = replace(config, **overrides)

    logging.basicConfig(level=getattr(logging, config.log_level), format=LOG_FORMAT)
    return config


def _api_overrides(
    config: MeterConfig,
    enabled: Optional[bool],
    port: Optional[int],
    bind: Optional[str],
    token: Optional[str],
    allow: Optional[str],
) -> MeterConfig:
    api = config.api
    if enabled is not None:
        api = replace(api, enabled=enabled)
    if port is not None:
        api = replace(api, port=port)
    if bind:
        api = replace(api, bind=bind)
    if token:
        api = replace(api, token=token)
    if allow:
        api = replace(api, allow=tuple(c.strip() for c in allow.split(",") if c.strip()))
    return replace(config, api=api)


def _make_api_client(offline: bool) -> Optional[UsageApiClient]:
    if offline:
        return None
    try:
        return UsageApiClient(load_credentials())
    except CredentialsError as e:
        logger.warning("Usage API unavailable, using log data only: %s", e)
        return None


def _build_controller(
    config: MeterConfig,
    offline: bool,
    on_snapshot: Optional[Callable[[UsageSnapshot], None]] = None,
) -> RefreshController:
    reader = UsageReader(config.data_path)
    hours_to_load = max(config.hours_back, MIN_HOURS_TO_LOAD)

    return RefreshController(
        load_events=lambda now: reader.load_events(now, hours_to_load),
        options=config.snapshot_options(),
        interval=timedelta(seconds=config.refresh_interval),
        api_client=_make_api_client(offline),
        on_snapshot=on_snapshot,
    )


@app.command()
def status(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config YAML"),
    plan: Optional[str] = typer.Option(None, "--plan", "-p", help="Plan: pro, max5, max20 or custom"),
    data_path: Optional[str] = typer.Option(None, "--data-path", "-d", help="Usage log directory"),
    offline: bool = typer.Option(False, "--offline", help="Do not call the usage API"),
):
    """Show the current session, burn rate and predictions once."""
    try:
        config = _load_settings(config_path, plan, data_path)
        controller = _build_controller(config, offline)
        snapshot = controller.refresh()
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    _display_snapshot(snapshot, utc_now())
    sys.exit(EXIT_CODE_PASS)


@app.command()
def watch(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config YAML"),
    plan: Optional[str] = typer.Option(None, "--plan", "-p", help="Plan: pro, max5, max20 or custom"),
    data_path: Optional[str] = typer.Option(None, "--data-path", "-d", help="Usage log directory"),
    interval: Optional[int] = typer.Option(None, "--interval", "-i", help="Refresh interval in seconds (1-60)"),
    offline: bool = typer.Option(False, "--offline", help="Do not call the usage API"),
    api: Optional[bool] = typer.Option(None, "--api/--no-api", help="Serve the status endpoint"),
    api_port: Optional[int] = typer.Option(None, "--api-port", help="Status endpoint port"),
    api_bind: Optional[str] = typer.Option(None, "--api-bind", help="Status endpoint bind address"),
    api_token: Optional[str] = typer.Option(None, "--api-token", help="Bearer token for the status endpoint"),
    api_allow: Optional[str] = typer.Option(None, "--api-allow", help="Comma-separated CIDR allowlist"),
):
    """Refresh continuously and redraw the dashboard until interrupted."""
    try:
        config = _load_settings(config_path, plan, data_path, interval)
        config = _api_overrides(config, api, api_port, api_bind, api_token, api_allow)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    store = SnapshotStore()

    def on_snapshot(snapshot: UsageSnapshot) -> None:
        now = utc_now()
        store.publish(render_status(snapshot, now))
        console.clear()
        _display_snapshot(snapshot, now)
        if hasattr(signal, "SIGUSR1"):
            console.print(f"\n[dim]Ctrl+C to quit, kill -USR1 {os.getpid()} to refresh now[/]")

    _run_loop(config, offline, store, on_snapshot, serve_api=config.api.enabled)


@app.command()
def serve(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config YAML"),
    plan: Optional[str] = typer.Option(None, "--plan", "-p", help="Plan: pro, max5, max20 or custom"),
    data_path: Optional[str] = typer.Option(None, "--data-path", "-d", help="Usage log directory"),
    interval: Optional[int] = typer.Option(None, "--interval", "-i", help="Refresh interval in seconds (1-60)"),
    offline: bool = typer.Option(False, "--offline", help="Do not call the usage API"),
    api_port: Optional[int] = typer.Option(None, "--api-port", help="Status endpoint port"),
    api_bind: Optional[str] = typer.Option(None, "--api-bind", help="Status endpoint bind address"),
    api_token: Optional[str] = typer.Option(None, "--api-token", help="Bearer token for the status endpoint"),
    api_allow: Optional[str] = typer.Option(None, "--api-allow", help="Comma-separated CIDR allowlist"),
):
    """Run headless, serving only the status endpoint."""
    try:
        config = _load_settings(config_path, plan, data_path, interval)
        config = _api_overrides(config, True, api_port, api_bind, api_token, api_allow)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    store = SnapshotStore()
    _run_loop(config, offline, store, lambda s: store.publish(render_status(s, utc_now())), serve_api=True)


def _install_refresh_signal(controller: RefreshController) -> Callable[[], None]:
    """Route SIGUSR1 to a manual refresh; returns a callable restoring the old handler."""
    if not hasattr(signal, "SIGUSR1"):
        return lambda: None

    def handler(signum, frame):
        controller.request_manual_refresh()

    previous = signal.signal(signal.SIGUSR1, handler)
    return lambda: signal.signal(signal.SIGUSR1, previous)


def _run_loop(
    config: MeterConfig,
    offline: bool,
    store: SnapshotStore,
    on_snapshot: Callable[[UsageSnapshot], None],
    serve_api: bool,
) -> None:
    controller = _build_controller(config, offline, on_snapshot)
    server = start_server(create_app(store, config.api), config.api) if serve_api else None
    restore_signal = _install_refresh_signal(controller)

    stop = threading.Event()
    try:
        controller.run(stop)
    except KeyboardInterrupt:
        stop.set()
    finally:
        restore_signal()
        if server is not None:
            server.should_exit = True
    sys.exit(EXIT_CODE_PASS)


@app.command()
def report(
    period_name: str = typer.Argument("daily", metavar="PERIOD", help="daily, weekly or monthly"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config YAML"),
    data_path: Optional[str] = typer.Option(None, "--data-path", "-d", help="Usage log directory"),
    tz: str = typer.Option("UTC", "--tz", help="IANA timezone for period boundaries"),
    hours_back: int = typer.Option(0, "--hours-back", help="Only include recent hours (0 for all)"),
):
    """Summarise token usage and cost per period and model."""
    try:
        period = ReportPeriod(period_name.lower())
        config = _load_settings(config_path, data_path=data_path)
        zone = ZoneInfo(tz)
        events = UsageReader(config.data_path).load_events(utc_now(), hours_back)
    except ZoneInfoNotFoundError:
        console.print(f"[red]Error:[/] unknown timezone: {tz}")
        sys.exit(EXIT_CODE_FAIL)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    stats = aggregate_report(events, period, zone)
    if not stats:
        console.print("\n[bold yellow]No usage data found[/]\n")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"{period.value.capitalize()} usage ({tz})")
    table.add_column("Period")
    table.add_column("Model")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    table.add_column("Cache write", justify="right")
    table.add_column("Cache read", justify="right")
    table.add_column("Messages", justify="right")
    table.add_column("Cost", justify="right")

    total_cost = 0.0
    for entry in stats:
        for model, totals in sorted(entry.models.items()):
            table.add_row(
                entry.key,
                model,
                f"{totals.input_tokens:,}",
                f"{totals.output_tokens:,}",
                f"{totals.cache_creation_tokens:,}",
                f"{totals.cache_read_tokens:,}",
                str(totals.message_count),
                _format_currency(totals.cost_usd),
            )
        total_cost += entry.cost_usd

    console.print(table)
    console.print(f"Total cost: {_format_currency(total_cost)}")
    sys.exit(EXIT_CODE_PASS)


def _format_currency(amount: float) -> str:
    return f"${abs(amount):,.2f}"


def _format_duration(delta: timedelta) -> str:
    minutes = max(0, int(delta.total_seconds() // 60))
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes:02d}m" if hours else f"{minutes}m"


def _format_forecast(forecast: DepletionForecast, now: datetime) -> str:
    if not forecast.is_defined:
        return "n/a"
    local = forecast.depletes_at.astimezone()
    suffix = " (before reset)" if forecast.will_exceed_before_reset else ""
    return f"{local:%H:%M} in {_format_duration(forecast.depletes_at - now)}{suffix}"


def _display_snapshot(snapshot: UsageSnapshot, now: datetime):
    """Display the snapshot as a compact dashboard."""
    console.print(f"\n[bold]AI Session Meter[/bold] - plan {snapshot.budget.name}")
    console.print("-" * 40)

    window = snapshot.current_window
    if not snapshot.has_data or window is None:
        console.print("\n[dim]No usage data found in the selected period.[/]")
        return

    table = Table(show_header=False, box=None)
    table.add_column("Metric", style="bold")
    table.add_column("Value")

    state = "active" if window.is_active else "last session (closed)"
    table.add_row("Session", f"{window.start.astimezone():%H:%M} - {window.end.astimezone():%H:%M} ({state})")
    if window.is_active:
        table.add_row("Resets in", _format_duration(window.remaining(now)))
    table.add_row("Cost", _format_currency(window.cost_usd))
    table.add_row("Messages", str(window.message_count))
    table.add_row("Tokens", f"{window.display_tokens:,}")

    limit = snapshot.limit_status
    if limit.limit_type is not None:
        style = _LEVEL_STYLES[limit.level]
        table.add_row("Limit", f"[{style}]{limit.percent:.1f}% of {limit.limit_type} limit[/]")

    if snapshot.session_utilization is not None:
        pct = snapshot.session_utilization.percent_used
        style = _LEVEL_STYLES[utilization_warning_level(pct)]
        note = " (awaiting fresh data)" if snapshot.session_is_stale else ""
        table.add_row("Session usage", f"[{style}]{pct:.0f}%[/]{note}")
    if snapshot.weekly_utilization is not None:
        pct = snapshot.weekly_utilization.percent_used
        style = _LEVEL_STYLES[utilization_warning_level(pct)]
        table.add_row("Weekly usage", f"[{style}]{pct:.0f}%[/]")
    external = snapshot.external
    if external is not None and external.weekly_sonnet is not None:
        pct = external.weekly_sonnet.percent_used
        style = _LEVEL_STYLES[utilization_warning_level(pct)]
        table.add_row("Weekly Sonnet", f"[{style}]{pct:.0f}%[/]")

    table.add_row("Burn rate", f"{snapshot.velocity.tokens_per_minute:,.0f} tokens/min")
    table.add_row("Cost rate", f"{_format_currency(snapshot.window_cost_rate * 60)}/h")
    table.add_row("Cost limit at", _format_forecast(snapshot.session_forecast, now))
    if snapshot.weekly_utilization is not None:
        table.add_row("Weekly limit at", _format_forecast(snapshot.weekly_forecast, now))
    table.add_row("P90 limit", f"{snapshot.quota.p90_limit:,} tokens ({snapshot.quota.detected_plan})")

    console.print(table)

    if snapshot.tier_mismatch:
        console.print(
            "\n[yellow]Usage regularly exceeds this plan's typical ceiling; "
            "consider a larger plan.[/]"
        )


if __name__ == "__main__":
    app()
