"""
CLI interface for TTS Cost Guard.

Provides command-line access to the flags, the throttle, the provider
selector and the budget monitor.
"""

import dataclasses
import sqlite3
import sys
from typing import Any, Dict, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from tts_cost_guard.config.loader import GuardSettings, configure_logging, load_settings
from tts_cost_guard.core.errors import MonitorError
from tts_cost_guard.core.flags import ELEVEN_DISABLED, HARD_CAP_REACHED, MANUAL_OVERRIDE, FlagStore
from tts_cost_guard.core.metrics import UsageWindow
from tts_cost_guard.core.monitor import BudgetMonitor
from tts_cost_guard.core.selector import ELEVENLABS, OPENAI, SYNTH_PROVIDERS, resolve_provider
from tts_cost_guard.core.throttle import check_throttle
from tts_cost_guard.notify.email import build_email_sender
from tts_cost_guard.notify.slack import SlackNotifier
from tts_cost_guard.storage.models import AlertRecipient
from tts_cost_guard.storage.repository import get_repository, initialize_schema, utc_now

app = typer.Typer()
recipients_app = typer.Typer(help="Manage alert e-mail recipients.")
app.add_typer(recipients_app, name="recipients")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _settings(ctx: typer.Context) -> GuardSettings:
    return ctx.obj


def _store(settings: GuardSettings) -> FlagStore:
    return FlagStore(get_repository(settings.db_path), cache_ttl=settings.flags.cache_ttl_seconds)


def _fail(message: str, error: Exception) -> None:
    if isinstance(error, sqlite3.OperationalError) and "no such table" in str(error).lower():
        console.print("[red]Database is not initialized.[/] Run `tts-cost-guard init` first.")
    else:
        console.print(f"[red]{message}:[/] {error}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(None, "--db", help="Path to the SQLite database"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a YAML settings file"),
):
    """TTS Cost Guard CLI."""
    try:
        settings = load_settings(config)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid settings:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if db:
        settings = dataclasses.replace(settings, db_path=db)
    configure_logging(settings.log_level)
    ctx.obj = settings

    if ctx.invoked_subcommand is None:
        console.print("TTS Cost Guard - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the TTS Cost Guard database."""
    settings = _settings(ctx)
    try:
        initialize_schema(settings.db_path)
    except Exception as e:
        _fail("Error initializing database", e)
    console.print(f"[green]✓[/] Database initialized at {settings.db_path}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def status(ctx: typer.Context):
    """Show usage over the last 24 hours against the daily cap."""
    settings = _settings(ctx)
    store = _store(settings)
    try:
        window = UsageWindow.load(store.repository, utc_now())
        cap = store.get_config("daily_hard_cap_usd")
        flags = store.get_flags()
    except Exception as e:
        _fail("Error reading status", e)

    table = Table(title="TTS usage (last 24h)")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("ElevenLabs calls", str(window.calls(ELEVENLABS)))
    table.add_row("OpenAI calls", str(window.calls(OPENAI)))
    table.add_row("Total cost", _format_currency(window.total_cost))
    table.add_row("Daily cap", f"{_format_currency(cap.get('value', 50))} ({'on' if cap.get('enabled', True) else 'off'})")
    table.add_row("Error rate", f"{window.error_rate:.1f}%")
    console.print(table)

    for key in (MANUAL_OVERRIDE, HARD_CAP_REACHED, ELEVEN_DISABLED):
        value = store.flag_value(flags, key)
        active = value.get("enabled") if key == MANUAL_OVERRIDE else value.get("disabled")
        marker = "[red]ACTIVE[/]" if active else "[green]off[/]"
        console.print(f"{key}: {marker}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def select(
    ctx: typer.Context,
    preferred: str = typer.Option(ELEVENLABS, "--preferred", "-p", help="Provider the caller wants"),
):
    """Show which provider a synthesis request would get right now."""
    if preferred not in SYNTH_PROVIDERS:
        console.print(f"[red]Unknown provider:[/] {preferred} (choose from {', '.join(SYNTH_PROVIDERS)})")
        sys.exit(EXIT_CODE_FAIL)

    result = resolve_provider(_store(_settings(ctx)), preferred)
    if result.failed_open:
        console.print(f"[yellow]Flags unreadable, failing open:[/] {result.error}")
    console.print_json(data=result.config.to_dict())
    sys.exit(EXIT_CODE_PASS)


@app.command()
def throttle(ctx: typer.Context, user_id: str = typer.Argument(..., help="User to check")):
    """Check and count one request for USER_ID. Exits 1 when throttled."""
    settings = _settings(ctx)
    store = _store(settings)
    decision = check_throttle(store, store.repository, user_id)
    console.print_json(data=decision.to_dict())
    sys.exit(EXIT_CODE_PASS if decision.allowed else EXIT_CODE_FAIL)


@app.command("check-budget")
def check_budget(ctx: typer.Context):
    """Run the budget monitor once."""
    settings = _settings(ctx)
    store = _store(settings)
    monitor = BudgetMonitor(
        store.repository,
        store,
        slack=SlackNotifier(timeout=settings.notifications.slack_timeout_seconds),
        email_sender=build_email_sender(settings.notifications),
        dashboard_url=settings.notifications.dashboard_url,
        lease_ttl=settings.monitor.lease_ttl_seconds,
    )
    try:
        summary = monitor.run()
    except MonitorError as e:
        console.print_json(data={"success": False, "error": str(e)})
        sys.exit(EXIT_CODE_FAIL)

    if summary.skipped:
        console.print("[yellow]Another budget check is running; skipped.[/]")
    console.print_json(data=summary.to_dict())
    sys.exit(EXIT_CODE_PASS)


@app.command()
def flags(ctx: typer.Context):
    """List every system flag."""
    repository = get_repository(_settings(ctx).db_path)
    try:
        all_flags = repository.get_flags()
    except Exception as e:
        _fail("Error reading flags", e)

    if not all_flags:
        console.print("[dim]No flags set.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="System flags")
    table.add_column("Flag")
    table.add_column("Value")
    table.add_column("Updated")
    for key in sorted(all_flags):
        flag = all_flags[key]
        updated = flag.updated_at.strftime("%Y-%m-%d %H:%M:%S") if flag.updated_at else "-"
        table.add_row(key, str(flag.flag_value), updated)
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def override(
    ctx: typer.Context,
    provider: Optional[str] = typer.Option(None, "--provider", help="Provider to pin"),
    voice: Optional[str] = typer.Option(None, "--voice", help="Voice to use"),
    bitrate: Optional[int] = typer.Option(None, "--bitrate", help="Bitrate in kbps"),
    clear: bool = typer.Option(False, "--clear", help="Remove the manual override"),
):
    """Pin every request to one provider, or clear the pin."""
    store = _store(_settings(ctx))

    if clear:
        value: Dict[str, Any] = {"enabled": False}
    else:
        if provider not in SYNTH_PROVIDERS:
            console.print(f"[red]--provider must be one of:[/] {', '.join(SYNTH_PROVIDERS)}")
            sys.exit(EXIT_CODE_FAIL)
        if bitrate is not None and bitrate <= 0:
            console.print("[red]--bitrate must be > 0[/]")
            sys.exit(EXIT_CODE_FAIL)
        value = {"enabled": True, "provider": provider}
        if voice:
            value["voice"] = voice
        if bitrate:
            value["bitrate"] = bitrate

    try:
        store.set_flag(MANUAL_OVERRIDE, value, "Manual provider override")
    except Exception as e:
        _fail("Error writing override", e)

    if clear:
        console.print("[green]✓[/] Manual override cleared")
    else:
        console.print(f"[green]✓[/] All requests pinned to {provider}")
    sys.exit(EXIT_CODE_PASS)


@app.command("reset-breaker")
def reset_breaker(
    ctx: typer.Context,
    hard_cap: bool = typer.Option(False, "--hard-cap", help="Also lift the daily hard cap"),
):
    """Re-enable ElevenLabs after its circuit breaker tripped."""
    store = _store(_settings(ctx))
    reset = {"disabled": False, "reset_at": utc_now().isoformat()}
    try:
        store.set_flag(ELEVEN_DISABLED, reset)
        if hard_cap:
            store.set_flag(HARD_CAP_REACHED, reset)
    except Exception as e:
        _fail("Error resetting flags", e)

    console.print("[green]✓[/] ElevenLabs circuit breaker reset")
    if hard_cap:
        console.print("[green]✓[/] Daily hard cap lifted")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def alerts(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", "-n", help="Number of alerts to show"),
):
    """Show the most recent alerts."""
    repository = get_repository(_settings(ctx).db_path)
    try:
        rows = repository.fetch_alert_logs(limit=limit)
    except Exception as e:
        _fail("Error reading alerts", e)

    if not rows:
        console.print("[dim]No alerts recorded.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Recent TTS alerts")
    table.add_column("When")
    table.add_column("Metric")
    table.add_column("Severity")
    table.add_column("Value", justify="right")
    table.add_column("Threshold", justify="right")
    table.add_column("Channels")
    for row in rows:
        table.add_row(
            row.created_at.strftime("%m-%d %H:%M") if row.created_at else "-",
            row.metric_name,
            row.alert_severity,
            f"{row.metric_value:.2f}",
            f"{row.threshold_value:g}",
            ", ".join(row.notified_channels),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@recipients_app.command("add")
def add_recipient(
    ctx: typer.Context,
    email: str = typer.Argument(..., help="Administrator e-mail address"),
    name: Optional[str] = typer.Option(None, "--name", help="Display name"),
    critical_only: bool = typer.Option(False, "--critical-only", help="Only critical and error alerts"),
):
    """Subscribe an administrator to TTS alert e-mails."""
    if "@" not in email:
        console.print(f"[red]Not an e-mail address:[/] {email}")
        sys.exit(EXIT_CODE_FAIL)

    repository = get_repository(_settings(ctx).db_path)
    try:
        repository.add_alert_recipient(
            AlertRecipient(email=email, name=name, receives_critical_only=critical_only)
        )
    except Exception as e:
        _fail("Error adding recipient", e)
    console.print(f"[green]✓[/] {email} will receive TTS alerts")
    sys.exit(EXIT_CODE_PASS)


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.2f}"


if __name__ == "__main__":
    app()
