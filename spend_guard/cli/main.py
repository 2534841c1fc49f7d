"""
CLI interface for Spend Guard.

Provides command-line access to the monitoring run, test alerts, device
management and enrichment usage reporting.
"""

import json
import sys
from pathlib import Path
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from ..alerts.dispatcher import AlertDispatcher, DispatchReport
from ..backends.memory import InMemoryCostSource
from ..backends.sns import SnsBroadcastPublisher, SnsPushBackend
from ..config.loader import DEFAULT_CONFIG_PATH, SpendGuardConfig, load_config
from ..core.errors import SpendGuardError
from ..core.models import CostAnalysis
from ..core.retry import RetryPolicy
from ..devices.registry import DeviceRegistry, HealthStatus
from ..logging_config import configure_logging
from ..pipeline import PipelineStatus, SpendMonitorPipeline
from ..storage.repository import (
    SqliteDeviceStore,
    get_usage_stats,
    initialize_schema,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

ConfigOption = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to YAML configuration")


def _load(config_path: str) -> SpendGuardConfig:
    try:
        return load_config(config_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Configuration error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)


def _build_registry(config: SpendGuardConfig) -> DeviceRegistry:
    """Registry over the configured SNS platform application."""
    if config.push is None:
        console.print("[red]Error:[/] push notifications are not configured (missing 'push' section)")
        sys.exit(EXIT_CODE_FAIL)
    initialize_schema(config.storage.db_path)
    backend = SnsPushBackend(
        config.push.platform_application_arn,
        region=config.push.region,
        sandbox=config.push.sandbox
    )
    return DeviceRegistry(backend, SqliteDeviceStore(config.storage.db_path), RetryPolicy(config.retry))


def _load_cost_file(path: str) -> CostAnalysis:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        return CostAnalysis.from_dict(data)
    except (OSError, json.JSONDecodeError, ValueError) as e:
        console.print(f"[red]Invalid cost file:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)


def _load_history_file(path: str) -> List[CostAnalysis]:
    """Previous periods from a JSON list of cost exports, oldest first."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(data, list):
            raise ValueError("expected a JSON list of cost exports")
        return [CostAnalysis.from_dict(item) for item in data]
    except (OSError, json.JSONDecodeError, ValueError, TypeError) as e:
        console.print(f"[red]Invalid history file:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)


def _display_report(report: DispatchReport) -> None:
    table = Table(title="Delivery Results")
    table.add_column("Channel")
    table.add_column("Target")
    table.add_column("Result")
    table.add_column("Attempts", justify="right")
    for result in report.results:
        outcome = "[green]delivered[/]" if result.success else f"[red]failed[/] ({result.error})"
        table.add_row(result.channel.value, result.target, outcome, str(result.attempts))
    console.print(table)
    if report.partial_failure:
        console.print("[yellow]Some channels failed; the alert was still delivered[/]")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    log_level: str = typer.Option("WARNING", "--log-level", help="Minimum log level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON log records")
):
    """Spend Guard CLI."""
    configure_logging(log_level, serialize=json_logs)
    if ctx.invoked_subcommand is None:
        console.print("Spend Guard - Use --help to see available commands")


@app.command()
def init(
    db_path: str = typer.Option("spend_guard.db", "--db-path", help="SQLite database file")
):
    """Initialize the Spend Guard database."""
    try:
        initialize_schema(db_path)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print("[green]✓[/] Database initialized successfully")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def check(
    config_path: str = ConfigOption,
    cost_file: Optional[str] = typer.Option(
        None, "--cost-file", help="Evaluate a JSON cost export instead of Cost Explorer"
    ),
    anomalies: bool = typer.Option(False, "--anomalies", help="Also run anomaly detection"),
    history_file: Optional[str] = typer.Option(
        None, "--history-file", help="JSON list of previous periods' cost exports for anomaly detection"
    )
):
    """Run one monitoring pass: evaluate spend and alert if over threshold."""
    config = _load(config_path)
    cost_source = InMemoryCostSource(_load_cost_file(cost_file)) if cost_file else None
    historical = _load_history_file(history_file) if history_file else None
    if historical and not anomalies:
        console.print("[yellow]--history-file has no effect without --anomalies[/]")

    try:
        pipeline = SpendMonitorPipeline.from_config(config, cost_source=cost_source, detect_anomalies=anomalies)
        result = pipeline.run(historical=historical)
    except SpendGuardError as e:
        console.print(f"[red]Monitoring run failed:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if result.analysis is not None:
        console.print(
            f"Current spend: ${result.analysis.total_cost:.2f} "
            f"(threshold ${config.monitor.threshold:.2f})"
        )
    if result.status == PipelineStatus.NO_ALERT:
        console.print("[green]✓[/] Spend within threshold")
        sys.exit(EXIT_CODE_PASS)
    if result.status == PipelineStatus.CANCELLED:
        console.print("[yellow]Monitoring run cancelled[/]")
        sys.exit(EXIT_CODE_FAIL)

    context = result.context
    console.print(
        f"[bold]{context.alert_level.value}[/]: ${context.exceed_amount:.2f} over budget "
        f"({context.percentage_over:.1f}%)"
    )
    if result.anomalies is not None:
        for anomaly in result.anomalies.anomalies:
            console.print(f"  [yellow]{anomaly.severity.value}[/] {anomaly.service}: {anomaly.description}")
    _display_report(result.report)
    sys.exit(EXIT_CODE_PASS if result.status == PipelineStatus.ALERT_SENT else EXIT_CODE_FAIL)


@app.command("test-alert")
def test_alert(config_path: str = ConfigOption):
    """Send a canned alert through every configured channel."""
    config = _load(config_path)
    registry = _build_registry(config) if config.push is not None else None
    dispatcher = AlertDispatcher(
        SnsBroadcastPublisher(region=config.broadcast.region),
        push_backend=registry.push_backend if registry is not None else None,
        registry=registry,
        retry_policy=RetryPolicy(config.retry),
        max_parallel_devices=config.dispatch.max_parallel_devices,
        success_policy=config.dispatch.success_policy
    )
    report = dispatcher.send_test_alert(config.broadcast.topic_arn)
    _display_report(report)
    sys.exit(EXIT_CODE_PASS if report.success else EXIT_CODE_FAIL)


@app.command("register-device")
def register_device(
    token: str = typer.Argument(..., help="64-character hex device token"),
    owner: Optional[str] = typer.Option(None, "--owner", help="Owning user id"),
    config_path: str = ConfigOption
):
    """Register a device for push alerts."""
    config = _load(config_path)
    registry = _build_registry(config)
    try:
        registration = registry.register(token, owner_id=owner)
    except SpendGuardError as e:
        console.print(f"[red]Registration failed:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Registered {registration.token_prefix}... at {registration.platform_endpoint_ref}")
    sys.exit(EXIT_CODE_PASS)


@app.command("list-devices")
def list_devices(
    owner: str = typer.Option(..., "--owner", help="Owning user id"),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Maximum devices to show"),
    config_path: str = ConfigOption
):
    """List the devices registered to one owner."""
    config = _load(config_path)
    registry = _build_registry(config)
    try:
        devices = registry.list_devices(owner, limit=limit)
    except SpendGuardError as e:
        console.print(f"[red]Listing failed:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if not devices:
        console.print(f"No devices registered for {owner}")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Devices for {owner}", min_width=60)
    table.add_column("Token")
    table.add_column("Endpoint")
    table.add_column("Registered")
    table.add_column("Active")
    for device in devices:
        table.add_row(
            f"{device.token_prefix}...",
            device.platform_endpoint_ref,
            f"{device.registration_date:%Y-%m-%d}",
            "yes" if device.active else "no"
        )
    console.print(table)
    console.print(f"{len(devices)} device(s)")
    sys.exit(EXIT_CODE_PASS)


@app.command("remove-device")
def remove_device(
    endpoint_ref: str = typer.Argument(..., help="Platform endpoint to remove"),
    config_path: str = ConfigOption
):
    """Delete a device endpoint and its registration."""
    config = _load(config_path)
    registry = _build_registry(config)
    try:
        registry.remove(endpoint_ref)
    except SpendGuardError as e:
        console.print(f"[red]Removal failed:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Removed {endpoint_ref}")
    sys.exit(EXIT_CODE_PASS)


@app.command("cleanup-devices")
def cleanup_devices(
    endpoints: Optional[List[str]] = typer.Argument(
        None, help="Endpoints to check (defaults to every active registration)"
    ),
    config_path: str = ConfigOption
):
    """Remove endpoints the push platform reports as invalid."""
    config = _load(config_path)
    registry = _build_registry(config)
    if endpoints:
        result = registry.remove_invalid_tokens(endpoints)
    else:
        result = registry.process_feedback()

    console.print(f"Checked {result.checked} endpoint(s), removed {len(result.removed)}")
    for ref in result.removed:
        console.print(f"  [green]removed[/] {ref}")
    for ref, error in result.errors.items():
        console.print(f"  [red]error[/] {ref}: {error}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def health(config_path: str = ConfigOption):
    """Check push platform and endpoint health."""
    config = _load(config_path)
    report = _build_registry(config).health_check()

    colour = {
        HealthStatus.HEALTHY: "green",
        HealthStatus.WARNING: "yellow",
        HealthStatus.CRITICAL: "red",
    }[report.overall]
    console.print(f"Overall: [{colour}]{report.overall.value}[/]")
    days = report.certificate_days_remaining
    console.print(f"Certificate days remaining: {days if days is not None else 'unknown'}")
    console.print(f"Active endpoints: {report.active_endpoint_count}")
    console.print(f"Invalid endpoints: {report.invalid_endpoint_count}")
    for recommendation in report.recommendations:
        console.print(f"  - {recommendation}")
    sys.exit(EXIT_CODE_FAIL if report.overall == HealthStatus.CRITICAL else EXIT_CODE_PASS)


@app.command()
def usage(
    days: int = typer.Option(30, "--days", "-d", help="Days of history to summarize"),
    operation: Optional[str] = typer.Option(None, "--operation", "-o", help="Filter to one enrichment operation"),
    db_path: str = typer.Option("spend_guard.db", "--db-path", help="SQLite database file")
):
    """Summarize enrichment model spend."""
    try:
        stats = get_usage_stats(days=days, operation=operation, db_path=db_path)
    except Exception as e:
        console.print(f"[red]Error reading usage:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if not stats["total_requests"]:
        console.print("\n[bold yellow]No enrichment usage recorded[/]")
        console.print("Run `spend-guard init` and enable enrichment to start tracking model spend.\n")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Enrichment Usage (last {days} days)", min_width=48)
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Requests", str(stats["total_requests"]))
    table.add_row("Tokens", f"{stats['total_tokens']:,}")
    table.add_row("Total cost", f"${stats['total_cost']:,.4f}")
    table.add_row("Average cost", f"${stats['avg_cost']:,.5f}")
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
