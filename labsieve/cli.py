"""Command Line Interface for Lab-Sieve.

This module provides a Typer CLI for running the bulk export pipeline,
classifying exported NDJSON files offline and inspecting configuration.

Security Impact:
    - Secrets are masked in every printed table
    - Fatal errors name the failing stage without echoing credentials
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Iterator, Optional

import typer
from rich.console import Console
from rich.table import Table

from labsieve.adapters.notify import SMTPNotifier
from labsieve.domain.ports import LabSieveError, StreamBatchReport
from labsieve.domain.report import LabReport, PatientIndex
from labsieve.infrastructure.config_manager import ConfigManager
from labsieve.infrastructure.logging_config import setup_logging
from labsieve.infrastructure.settings import APP_VERSION, settings
from labsieve.main import run_pipeline

app = typer.Typer(
    name="labsieve",
    help="Lab-Sieve: bulk export of lab results with reference-range classification",
    add_completion=False
)
console = Console()
logger = logging.getLogger(__name__)


def load_config_manager(config_file: Optional[Path]) -> ConfigManager:
    if config_file is not None:
        return ConfigManager.from_file(str(config_file))
    return ConfigManager.from_environment()


def print_batch_summary(batches: list[StreamBatchReport]) -> None:
    table = Table(show_header=True, header_style="bold")
    table.add_column("Resource", style="cyan")
    table.add_column("Files", justify="right")
    table.add_column("Complete", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Records", justify="right")
    for batch in batches:
        failed = f"[red]{batch.failed_files}[/red]" if batch.failed_files else "0"
        table.add_row(
            batch.resource_type,
            str(batch.file_count),
            str(batch.succeeded_files),
            failed,
            f"{batch.record_count:,}",
        )
    console.print(table)


@app.command()
def run(
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="JSON configuration file", exists=True),
    poll_interval: Optional[float] = typer.Option(None, "--poll-interval", help="Seconds between status polls"),
    max_poll_attempts: Optional[int] = typer.Option(None, "--max-poll-attempts", help="Stop polling after N requests"),
    no_email: bool = typer.Option(False, "--no-email", help="Do not send the report email"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON"),
) -> None:
    """Run one export: authenticate, export, poll, stream and classify.

    Examples:
        labsieve run
        labsieve run --config labsieve.json --poll-interval 10
        labsieve run --no-email --max-poll-attempts 120
    """
    setup_logging(use_json=json_logs or settings.log_json, log_level="DEBUG" if verbose else settings.log_level)

    try:
        manager = load_config_manager(config_file).with_overrides(
            "export",
            poll_interval_seconds=poll_interval,
            max_poll_attempts=max_poll_attempts,
        )
        export_config = manager.get_export_config()
        notification_config = manager.get_notification_config()
    except LabSieveError as e:
        console.print(f"[red]✗[/red] {e.stage.capitalize()} failed: {e}")
        raise typer.Exit(code=1)

    notifier = None
    if not no_email and notification_config.enabled:
        notifier = SMTPNotifier(notification_config)

    console.print(f"\n[bold blue]{settings.app_name}[/bold blue]")
    console.print(f"[dim]Export:[/dim] {export_config.export_url}")
    console.print(f"[dim]Types:[/dim] {export_config.export_types}")
    console.print(f"[dim]Poll interval:[/dim] {export_config.poll_interval_seconds:g}s")
    console.print()

    try:
        with console.status("[bold green]Waiting for bulk export..."):
            outcome = asyncio.run(run_pipeline(
                export_config,
                notifier=notifier,
                notification_config=notification_config,
                report_title=settings.report_title,
            ))
    except LabSieveError as e:
        console.print(f"\n[red]✗[/red] {e.stage.capitalize()} failed: {e}")
        if verbose:
            console.print_exception()
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        console.print("\n[yellow]⚠[/yellow] Run interrupted by user")
        raise typer.Exit(code=130)

    console.print(f"[green]✓[/green] Export completed after {outcome.job.attempts} status request(s)\n")
    print_batch_summary(outcome.batches)
    console.print()
    console.print(outcome.report.render(), markup=False, highlight=False, soft_wrap=True)

    if outcome.partial:
        console.print("[yellow]⚠[/yellow] Some output files ended early; the report may be incomplete")

    if outcome.notification is not None:
        if outcome.notification.is_failure():
            console.print(f"[red]✗[/red] Notification failed: {outcome.notification.error}")
            raise typer.Exit(code=1)
        console.print(f"[green]✓[/green] Report sent to {outcome.notification.value}")
    elif not no_email:
        console.print("[dim]Notification not configured; report not sent[/dim]")


def read_ndjson(path: Path) -> Iterator[dict]:
    """Yield JSON objects from a local NDJSON file, skipping blank and malformed lines."""
    with open(path, "r", encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                logger.warning(f"Skipping malformed line {line_number} in {path}")
                continue
            if not isinstance(record, dict):
                logger.warning(f"Skipping non-object line {line_number} in {path}")
                continue
            yield record


@app.command()
def classify(
    observations: Path = typer.Argument(..., help="Observation NDJSON file", exists=True, dir_okay=False),
    patients: Optional[Path] = typer.Option(None, "--patients", "-p", help="Patient NDJSON file", exists=True, dir_okay=False),
) -> None:
    """Classify a downloaded Observation NDJSON file and print the report.

    Examples:
        labsieve classify Observation.ndjson --patients Patient.ndjson
    """
    index = PatientIndex()
    if patients is not None:
        for resource in read_ndjson(patients):
            index.add_resource(resource)
    index.freeze()

    report = LabReport(title=settings.report_title)
    for resource in read_ndjson(observations):
        report.add_observation(resource, index)

    console.print(report.render(), markup=False, highlight=False, soft_wrap=True)
    console.print(
        f"[bold]{report.total}[/bold] observations: "
        f"[red]{len(report.abnormal)} abnormal[/red], [green]{len(report.normal)} normal[/green]"
    )


@app.command()
def info(
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="JSON configuration file", exists=True),
) -> None:
    """Display the resolved configuration (secrets masked)."""
    try:
        manager = load_config_manager(config_file)
        export_config = manager.get_export_config()
        notification_config = manager.get_notification_config()
    except LabSieveError as e:
        console.print(f"[red]✗[/red] {e.stage.capitalize()} failed: {e}")
        raise typer.Exit(code=1)

    console.print("[bold blue]Configuration[/bold blue]\n")
    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Application:", settings.app_name)
    info_table.add_row("Client ID:", export_config.client_id)
    info_table.add_row("Token Endpoint:", export_config.token_endpoint)
    info_table.add_row("Export URL:", export_config.export_url)
    info_table.add_row("Key Store:", export_config.key_store_path)
    info_table.add_row("Types:", export_config.export_types)
    info_table.add_row("Type Filter:", export_config.type_filter or "-")
    info_table.add_row("Poll Interval:", f"{export_config.poll_interval_seconds:g}s")
    info_table.add_row("Max Poll Attempts:", str(export_config.max_poll_attempts or "unbounded"))
    info_table.add_row("Notification:", "Enabled" if notification_config.enabled else "Disabled")
    if notification_config.enabled:
        info_table.add_row("SMTP Server:", f"{notification_config.smtp_host}:{notification_config.smtp_port}")
        info_table.add_row("SMTP Password:", "********" if notification_config.smtp_password else "-")
        info_table.add_row("Recipients:", ", ".join(notification_config.recipients))
    console.print(info_table)


def version_callback(value: bool) -> None:
    if value:
        console.print(f"Lab-Sieve v{APP_VERSION}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False, "--version", help="Show version information", callback=version_callback, is_eager=True
    )
) -> None:
    """Lab-Sieve: bulk export of lab results with reference-range classification."""


if __name__ == "__main__":
    app()
