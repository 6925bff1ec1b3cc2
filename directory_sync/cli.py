"""Command Line Interface for Directory Sync.

This module provides a CLI using Typer for running the sync pipelines once,
either all enabled pipelines or a single one, and for checking the
configuration before a scheduled run.

Security Impact:
    - Configuration is validated before any remote call is made
    - Secrets are masked when the configuration is displayed
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from directory_sync.domain.ports import OperationOutcome, Severity
from directory_sync.infrastructure.config_manager import ConfigManager
from directory_sync.infrastructure.logging_config import setup_logging
from directory_sync.infrastructure.settings import settings
from directory_sync.infrastructure.sync_report import build_sync_report, has_errors
from directory_sync.main import ATTRIBUTES, BIOBANKS, SIZES, STAR_MODEL, run_sync

# Initialize Typer app and Rich console
app = typer.Typer(
    name="directory-sync",
    help="Sync a FHIR store with the BBMRI-ERIC Directory",
    add_completion=False
)
console = Console()

SEVERITY_STYLES = {
    Severity.FATAL: "bold red",
    Severity.ERROR: "red",
    Severity.WARNING: "yellow",
    Severity.INFORMATION: "green",
}

ConfigOption = typer.Option(None, "--config", "-c", help="JSON configuration file (default: environment)")
ReportOption = typer.Option(None, "--report", "-r", help="Save the sync report to this JSON file")
VerboseOption = typer.Option(False, "--verbose", "-v", help="Enable verbose logging")


def load_config(config: Optional[Path]) -> ConfigManager:
    try:
        return ConfigManager.from_file(str(config)) if config else settings.config_manager
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]✗[/red] Failed to load configuration: {str(e)}")
        raise typer.Exit(code=1)


def print_outcomes(outcomes_by_pipeline: dict[str, list[OperationOutcome]]) -> None:
    table = Table(title="Sync Outcomes", show_header=True, header_style="bold magenta")
    table.add_column("Pipeline", style="cyan")
    table.add_column("Severity")
    table.add_column("Diagnostics", overflow="fold")

    for pipeline, outcomes in outcomes_by_pipeline.items():
        for outcome in outcomes:
            style = SEVERITY_STYLES.get(outcome.severity, "white")
            table.add_row(pipeline, f"[{style}]{outcome.severity.value}[/{style}]", outcome.diagnostics)

    console.print(table)


def execute(
    pipelines: Optional[list[str]],
    config: Optional[Path],
    report: Optional[Path],
    verbose: bool,
    overrides: Optional[dict] = None
) -> None:
    """Run pipelines, print their outcomes, and exit 1 on any ERROR outcome."""
    setup_logging(use_json=settings.log_json, log_level="DEBUG" if verbose else settings.log_level)
    if verbose:
        console.print("[dim]Verbose logging enabled[/dim]")

    config_manager = load_config(config)
    started_at = datetime.now(timezone.utc)

    try:
        with console.status("[bold green]Syncing with the Directory..."):
            outcomes = run_sync(config_manager, pipelines, overrides)
    except ValidationError as e:
        console.print(f"[red]✗[/red] Invalid configuration:\n{e}")
        raise typer.Exit(code=1)

    print_outcomes(outcomes)

    if report is None and settings.save_sync_report:
        report = Path(settings.report_dir) / f"sync_report_{started_at.strftime('%Y%m%dT%H%M%SZ')}.json"
    if report is not None:
        report_result = build_sync_report(outcomes, output_path=str(report), started_at=started_at)
        if report_result.is_success():
            console.print(f"[dim]Sync report saved to {report_result.value['saved_to']}[/dim]")
        else:
            console.print(f"[yellow]![/yellow] {report_result.error}")

    if has_errors(outcomes):
        console.print("[red]✗[/red] Sync finished with errors")
        raise typer.Exit(code=1)
    console.print("[green]✓[/green] Sync finished")


@app.command()
def sync(
    config: Optional[Path] = ConfigOption,
    report: Optional[Path] = ReportOption,
    verbose: bool = VerboseOption,
) -> None:
    """Run every pipeline enabled in the configuration.

    Examples:
        directory-sync sync
        directory-sync sync --config directory-sync.json --report reports/run.json
    """
    execute(None, config, report, verbose)


@app.command()
def sizes(
    config: Optional[Path] = ConfigOption,
    report: Optional[Path] = ReportOption,
    verbose: bool = VerboseOption,
) -> None:
    """Push collection sizes (specimen counts) to the Directory."""
    execute([SIZES], config, report, verbose)


@app.command()
def attributes(
    config: Optional[Path] = ConfigOption,
    report: Optional[Path] = ReportOption,
    verbose: bool = VerboseOption,
    default_collection: Optional[str] = typer.Option(
        None, "--default-collection", help="Collection for specimens without one"
    ),
) -> None:
    """Push aggregated collection attributes to the Directory."""
    overrides = {"default_collection_id": default_collection} if default_collection else None
    execute([ATTRIBUTES], config, report, verbose, overrides)


@app.command("star-model")
def star_model(
    config: Optional[Path] = ConfigOption,
    report: Optional[Path] = ReportOption,
    verbose: bool = VerboseOption,
    default_collection: Optional[str] = typer.Option(
        None, "--default-collection", help="Collection for specimens without one"
    ),
    min_donors: Optional[int] = typer.Option(
        None, "--min-donors", min=0, help="Minimum donors per fact (0 disables the threshold)"
    ),
) -> None:
    """Replace the site's star model facts in the Directory."""
    overrides = {}
    if default_collection:
        overrides["default_collection_id"] = default_collection
    if min_donors is not None:
        overrides["min_donors"] = min_donors
    execute([STAR_MODEL], config, report, verbose, overrides)


@app.command()
def biobanks(
    config: Optional[Path] = ConfigOption,
    report: Optional[Path] = ReportOption,
    verbose: bool = VerboseOption,
) -> None:
    """Copy biobank names from the Directory to the FHIR store."""
    execute([BIOBANKS], config, report, verbose)


@app.command("check-config")
def check_config(config: Optional[Path] = ConfigOption) -> None:
    """Validate the configuration without contacting either server."""
    config_manager = load_config(config)
    try:
        fhir_config = config_manager.get_fhir_config()
        directory_config = config_manager.get_directory_config()
        sync_config = config_manager.get_sync_config()
    except ValidationError as e:
        console.print(f"[red]✗[/red] Invalid configuration:\n{e}")
        raise typer.Exit(code=1)

    table = Table(title="Configuration", show_header=True, header_style="bold magenta")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("FHIR URL", fhir_config.base_url)
    table.add_row("Directory URL", directory_config.base_url)
    table.add_row("Directory user", directory_config.username or "-")
    table.add_row("Directory password", "********" if directory_config.password else "-")
    table.add_row("Directory token", "********" if directory_config.token else "-")
    table.add_row("Default collection", sync_config.default_collection_id or "-")
    table.add_row("Minimum donors", str(sync_config.min_donors))
    table.add_row("Diagnosis available", str(sync_config.diagnosis_available_enabled))
    table.add_row("Sync sizes", str(sync_config.sync_sizes))
    table.add_row("Sync attributes", str(sync_config.sync_attributes))
    table.add_row("Sync star model", str(sync_config.sync_star_model))
    table.add_row("Update biobanks", str(sync_config.update_biobanks))

    console.print(table)
    console.print("[green]✓[/green] Configuration is valid")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
