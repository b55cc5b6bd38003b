"""Command Line Interface for the FHIR-to-OMOP ETL.

This module provides a CLI using Typer for staging FHIR resources and running bulk
or incremental loads into the OMOP CDM tables.

Security Impact:
    - Run options are validated before any database work starts
    - Credentials are never printed
"""

from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from fhir_to_omop.domain.constants import SINGLE_STEP_NAMES, STEP_ALL
from fhir_to_omop.domain.flow import FlowStatus
from fhir_to_omop.domain.services.orchestrator import RunSummary
from fhir_to_omop.infrastructure.settings import APP_VERSION, settings
from fhir_to_omop.main import create_storage_adapter, read_fhir_file, run_etl

# Initialize Typer app and Rich console
app = typer.Typer(
    name="fhir-to-omop",
    help="Batch ETL from staged FHIR resources into the OMOP Common Data Model",
    add_completion=False
)
console = Console()


def create_storage_adapter_cli():
    """Create storage adapter based on configuration (CLI wrapper)."""
    try:
        return create_storage_adapter()
    except Exception as e:
        console.print(f"[red]✗[/red] Failed to create storage adapter: {escape(str(e))}")
        raise typer.Exit(code=1)


def print_summary(summary: RunSummary) -> None:
    table = Table(show_header=True, header_style="bold")
    table.add_column("Step", style="cyan")
    table.add_column("Status")
    table.add_column("Read", justify="right")
    table.add_column("Written", justify="right")
    table.add_column("Filtered", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Deferred", justify="right")
    table.add_column("Retries", justify="right")

    for statistics in summary.steps:
        status = statistics.status
        table.add_row(
            statistics.step_name,
            f"[green]{status}[/green]" if status == "COMPLETED" else f"[red]{status}[/red]",
            f"{statistics.read_count:,}",
            f"{statistics.write_count:,}",
            f"{statistics.filter_count:,}",
            f"{statistics.skip_count:,}",
            f"{statistics.deferred_count:,}",
            str(statistics.retry_count),
        )
    console.print(table)

    if summary.post_process_scripts:
        console.print(f"[dim]Post processing:[/dim] {', '.join(summary.post_process_scripts)}")


@app.command()
def run(
    bulk: Optional[bool] = typer.Option(None, "--bulk/--incremental", help="Bulk or incremental load"),
    step: Optional[str] = typer.Option(None, "--step", "-s", help="Re-run a single step of a bulk load"),
    begin_date: Optional[str] = typer.Option(None, "--begin-date", help="Lower bound on last_updated_at (YYYY-MM-DD)"),
    end_date: Optional[str] = typer.Option(None, "--end-date", help="Upper bound on last_updated_at (YYYY-MM-DD)"),
    chunk_size: Optional[int] = typer.Option(None, "--chunk-size", "-c", help="Resources per chunk"),
    throttle_limit: Optional[int] = typer.Option(None, "--throttle-limit", "-t", help="Worker threads in bulk load"),
    ram: Optional[bool] = typer.Option(None, "--ram/--no-ram", help="Load reference dictionaries into RAM"),
    medication_statements: Optional[bool] = typer.Option(
        None, "--medication-statements/--no-medication-statements", help="Run the MedicationStatement step"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Load the staged FHIR resources into the OMOP CDM tables.

    Examples:
        fhir-to-omop run --bulk
        fhir-to-omop run --bulk --step Condition
        fhir-to-omop run --incremental --begin-date 2024-01-01 --end-date 2024-01-31
    """
    import logging
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        console.print("[dim]Verbose logging enabled[/dim]")

    try:
        run_config = settings.run_config(
            bulk_load=bulk,
            single_step=step,
            begin_date=begin_date,
            end_date=end_date,
            chunk_size=chunk_size,
            throttle_limit=throttle_limit,
            dictionary_load_in_ram=ram,
            write_medication_statements=medication_statements,
        )
    except ValidationError as e:
        console.print(f"[red]✗[/red] Invalid run options: {escape(str(e))}")
        raise typer.Exit(code=1)

    console.print("\n[bold blue]FHIR to OMOP ETL[/bold blue]")
    console.print(f"[dim]Mode:[/dim] {run_config.mode.value}")
    console.print(f"[dim]Step:[/dim] {escape(run_config.single_step)}")
    console.print(f"[dim]Database:[/dim] {settings.db_config.db_type}")
    console.print(f"[dim]Chunk size:[/dim] {run_config.chunk_size}")
    console.print()

    storage = create_storage_adapter_cli()
    try:
        with console.status("[bold green]Loading..."):
            summary = run_etl(storage, run_config)
    except KeyboardInterrupt:
        console.print("\n[yellow]⚠[/yellow] Load interrupted by user")
        raise typer.Exit(code=130)
    finally:
        storage.close()

    print_summary(summary)
    if summary.status != FlowStatus.COMPLETED:
        failed_at = escape(f"[{summary.failed_node}]")
        console.print(f"\n[red]✗[/red] Load failed at {failed_at}: {escape(str(summary.error))}")
        raise typer.Exit(code=1)
    console.print("\n[green]✓[/green] Load completed successfully")


@app.command()
def stage(
    input_file: Path = typer.Argument(..., help="FHIR Bundle, JSON array or NDJSON file", exists=True),
) -> None:
    """Append FHIR resources from a file to the staging table."""
    try:
        resources = read_fhir_file(input_file)
    except ValueError as e:
        console.print(f"[red]✗[/red] {escape(str(e))}")
        raise typer.Exit(code=1)

    storage = create_storage_adapter_cli()
    try:
        schema_result = storage.initialize_schema()
        if schema_result.is_failure():
            console.print(f"[red]✗[/red] Schema initialization failed: {escape(str(schema_result.error))}")
            raise typer.Exit(code=1)

        result = storage.stage_resources(resources)
        if result.is_failure():
            console.print(f"[red]✗[/red] Staging failed: {escape(str(result.error))}")
            raise typer.Exit(code=1)
    finally:
        storage.close()

    console.print(f"[green]✓[/green] Staged {result.value:,} resources from {input_file.name}")


@app.command()
def steps() -> None:
    """List the steps that can be re-run on their own during a bulk load."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_row(STEP_ALL, "[dim]every step in dependency order[/dim]")
    for name in SINGLE_STEP_NAMES:
        table.add_row(name, "")
    console.print(table)


@app.command()
def info() -> None:
    """Display system information and configuration."""
    console.print("[bold blue]System Information[/bold blue]\n")

    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Application:", settings.app_name)
    info_table.add_row("Database Type:", settings.db_config.db_type)
    if settings.db_config.db_type == "duckdb":
        info_table.add_row("Database Path:", settings.db_config.db_path or ":memory:")
    elif settings.db_config.db_type == "postgresql":
        info_table.add_row("Database Host:", str(settings.db_config.host))
        info_table.add_row("Database Name:", str(settings.db_config.database))
    info_table.add_row("Bulk Load:", "Yes" if settings.bulk_load else "No (incremental)")
    info_table.add_row("Chunk Size:", str(settings.chunk_size))
    info_table.add_row("Throttle Limit:", str(settings.throttle_limit))
    info_table.add_row("RAM Dictionaries:", "Enabled" if settings.dictionary_load_in_ram else "Disabled")
    info_table.add_row("Circuit Breaker:", "Enabled" if settings.circuit_breaker_enabled else "Disabled")
    console.print(info_table)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version information"),
) -> None:
    """FHIR to OMOP CDM batch ETL."""
    if version:
        console.print(f"fhir-to-omop v{APP_VERSION}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


if __name__ == "__main__":
    app()
