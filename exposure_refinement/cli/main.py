"""Command line interface for the exposure refinement engine using Typer and Rich."""

import asyncio
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from exposure_refinement import __version__
from exposure_refinement.config.logging import get_logger
from exposure_refinement.config.settings import settings
from exposure_refinement.data_management.batch_store import BatchStore
from exposure_refinement.data_management.schemas import PackagedKeys
from exposure_refinement.engine.merge_engine import MergeEngine
from exposure_refinement.errors import CollaboratorFailure, PersistenceFailure, UnknownBatch
from exposure_refinement.orchestration.analysis_orchestrator import AnalysisOrchestrator
from exposure_refinement.scanning.collaborator import ReplayScanner

app = typer.Typer(
    help="Exposure refinement CLI - multi-pass proximity exposure analysis",
    add_completion=False,
)

console = Console()

logger = get_logger("cli")

DEFAULT_STORE = "exposures.json"

StoreOption = typer.Option(None, "--store", help="Batch store JSON file")


def _open_store(store: Optional[str]) -> BatchStore:
    return BatchStore(store or settings.store_path or DEFAULT_STORE)


@app.command()
def status(store: Optional[str] = StoreOption) -> None:
    """
    Display configuration and stored batches.
    """
    ladder = settings.build_ladder()

    table = Table(title="Refinement Ladder", show_header=True, header_style="bold magenta")
    table.add_column("Pass", style="cyan", width=6)
    table.add_column("Cutoffs", style="green")
    table.add_column("Weights (low/medium/high)", style="yellow")
    for number, config in enumerate(ladder.configurations, start=1):
        w = config.weights
        table.add_row(str(number), config.label, f"{w.low}/{w.medium}/{w.high}")
    console.print(table)

    timeout = settings.pass_timeout_seconds
    console.print(
        f"Logging: {settings.log_level} ({settings.log_format}) | "
        f"Pass timeout: {f'{timeout:g}s' if timeout else 'none'} | "
        f"Strict bound parsing: {settings.strict_bound_parsing}"
    )

    stats = asyncio.run(_open_store(store).get_stats())
    batches = Table(title="Batches", show_header=True, header_style="bold magenta")
    batches.add_column("User", style="cyan")
    batches.add_column("Risk level", justify="right")
    batches.add_column("Keys", justify="right")
    batches.add_column("Exposures", justify="right")
    batches.add_column("Passes", justify="right")
    for name, info in stats["batches"].items():
        done = "✓" if ladder.is_complete(info["pass_count"]) else ""
        batches.add_row(
            name,
            str(info["transmission_risk_level"]),
            str(info["keys"]),
            str(info["exposures"]),
            f"{info['pass_count']} {done}".strip(),
        )
    console.print(batches)


@app.command("import-keys")
def import_keys(
    path: Path = typer.Argument(..., exists=True, readable=True, help="Key package JSON"),
    store: Optional[str] = StoreOption,
) -> None:
    """Import a contact's key package as a new batch."""
    try:
        package = PackagedKeys.model_validate_json(path.read_text())
    except ValidationError as e:
        console.print(f"[red]✗[/red] Invalid key package: {e}")
        raise typer.Exit(1)

    try:
        batch = asyncio.run(_open_store(store).add_keys_from_user(package))
    except ValueError as e:
        console.print(f"[red]✗[/red] {e}")
        raise typer.Exit(1)

    logger.info(f"Imported {batch.keys_checked} keys for {batch.user_name}")
    console.print(
        f"[green]✓[/green] {batch.user_name}: {batch.keys_checked} keys, "
        f"transmission risk level {batch.transmission_risk_level}"
    )


@app.command()
def analyze(
    scanner: Path = typer.Option(..., "--scanner", exists=True, help="Recorded collaborator output (JSON)"),
    user: Optional[str] = typer.Option(None, "--user", help="Only analyze this user"),
    all_passes: bool = typer.Option(False, "--all-passes", help="Run until complete"),
    store: Optional[str] = StoreOption,
) -> None:
    """Run the next analysis pass (or all remaining passes)."""
    orchestrator = AnalysisOrchestrator(
        _open_store(store),
        ReplayScanner.from_file(scanner),
        merge_engine=MergeEngine(),
    )

    async def _run():
        if user:
            if all_passes:
                return {user: await orchestrator.run_to_completion(user)}
            return {user: [await orchestrator.run_pass(user)]}
        results = {}
        while True:
            round_results = await orchestrator.analyze_all()
            if not round_results:
                return results
            for name, outcome in round_results.items():
                results.setdefault(name, []).append(outcome)
            if not all_passes or any(isinstance(o, BaseException) for o in round_results.values()):
                return results

    try:
        results = asyncio.run(_run())
    except (UnknownBatch, CollaboratorFailure) as e:
        console.print(f"[red]✗[/red] {e}")
        raise typer.Exit(1)

    table = Table(title="Analysis Passes", show_header=True, header_style="bold magenta")
    table.add_column("User", style="cyan")
    table.add_column("Pass", justify="right")
    table.add_column("Status")
    table.add_column("Measurements", justify="right")
    table.add_column("Refined", justify="right")
    for name, outcomes in results.items():
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                table.add_row(name, "-", f"[red]failed: {outcome}[/red]", "-", "-")
                continue
            table.add_row(
                name,
                str(outcome.pass_number or outcome.pass_count),
                outcome.status.value,
                str(outcome.measurements_received),
                str(outcome.records_updated),
            )
    console.print(table)

    anomalies = orchestrator.merge_engine.anomalies
    if anomalies:
        console.print(f"[yellow]⚠ {len(anomalies)} anomalies detected[/yellow]")
        for event in anomalies:
            console.print(f"  [yellow]{event.kind.value}[/yellow] {event.message} ({event.left} vs {event.right})")


@app.command()
def show(
    user: str = typer.Argument(..., help="User whose exposures to show"),
    store: Optional[str] = StoreOption,
) -> None:
    """Show the refined exposures of one batch."""
    batch = asyncio.run(_open_store(store).get_batch(user))
    if batch is None:
        console.print(f"[red]✗[/red] No batch for {user}")
        raise typer.Exit(1)

    table = Table(title=f"Exposures with {user}", show_header=True, header_style="bold magenta")
    table.add_column("Day", style="cyan")
    table.add_column("Durations (low/med/high)")
    table.add_column("Duration", justify="right")
    table.add_column("Weighted", justify="right")
    table.add_column("Level", justify="right")
    table.add_column("Passes", justify="right")
    for record in sorted(batch.exposures, key=lambda r: r.date):
        table.add_row(
            f"{record.date:%a, %b} {record.date.day}",
            str(record.profile),
            str(record.duration),
            str(record.total_risk_score),
            str(record.classified_level) if record.classified_level else "-",
            str(record.pass_count),
        )
    console.print(table)


@app.command()
def export(
    path: Path = typer.Argument(..., help="Destination JSON file"),
    store: Optional[str] = StoreOption,
) -> None:
    """Export every batch to a JSON file."""
    try:
        target = asyncio.run(_open_store(store).export_to_path(path))
    except PersistenceFailure as e:
        console.print(f"[red]✗[/red] {e}")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] Exported to {target}")


@app.command("delete-all")
def delete_all(
    yes: bool = typer.Option(False, "--yes", help="Do not ask for confirmation"),
    store: Optional[str] = StoreOption,
) -> None:
    """Delete every stored batch."""
    if not yes and not typer.confirm("Delete all batches?"):
        raise typer.Exit(0)
    count = asyncio.run(_open_store(store).delete_all())
    console.print(f"[green]✓[/green] Deleted {count} batches")


@app.command()
def version() -> None:
    """Display version information."""
    console.print("[bold]Exposure Refinement[/bold]")
    console.print(f"Version: {__version__}")


if __name__ == "__main__":
    app()
