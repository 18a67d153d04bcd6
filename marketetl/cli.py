"""marketetl CLI.

Commands:
- init: Create raw, transformed and run-log tables
- run: Run the full pipeline (retrieve, ingest, load, transform)
- ingest: Ingest a local CSV/XLSX file
- transform: Rebuild transformed tables from raw data
- cleanup: Delete old scratch files
- status: Show recent pipeline runs and table sizes
- has-data: Check whether raw data exists for a ticker on a date
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from marketetl.config import get_config
from marketetl.core.logging import configure_logging
from marketetl.db.connection import close_db, get_session, init_db
from marketetl.pipeline.assets import AssetDescriptor, get_asset
from marketetl.pipeline.config_loader import load_configured_assets
from marketetl.pipeline.types import PipelineRunResult, RunStatus

app = typer.Typer(
    name="marketetl",
    help="marketetl - Bulk end-of-day market data ingestion",
    no_args_is_help=True,
)

console = Console()

STATUS_STYLES = {
    RunStatus.SUCCESS: "green",
    RunStatus.PARTIAL_SUCCESS: "yellow",
    RunStatus.SKIPPED: "dim",
    RunStatus.REJECTED: "yellow",
    RunStatus.FAILED: "red",
}


def _configured_assets() -> list[AssetDescriptor]:
    return load_configured_assets(get_config().default_assets_path)


def _resolve_asset(name: str | None) -> AssetDescriptor | None:
    """Registered asset by name (config file loaded first), or None for all."""
    _configured_assets()
    if name is None:
        return None
    try:
        return get_asset(name)
    except KeyError as e:
        console.print(f"[red]✗ {e.args[0]}[/red]")
        raise typer.Exit(1)


def _print_run(result: PipelineRunResult) -> None:
    style = STATUS_STYLES.get(result.status, "bold")
    console.print(f"\n[bold]Run {result.run_timestamp:%Y-%m-%d %H:%M:%S}[/bold]")
    console.print(f"Status: [{style}]{result.status.value}[/{style}]")
    console.print(result.message)

    if not result.files:
        return

    table = Table(title="File Results")
    table.add_column("Asset", style="cyan")
    table.add_column("File")
    table.add_column("Status", style="bold")
    table.add_column("Seen", justify="right")
    table.add_column("Loaded", justify="right")
    table.add_column("Transformed", justify="right")
    table.add_column("Strategy")
    table.add_column("Duration", justify="right")

    for f in result.files:
        file_style = STATUS_STYLES.get(f.status, "bold")
        table.add_row(
            f.asset,
            f.source_file or "-",
            f"[{file_style}]{f.status.value}[/{file_style}]",
            str(f.rows_seen),
            str(f.rows_loaded),
            str(f.rows_transformed),
            f.load_strategy.value if f.load_strategy else "-",
            f"{f.duration_seconds:.1f}s",
        )
    console.print(table)

    for f in result.files:
        if f.status in (RunStatus.FAILED, RunStatus.PARTIAL_SUCCESS):
            console.print(f"  • {f.asset}: {f.message}")


@app.command()
def init(
    drop: bool = typer.Option(False, "--drop", help="Drop existing tables"),
):
    """Initialize database schema (all configured assets)."""
    config = get_config()
    console.print(f"[bold]Initializing database:[/bold] {config.db.url}")
    assets = _configured_assets()

    async def _init():
        if drop:
            console.print("[yellow]Dropping existing tables...[/yellow]")
        console.print("[green]Creating tables...[/green]")
        await init_db(assets=assets, drop=drop)
        await close_db()

    asyncio.run(_init())
    console.print("[bold green]✓[/bold green] Database initialized")


@app.command()
def run(
    queue: bool = typer.Option(False, "--queue", help="Enqueue on the worker instead of running here"),
):
    """Run the full pipeline once.

    Downloads the newest archive per asset, then ingests, loads and
    transforms it. Each file is processed independently.
    """
    from marketetl.pipeline.orchestrator import PipelineOrchestrator

    if queue:
        from marketetl.core.queue import get_queue

        async def _enqueue():
            redis = await get_queue()
            job = await redis.enqueue_job("run_full_pipeline")
            await redis.close()
            return job

        job = asyncio.run(_enqueue())
        if job is None:
            console.print("[yellow]A pipeline job is already queued[/yellow]")
        else:
            console.print(f"[green]✓ Enqueued job {job.job_id}[/green]")
        return

    console.print("[bold]Starting pipeline run[/bold]")
    assets = _configured_assets()

    async def _run():
        orchestrator = PipelineOrchestrator(assets)
        try:
            return await orchestrator.run()
        finally:
            await orchestrator.close()
            await close_db()

    result = asyncio.run(_run())
    _print_run(result)
    if result.status is RunStatus.FAILED:
        raise typer.Exit(1)


@app.command()
def ingest(
    file_path: Path = typer.Argument(..., help="Extracted CSV or XLSX file"),
    asset_name: str | None = typer.Option(None, "--asset", help="Asset name (default: by file name)"),
):
    """Ingest, load and transform a local file."""
    from marketetl.pipeline.orchestrator import PipelineOrchestrator

    if not file_path.exists():
        console.print(f"[red]✗ File not found: {file_path}[/red]")
        raise typer.Exit(1)

    asset = _resolve_asset(asset_name)
    assets = _configured_assets()

    async def _ingest():
        orchestrator = PipelineOrchestrator(assets)
        try:
            return await orchestrator.ingest_local_file(file_path, asset)
        finally:
            await orchestrator.close()
            await close_db()

    try:
        result = asyncio.run(_ingest())
    except ValueError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(1)

    _print_run(result)
    if result.status is RunStatus.FAILED:
        raise typer.Exit(1)


@app.command()
def transform(
    asset_name: str | None = typer.Option(None, "--asset", help="Asset name (default: all)"),
):
    """Rebuild transformed tables from the raw tables."""
    from marketetl.pipeline.orchestrator import PipelineOrchestrator

    asset = _resolve_asset(asset_name)
    assets = _configured_assets()

    async def _transform():
        orchestrator = PipelineOrchestrator(assets)
        try:
            return await orchestrator.transform_only(asset)
        finally:
            await orchestrator.close()
            await close_db()

    result = asyncio.run(_transform())
    _print_run(result)
    if result.status is RunStatus.FAILED:
        raise typer.Exit(1)


@app.command()
def cleanup(
    days: int | None = typer.Option(None, "--days", help="Delete scratch files older than N days"),
):
    """Delete old downloads and extracted files from the scratch directory."""
    from marketetl.pipeline.retriever import ArchiveRetriever

    config = get_config()
    retriever = ArchiveRetriever(config.archive)
    removed = retriever.cleanup_scratch(days)
    console.print(f"[green]✓ Removed {removed} entries from {config.archive.scratch_dir}[/green]")


@app.command()
def status(
    last_n: int = typer.Option(5, "--last", "-n", help="Show last N pipeline runs"),
):
    """Show recent pipeline runs and row counts."""
    from marketetl.db.queries import count_rows, recent_runs

    assets = _configured_assets()
    console.print(f"[bold]Last {last_n} Pipeline Runs[/bold]\n")

    async def _status():
        async with get_session() as session:
            runs = await recent_runs(session, last_n)
            counts = {
                a.name: await count_rows(session, a.raw_table, a.transformed_table)
                for a in assets
            }
        await close_db()
        return runs, counts

    runs, counts = asyncio.run(_status())

    if not runs:
        console.print("[yellow]No pipeline runs found[/yellow]")

    for run_timestamp, logs in runs.items():
        loaded = sum(log.rows_loaded for log in logs)
        transformed = sum(log.rows_transformed for log in logs)
        failed = sum(1 for log in logs if log.status == RunStatus.FAILED.value)

        style = "red" if failed else "green"
        console.print(f"[bold]{run_timestamp:%Y-%m-%d %H:%M:%S}[/bold]")
        console.print(f"Files: [{style}]{len(logs) - failed}/{len(logs)} ok[/{style}]")
        console.print(f"Rows: {loaded} loaded, {transformed} transformed")
        for log in logs:
            if log.status in (RunStatus.FAILED.value, RunStatus.PARTIAL_SUCCESS.value):
                console.print(f"  • {log.asset}: {log.message}")
        console.print()

    table = Table(title="Table Sizes")
    table.add_column("Asset", style="cyan")
    table.add_column("Raw", justify="right")
    table.add_column("Transformed", justify="right")
    for name, count in counts.items():
        table.add_row(name, str(count["raw"]), str(count["transformed"]))
    console.print(table)


@app.command(name="has-data")
def has_data(
    ticker: str = typer.Argument(..., help="Ticker symbol"),
    date: str = typer.Argument(..., help="Date (e.g. 2024-01-31)"),
    asset_name: str = typer.Option("stock", "--asset", help="Asset name"),
):
    """Check whether the raw table has a row for TICKER on DATE."""
    from marketetl.db.queries import raw_row_exists
    from marketetl.pipeline.normalize import parse_date

    asset = _resolve_asset(asset_name)
    when = parse_date(date)
    if when is None:
        console.print(f"[red]✗ Unrecognized date: {date}[/red]")
        raise typer.Exit(1)

    async def _check():
        async with get_session() as session:
            found = await raw_row_exists(session, ticker, when, asset.raw_table)
        await close_db()
        return found

    if asyncio.run(_check()):
        console.print(f"[green]✓ {ticker.upper()} has data for {when:%Y-%m-%d}[/green]")
    else:
        console.print(f"[yellow]No data for {ticker.upper()} on {when:%Y-%m-%d}[/yellow]")
        raise typer.Exit(1)


def main():
    """Entry point for CLI."""
    try:
        config = get_config()
    except KeyError as e:
        console.print(f"[red]✗ {e.args[0]}[/red]")
        raise SystemExit(1)
    configure_logging(config.log_level)
    app()


if __name__ == "__main__":
    main()
