# Copyright (c) Syntropy Systems
"""ixcheck cache subcommands."""
from __future__ import annotations

import typer
from rich.console import Console

from ixcheck.cache import ResultCache
from ixcheck.config import get_db_path, get_output_root, load_config, require_ixcheck_dir
from ixcheck.db import get_connection
from ixcheck.models.cache import MaintenanceReport

console = Console()

cache_app = typer.Typer(
    name="cache",
    help="Run result cache maintenance.",
    no_args_is_help=True,
)


def _open_cache() -> ResultCache:
    try:
        ixcheck_dir = require_ixcheck_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    config = load_config(ixcheck_dir)
    conn = get_connection(get_db_path(ixcheck_dir))
    return ResultCache(conn, get_output_root(config, ixcheck_dir), config.database_id)


def _print_maintenance(report: MaintenanceReport) -> None:
    console.print(
        f"[green]Removed {report.index_removed} index entr"
        f"{'y' if report.index_removed == 1 else 'ies'}, "
        f"{report.directories_deleted} output director"
        f"{'y' if report.directories_deleted == 1 else 'ies'}[/green]"
    )
    for error in report.errors:
        console.print(f"[yellow]⚠[/yellow] {error}")


@cache_app.command()
def report() -> None:
    """Show cache index and output directory counts and storage used."""
    cache = _open_cache()
    try:
        result = cache.report()
    finally:
        cache.conn.close()

    console.print(f"[bold]Cache[/bold] {cache.cache_dir}")
    console.print(f"  [dim]index entries:[/dim] {result.index_count}")
    console.print(f"  [dim]output directories:[/dim] {result.directory_count}")
    console.print(f"  [dim]storage used:[/dim] {result.size_text}")
    for error in result.errors:
        console.print(f"[red]✗[/red] {error}")


@cache_app.command()
def cleanup() -> None:
    """Repair the cache: drop index entries and directories without a partner."""
    cache = _open_cache()
    try:
        result = cache.cleanup()
    finally:
        cache.conn.close()
    _print_maintenance(result)


@cache_app.command()
def delete(
    days: int = typer.Option(
        ...,
        "--days", "-d",
        min=0,
        help="Delete runs at least this many days old (0 deletes everything)",
    ),
) -> None:
    """Delete old runs and their output."""
    cache = _open_cache()
    try:
        result = cache.delete(days)
    finally:
        cache.conn.close()
    _print_maintenance(result)
