# Copyright (c) Syntropy Systems
"""ixcheck stations subcommands."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from ixcheck.config import get_db_path, require_ixcheck_dir
from ixcheck.db import get_connection, list_station_data
from ixcheck.stations import import_station_file

console = Console()

stations_app = typer.Typer(
    name="stations",
    help="Station data sets searched by study builds.",
    no_args_is_help=True,
)


@stations_app.command(name="import")
def import_cmd(
    path: Path = typer.Argument(
        ...,
        help="YAML or JSON file with a list of station records",
        exists=True,
        dir_okay=False,
    ),
    name: Optional[str] = typer.Option(
        None,
        "--name", "-n",
        help="Name for the new station data set (default: file name)",
    ),
) -> None:
    """Import station records as a new station data set."""
    try:
        ixcheck_dir = require_ixcheck_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    conn = get_connection(get_db_path(ixcheck_dir))
    try:
        station_data_key, count = import_station_file(conn, path, name)
    except (ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    finally:
        conn.close()

    console.print(
        f"[green]Imported {count} record(s)[/green] as station data #{station_data_key}"
    )


@stations_app.command(name="list")
def list_cmd() -> None:
    """List imported station data sets."""
    try:
        ixcheck_dir = require_ixcheck_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    conn = get_connection(get_db_path(ixcheck_dir))
    try:
        data_sets = list_station_data(conn)
    finally:
        conn.close()

    if not data_sets:
        console.print("[dim]No station data imported[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Key", style="dim")
    table.add_column("Name")
    table.add_column("Records", justify="right")
    table.add_column("Baseline", justify="right")
    table.add_column("Imported")

    for item in data_sets:
        table.add_row(
            str(item["station_data_key"]),
            item["name"] or "-",
            str(item["record_count"]),
            str(item["baseline_count"]),
            str(item["imported_at"]),
        )

    console.print(table)
