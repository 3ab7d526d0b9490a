# Copyright (c) Syntropy Systems
"""ixcheck runs command."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ixcheck.cache import ResultCache
from ixcheck.config import get_db_path, get_output_root, load_config, require_ixcheck_dir
from ixcheck.db import get_connection
from ixcheck.errors import IxCheckError
from ixcheck.studyfile import load_study_file

console = Console()

STATUS_STYLES = {
    "queued": "yellow",
    "running": "blue",
    "complete": "green",
    "failed": "red",
}


def runs(
    study_file: Optional[Path] = typer.Argument(
        None,
        help="Only show runs with this study file's configuration",
        exists=True,
        dir_okay=False,
    ),
    last: int = typer.Option(
        20,
        "--last", "-n",
        help="Number of runs to show",
    ),
) -> None:
    """List past study runs, most recent first."""
    try:
        ixcheck_dir = require_ixcheck_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    app_config = load_config(ixcheck_dir)
    conn = get_connection(get_db_path(ixcheck_dir))
    cache = ResultCache(conn, get_output_root(app_config, ixcheck_dir), app_config.database_id)

    try:
        if study_file is not None:
            try:
                study_config = load_study_file(study_file, conn)
            except IxCheckError as e:
                console.print(f"[red]Error:[/red] {e}")
                raise typer.Exit(1) from e
            entries = cache.past_runs(study_config)
        else:
            entries = cache.all_runs()
    finally:
        conn.close()

    entries = entries[:last]
    if not entries:
        console.print("[dim]No runs found[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Name", style="dim")
    table.add_column("Run date")
    table.add_column("Status")
    table.add_column("Description")

    for entry in entries:
        index = cache.status_for(entry)
        if index is None:
            status_text = "[dim]unknown[/dim]"
            description = "-"
        else:
            style = STATUS_STYLES.get(index.status.value, "white")
            status_text = f"[{style}]{index.status.value}[/{style}]"
            description = index.description or "-"
        table.add_row(entry.study_name, entry.run_timestamp, status_text, description)

    console.print(table)
