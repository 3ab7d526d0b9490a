# Copyright (c) Syntropy Systems
"""ixcheck run command."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from ixcheck.build import StudyBuild
from ixcheck.cache import ResultCache
from ixcheck.cancel import CancellationToken
from ixcheck.cli.build import ConsoleStatus, install_cancel_handlers
from ixcheck.config import get_db_path, get_output_root, load_config, require_ixcheck_dir
from ixcheck.db import get_connection
from ixcheck.errors import IxCheckError
from ixcheck.models.cache import RunIndexStatus
from ixcheck.studyfile import load_study_file

console = Console()
logger = logging.getLogger(__name__)


def run(
    study_file: Path = typer.Argument(
        ...,
        help="Study configuration YAML file",
        exists=True,
        dir_okay=False,
    ),
    rerun: bool = typer.Option(
        False,
        "--rerun", "-r",
        help="Run again even if a completed run with the same configuration exists",
    ),
    description: Optional[str] = typer.Option(
        None,
        "--description", "-d",
        help="Run description, stored in the run status document",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet", "-q",
        help="Only show errors and the result",
    ),
) -> None:
    """Build and run an interference check study.

    Results are cached by configuration. A completed earlier run with the same
    configuration is reported instead of running again, unless --rerun.
    """
    try:
        ixcheck_dir = require_ixcheck_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    app_config = load_config(ixcheck_dir)
    conn = get_connection(get_db_path(ixcheck_dir))
    cache = ResultCache(conn, get_output_root(app_config, ixcheck_dir), app_config.database_id)

    try:
        # Silent maintenance, repairs whatever an earlier crash left behind
        repaired = cache.cleanup()
        for error in repaired.errors:
            logger.warning("cache cleanup: %s", error)

        try:
            study_config = load_study_file(study_file, conn, description)
        except IxCheckError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1) from e

        if not rerun:
            for past in cache.past_runs(study_config):
                index = cache.status_for(past)
                if index is not None and index.status == RunIndexStatus.COMPLETE:
                    console.print(
                        f"[green]Using earlier run {past.study_name}[/green] "
                        f"[dim]({past.run_timestamp})[/dim]"
                    )
                    console.print(f"  [dim]output:[/dim] {past.output_directory}")
                    console.print("[dim]Use --rerun to run again[/dim]")
                    return

        token = CancellationToken()
        install_cancel_handlers(token)
        builder = StudyBuild.from_config(
            conn,
            study_config,
            app_config,
            ixcheck_dir,
            status=ConsoleStatus(console, quiet),
            token=token,
        )
        entry = cache.reserve(study_config)
        console.print(f"[dim]Reserved run {entry.study_name}[/dim]")
        outcome = builder.run_study(cache, entry)
    finally:
        conn.close()

    if not outcome.success:
        console.print(f"[red]Error:[/red] {outcome.message}")
        console.print(f"  [dim]log:[/dim] {Path(entry.output_directory) / app_config.log_file_name}")
        raise typer.Exit(1)

    console.print(f"[green]{outcome.message}[/green] {entry.study_name}")
    console.print(f"  [dim]output:[/dim] {entry.output_directory}")
    for name in outcome.output_files:
        console.print(f"  [dim]file:[/dim] {name}")
