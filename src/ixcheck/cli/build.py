# Copyright (c) Syntropy Systems
"""ixcheck build and rebuild commands."""
from __future__ import annotations

import signal
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from ixcheck import locks
from ixcheck.build import StudyBuild
from ixcheck.cancel import CancellationToken
from ixcheck.config import get_db_path, load_config, require_ixcheck_dir
from ixcheck.db import get_connection
from ixcheck.errors import IxCheckError, LockConflictError
from ixcheck.scenarios import ScenarioBuilder
from ixcheck.store import StudyDocument
from ixcheck.studyfile import load_study_file

console = Console()


class ConsoleStatus:
    """Status reporter printing to the rich console."""

    def __init__(self, out: Console, quiet: bool = False) -> None:
        self.out = out
        self.quiet = quiet

    def report_status(self, message: str) -> None:
        if not self.quiet:
            self.out.print(f"[dim]{message}[/dim]", highlight=False)

    def log_message(self, message: str) -> None:
        if not self.quiet:
            self.out.print(message, markup=False, highlight=False)

    def show_message(self, message: str) -> None:
        self.out.print(f"[dim]{message}[/dim]", highlight=False)


def install_cancel_handlers(token: CancellationToken) -> None:
    """Cancel the token on SIGINT/SIGTERM."""

    def _handler(signum, frame):
        console.print("\n[yellow]Cancelling, stopping the study engine...[/yellow]")
        token.cancel()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def build(
    study_file: Path = typer.Argument(
        ...,
        help="Study configuration YAML file",
        exists=True,
        dir_okay=False,
    ),
    name: Optional[str] = typer.Option(
        None,
        "--name", "-n",
        help="Study name (default: from the study file or the proposal call sign)",
    ),
    description: Optional[str] = typer.Option(
        None,
        "--description", "-d",
        help="Study description",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet", "-q",
        help="Only show errors and the result",
    ),
) -> None:
    """Build an interference check study without running it.

    The study is left in the database, unlocked, for inspection or rebuild.
    """
    try:
        ixcheck_dir = require_ixcheck_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    app_config = load_config(ixcheck_dir)
    conn = get_connection(get_db_path(ixcheck_dir))
    token = CancellationToken()
    install_cancel_handlers(token)

    try:
        study_config = load_study_file(study_file, conn, description)
        builder = StudyBuild.from_config(
            conn,
            study_config,
            app_config,
            ixcheck_dir,
            status=ConsoleStatus(console, quiet),
            token=token,
        )
        document = builder.build_study(name)
        if document is None:
            console.print(f"[red]Error:[/red] {builder.errors}")
            raise typer.Exit(1)
        locks.release(conn, document.study_key, document.lock)
    except IxCheckError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    finally:
        conn.close()

    console.print(f"[green]Built study #{document.study_key}:[/green] {document.name}")
    if not quiet and builder.report:
        console.print(builder.report, markup=False, highlight=False)


def rebuild(
    study_key: int = typer.Argument(..., help="Study key"),
    scenario_key: int = typer.Argument(..., help="List scenario to rebuild from"),
) -> None:
    """Rebuild MX scenario combinations from an edited list scenario.

    Entries flagged undesired in the list scenario are taken to cause
    interference; the rest are included only where MX rules allow.
    """
    try:
        ixcheck_dir = require_ixcheck_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    app_config = load_config(ixcheck_dir)
    conn = get_connection(get_db_path(ixcheck_dir))
    try:
        row = conn.execute(
            "SELECT name FROM study WHERE study_key = ?", (study_key,)
        ).fetchone()
        if row is None:
            console.print(f"[red]Error:[/red] Study #{study_key} not found")
            raise typer.Exit(1)

        try:
            lock = locks.open_for_edit(conn, study_key)
        except LockConflictError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1) from e

        document = StudyDocument(conn, study_key, row["name"], lock)
        try:
            scenario = document.get_scenario(scenario_key)
            if scenario is None:
                console.print(f"[red]Error:[/red] Scenario #{scenario_key} not found")
                raise typer.Exit(1)
            builder = ScenarioBuilder(
                document,
                0,
                status=ConsoleStatus(console),
                km_per_degree=app_config.km_per_degree,
                warn_count=app_config.mx_warn_count,
                abort_count=app_config.mx_abort_count,
            )
            count = builder.build_from_scenario(scenario)
            document.save()
        except IxCheckError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1) from e
        finally:
            locks.release(conn, study_key, document.lock)
    finally:
        conn.close()

    console.print(f"[green]Built {count} scenario(s)[/green] under {scenario.name}")
