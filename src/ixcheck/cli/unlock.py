# Copyright (c) Syntropy Systems
"""ixcheck unlock command."""
from __future__ import annotations

import typer
from rich.console import Console

from ixcheck import locks
from ixcheck.config import get_db_path, require_ixcheck_dir
from ixcheck.db import get_connection
from ixcheck.errors import LockConflictError
from ixcheck.models.study import LockState

console = Console()


def unlock(
    study_key: int = typer.Argument(..., help="Study key"),
    force: bool = typer.Option(
        False,
        "--force", "-f",
        help="Clear the lock even if a build or run may still hold it",
    ),
) -> None:
    """Show or clear a study lock.

    Without --force, only reports the current lock. Forcing a release while
    an engine still runs against the study makes that run fail its next lock
    change.
    """
    try:
        ixcheck_dir = require_ixcheck_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    conn = get_connection(get_db_path(ixcheck_dir))
    try:
        current = locks.read_lock(conn, study_key)
        if current is None:
            console.print(f"[red]Error:[/red] Study #{study_key} not found")
            raise typer.Exit(1)

        if current.state == LockState.NONE:
            console.print(f"[dim]Study #{study_key} is not locked[/dim]")
            return

        if not force:
            console.print(
                f"[yellow]Study #{study_key} holds a {current.state.name.lower()} lock[/yellow] "
                f"[dim](generation {current.generation})[/dim]"
            )
            console.print("[dim]Use --force to clear it[/dim]")
            return

        try:
            locks.force_release(conn, study_key)
        except LockConflictError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1) from e
    finally:
        conn.close()

    console.print(f"[green]Cleared {current.state.name.lower()} lock on study #{study_key}[/green]")
