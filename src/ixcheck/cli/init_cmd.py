# Copyright (c) Syntropy Systems
"""ixcheck init command."""

from pathlib import Path

import typer
import yaml
from rich.console import Console

from ixcheck.db import init_db

console = Console()


def init(
    path: Path = typer.Argument(
        Path(),
        help="Directory to initialize (default: current directory)",
    ),
) -> None:
    """Initialize a new ixcheck project.

    Creates a .ixcheck directory with configuration, database, engine working
    directory, and run output root.
    """
    target = path.resolve()
    ixcheck_dir = target / ".ixcheck"

    if ixcheck_dir.exists():
        console.print(f"[yellow]Already initialized:[/yellow] {ixcheck_dir}")
        return

    # Create directory structure
    ixcheck_dir.mkdir(parents=True)
    work_dir = ixcheck_dir / "work"
    work_dir.mkdir()
    out_dir = ixcheck_dir / "out"
    out_dir.mkdir()

    # Create default config
    config = {
        "engine_command": "tvstudy-engine",
        "working_dir": "work",
        "output_root": "out",
        "database_id": "local",
        "engine_memory_gb": 2.0,
        "kill_grace_period": 10,
        "status_interval": 2.95,
        "mx_warn_count": 15,
        "mx_abort_count": 18,
    }

    config_path = ixcheck_dir / "config.yaml"
    with config_path.open("w") as f:
        yaml.dump(config, f, default_flow_style=False)

    # Initialize database
    db_path = ixcheck_dir / "ixcheck.db"
    init_db(db_path)

    console.print(f"[green]Initialized ixcheck project:[/green] {ixcheck_dir}")
    console.print(f"  [dim]config:[/dim] {config_path}")
    console.print(f"  [dim]database:[/dim] {db_path}")
    console.print(f"  [dim]work:[/dim] {work_dir}")
    console.print(f"  [dim]output:[/dim] {out_dir}")
