# Copyright (c) Syntropy Systems
"""ixcheck doctor command."""

import shutil
import sqlite3
from typing import cast

from rich.console import Console

from ixcheck.cache import ResultCache
from ixcheck.config import (
    find_ixcheck_dir,
    get_db_path,
    get_output_root,
    get_working_dir,
    load_config,
    resolve_path,
)
from ixcheck.db import get_connection, list_station_data
from ixcheck.errors import ConfigurationError
from ixcheck.resources import engine_process_limit, get_system_resources
from ixcheck.search import load_rules

console = Console()


def doctor() -> None:
    """Check ixcheck setup and diagnose issues.

    Verifies:
    - ixcheck directory exists
    - SQLite database is healthy
    - Station data is imported
    - Study engine is on the path
    - Engine process limit for this host
    - Run output cache is consistent
    """
    issues: list[str] = []
    warnings: list[str] = []

    # Check ixcheck directory
    ixcheck_dir = find_ixcheck_dir()
    if ixcheck_dir is None:
        console.print("[red]✗[/red] No .ixcheck directory found")
        console.print("  Run [bold]ixcheck init[/bold] to initialize a project")
        return

    console.print(f"[green]✓[/green] ixcheck directory: {ixcheck_dir}")
    config = load_config(ixcheck_dir)

    # Check database
    db_path = get_db_path(ixcheck_dir)
    if not db_path.exists():
        console.print(f"[red]✗[/red] Database not found: {db_path}")
        issues.append("Database missing")
    else:
        conn = None
        try:
            conn = get_connection(db_path)

            # Check WAL mode
            result = cast(
                "sqlite3.Row | None",
                conn.execute("PRAGMA journal_mode").fetchone(),
            )
            if result is not None and cast("str", result[0]).lower() == "wal":
                console.print("[green]✓[/green] SQLite: WAL mode enabled")
            else:
                journal_mode = (
                    cast("str", result[0]) if result is not None else "unknown"
                )
                warning_prefix = (
                    f"[yellow]⚠[/yellow] SQLite: journal_mode is {journal_mode},"
                )
                console.print(f"{warning_prefix} expected WAL")
                warnings.append("Not using WAL mode")

            # Check station data
            data_sets = list_station_data(conn)
            if data_sets:
                total = sum(d["record_count"] for d in data_sets)
                console.print(
                    f"[green]✓[/green] Station data: {len(data_sets)} set(s), "
                    f"{total} record(s)"
                )
            else:
                console.print("[yellow]⚠[/yellow] No station data imported")
                warnings.append("No station data")

            # Check locked studies
            locked = conn.execute(
                "SELECT COUNT(*) AS n FROM study WHERE study_lock != 0"
            ).fetchone()
            if locked["n"]:
                console.print(f"[dim]•[/dim] {locked['n']} study(ies) locked")

            # Check run cache
            cache = ResultCache(conn, get_output_root(config, ixcheck_dir), config.database_id)
            report = cache.report()
            console.print(
                f"[green]✓[/green] Run cache: {report.index_count} indexed, "
                f"{report.directory_count} directories, {report.size_text}"
            )
            if report.index_count != report.directory_count:
                console.print(
                    "[yellow]⚠[/yellow] Run cache index and directories differ, "
                    "run [bold]ixcheck cache cleanup[/bold]"
                )
                warnings.append("Run cache inconsistent")

        except sqlite3.Error as e:
            console.print(f"[red]✗[/red] Database error: {e}")
            issues.append(f"Database error: {e}")
        finally:
            if conn is not None:
                conn.close()

    # Check engine
    argv = config.engine_argv_prefix()
    engine = shutil.which(argv[0]) if argv else None
    if engine:
        console.print(f"[green]✓[/green] Study engine: {engine}")
    else:
        console.print(f"[red]✗[/red] Study engine not found: {config.engine_command}")
        issues.append("Study engine missing")

    work_dir = get_working_dir(config, ixcheck_dir)
    if not work_dir.is_dir():
        console.print(f"[yellow]⚠[/yellow] Engine working directory not found: {work_dir}")
        warnings.append("Working directory missing")

    # Check interference rules
    if config.rules_file:
        try:
            rules = load_rules(resolve_path(ixcheck_dir, config.rules_file))
            console.print(f"[green]✓[/green] Interference rules: {len(rules)} rule(s)")
        except ConfigurationError as e:
            console.print(f"[red]✗[/red] {e}")
            issues.append("Bad rules file")

    # Check engine concurrency
    resources = get_system_resources()
    limit = engine_process_limit(config.engine_memory_gb, resources)
    memory = (
        f"{resources.memory_total_gb:.1f} GB"
        if resources.memory_total_gb is not None
        else "unknown memory"
    )
    if config.max_engine_processes is not None:
        console.print(
            f"[dim]•[/dim] Engine processes: {config.max_engine_processes} (configured)"
        )
    elif limit > 0:
        console.print(
            f"[green]✓[/green] Engine processes: {limit} "
            f"({resources.cpu_count} CPUs, {memory})"
        )
    else:
        console.print(
            f"[red]✗[/red] Not enough memory for one engine process "
            f"({memory}, {config.engine_memory_gb} GB per engine)"
        )
        issues.append("Insufficient memory")

    # Summary
    console.print()
    if issues:
        console.print(f"[red]Found {len(issues)} issue(s)[/red]")
        for issue in issues:
            console.print(f"  - {issue}")
    elif warnings:
        console.print(f"[yellow]Found {len(warnings)} warning(s)[/yellow]")
        for warning in warnings:
            console.print(f"  - {warning}")
    else:
        console.print("[green]All checks passed[/green]")
