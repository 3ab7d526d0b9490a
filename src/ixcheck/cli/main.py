# Copyright (c) Syntropy Systems
"""Main CLI entry point for ixcheck."""

import logging
import sys

import typer
from rich.console import Console
from rich.logging import RichHandler

from ixcheck.cli.build import build, rebuild
from ixcheck.cli.cache import cache_app
from ixcheck.cli.doctor import doctor
from ixcheck.cli.init_cmd import init
from ixcheck.cli.run import run
from ixcheck.cli.runs import runs
from ixcheck.cli.stations import stations_app
from ixcheck.cli.unlock import unlock

app = typer.Typer(
    name="ixcheck",
    help=(
        "Interference check studies for TV proposals. Build, probe, "
        "and run studies with cached results."
    ),
    no_args_is_help=True,
    add_completion=False,
)


def configure_logging(verbose: int = 0) -> None:
    """Send library logging to stderr through rich.

    WARNING by default, INFO with -v, DEBUG with -vv.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG

    handler = RichHandler(
        console=Console(file=sys.stderr),
        show_time=False,
        show_path=False,
        rich_tracebacks=True,
    )
    handler.setLevel(level)
    root.addHandler(handler)
    root.setLevel(level)


@app.callback()
def main(
    verbose: int = typer.Option(
        0,
        "--verbose", "-v",
        count=True,
        help="Show log output (-v for info, -vv for debug)",
    ),
) -> None:
    configure_logging(verbose)


# Register commands
_ = app.command()(init)
_ = app.command()(build)
_ = app.command()(rebuild)
_ = app.command()(run)
_ = app.command()(runs)
_ = app.command()(unlock)
_ = app.command()(doctor)

# Register sub-apps
app.add_typer(stations_app, name="stations")
app.add_typer(cache_app, name="cache")


if __name__ == "__main__":
    app()
