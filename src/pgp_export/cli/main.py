"""Main CLI entry point for pgp-export."""

import logging
import sys
from typing import Optional

import structlog
import typer

from pgp_export import __version__


# Create main app
app = typer.Typer(
    name="pgp-export",
    help="Sharded, multi-recipient PGP encrypted exports of DuckDB tables",
    no_args_is_help=True,
)

# Global state
class GlobalState:
    json_output: bool = False
    verbose: bool = False

state = GlobalState()


def setup_cli_logging(verbose: bool) -> None:
    """Structured logs go to stderr so --json output stays parseable."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if verbose else logging.WARNING
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        print(f"pgp-export version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    json_output: bool = typer.Option(
        False, "--json", "-j",
        help="Output as JSON instead of tables"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v",
        help="Show debug information"
    ),
    version: Optional[bool] = typer.Option(
        None, "--version", "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit"
    ),
) -> None:
    """pgp-export - key discovery, shard planning and encrypted exports."""
    state.json_output = json_output
    state.verbose = verbose
    setup_cli_logging(verbose)


# Import and register command groups
from .commands import export, keys, shards

app.add_typer(export.app, name="export")
app.add_typer(keys.app, name="keys")
app.add_typer(shards.app, name="shards")


if __name__ == "__main__":
    app()
