"""Key column discovery commands for pgp-export."""

from typing import Optional

import typer

from pgp_export.database import DataStore, audit_db
from pgp_export.errors import ExportError
from pgp_export.key_selection import KeyColumnSelector
from pgp_export.query import TableRef

from ..main import state
from ..output import print_dict, print_error, print_json, print_success, print_table, print_warning

app = typer.Typer(help="Discover and inspect key columns")


@app.command("select")
def select_keys(
    table: str = typer.Argument(..., help="Table ([db.][schema.]table)"),
    sample_fraction: Optional[float] = typer.Option(
        None, "--sample", "-s", help="Profiling sample fraction in (0, 1]"
    ),
    threshold: Optional[float] = typer.Option(
        None, "--threshold", "-t", help="Uniqueness threshold in (0, 1]"
    ),
    seed: Optional[int] = typer.Option(None, "--seed", help="Sampling seed"),
    replace: bool = typer.Option(False, "--replace", help="Replace earlier saved selections"),
    no_save: bool = typer.Option(False, "--no-save", help="Do not persist the result"),
) -> None:
    """Greedily select a minimal set of key columns for a table."""
    try:
        with DataStore() as store:
            result = KeyColumnSelector(store).select(
                table,
                sample_fraction=sample_fraction,
                uniqueness_threshold=threshold,
                seed=seed,
                persist=not no_save,
                persist_mode="replace" if replace else "append",
            )
    except (ExportError, ValueError) as e:
        print_error(str(e))
        raise typer.Exit(1)

    if state.json_output:
        print_json(result.to_dict())
        return

    if result.total_rows == 0:
        print_warning(f"Table {result.table} is empty, no key selected")
        return

    print_table(
        [step.to_dict() for step in result.selection_path],
        columns=["k", "columns", "distinct_count", "ratio"],
        title="Selection path",
    )
    if result.threshold_met:
        print_success(f"Key columns: {', '.join(result.selected_columns)}")
    else:
        print_warning(
            f"Threshold {result.uniqueness_threshold} not reached, "
            f"best effort: {', '.join(result.selected_columns)}"
        )
    print_dict({
        "Total rows": result.total_rows,
        "Distinct rows": result.distinct_row_count,
        "Uniqueness ratio": result.uniqueness_ratio,
        "Exact unique": result.exact_unique,
    })


@app.command("show")
def show_keys(
    table: str = typer.Argument(..., help="Table ([db.][schema.]table)"),
    limit: int = typer.Option(1, "--limit", "-l", help="Number of saved selections"),
) -> None:
    """Show saved key selections for a table, newest first."""
    try:
        ref = TableRef.parse(table)
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1)

    selections = audit_db.list_key_selections(ref.name, ref.schema, ref.database, limit)

    if state.json_output:
        print_json(selections)
        return

    if not selections:
        typer.echo(f"No saved key selections for {table}")
        return

    print_table(
        selections,
        columns=["as_of", "selected_columns", "total_rows", "distinct_row_count", "uniqueness_ratio", "exact_unique"],
        title=f"Key selections for {table}",
    )
