"""Shard planning commands for pgp-export."""

from typing import Optional

import typer

from pgp_export.config import settings
from pgp_export.database import DataStore
from pgp_export.fingerprint import create_fingerprint_view
from pgp_export.query import TableRef
from pgp_export.sharding import estimate_row_bytes, recommend_shard_count, shard_counts, shard_skew

from ..main import state
from ..output import format_bytes, print_dict, print_error, print_json, print_success, print_table

app = typer.Typer(help="Plan and inspect shards")


def _table(reference: str) -> TableRef:
    try:
        return TableRef.parse(reference)
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1)


def _columns(store: DataStore, table: TableRef, requested: Optional[list[str]]) -> list[str]:
    columns = store.table_columns(table)
    if not columns:
        print_error(f"No columns found for table {table}")
        raise typer.Exit(1)
    if requested:
        unknown = [c for c in requested if c not in columns]
        if unknown:
            print_error(f"Columns not found in {table}: {', '.join(unknown)}")
            raise typer.Exit(1)
        return list(requested)
    return columns


@app.command("counts")
def counts(
    table: str = typer.Argument(..., help="Table ([db.][schema.]table)"),
    n_shards: int = typer.Option(..., "--shards", "-n", help="Number of shards"),
    column: Optional[list[str]] = typer.Option(
        None, "--column", "-c", help="Fingerprint column (repeatable, default: all)"
    ),
) -> None:
    """Show the row count of every shard."""
    if n_shards < 1:
        print_error("--shards must be >= 1")
        raise typer.Exit(1)

    ref = _table(table)
    with DataStore() as store:
        columns = _columns(store, ref, column)
        result = shard_counts(store, ref, n_shards, columns)

    rows = [{"shard_id": shard_id, "row_count": count} for shard_id, count in result]
    if state.json_output:
        print_json({
            "table": str(ref),
            "n_shards": n_shards,
            "fingerprint_columns": columns,
            "shards": rows,
            "skew": shard_skew(result),
        })
        return

    print_table(rows, columns=["shard_id", "row_count"], title=f"Shards of {ref}")
    typer.echo(f"\nTotal: {sum(c for _, c in result)} row(s), skew {shard_skew(result):.3f}")


@app.command("recommend")
def recommend(
    table: str = typer.Argument(..., help="Table ([db.][schema.]table)"),
    column: Optional[list[str]] = typer.Option(
        None, "--column", "-c", help="Fingerprint column (repeatable, default: all)"
    ),
    sample_fraction: float = typer.Option(0.01, "--sample", "-s", help="Row width sample fraction"),
) -> None:
    """Suggest a shard count from the table's size."""
    ref = _table(table)
    with DataStore() as store:
        columns = _columns(store, ref, column)
        total_rows = store.row_count(ref)
        avg_row_bytes = (
            estimate_row_bytes(store, ref, columns, sample_fraction, settings.sample_seed)
            if total_rows
            else None
        )

    n_shards = recommend_shard_count(
        total_rows,
        avg_row_bytes,
        target_rows_per_shard=settings.target_rows_per_shard,
        max_file_bytes=settings.max_file_size_bytes,
        max_shards=settings.max_shards,
    )
    data = {
        "table": str(ref),
        "total_rows": total_rows,
        "avg_row_bytes": avg_row_bytes,
        "recommended_shards": n_shards,
    }
    if state.json_output:
        print_json(data)
    else:
        if avg_row_bytes:
            data["estimated_size"] = format_bytes(total_rows * avg_row_bytes)
        print_dict(data, title="Shard recommendation")


@app.command("view")
def view(
    table: str = typer.Argument(..., help="Table ([db.][schema.]table)"),
    column: Optional[list[str]] = typer.Option(
        None, "--column", "-c", help="Fingerprint column (repeatable, default: all)"
    ),
) -> None:
    """Create a view exposing the table plus its rec_fp fingerprint column."""
    ref = _table(table)
    with DataStore() as store:
        columns = _columns(store, ref, column)
        view_ref = create_fingerprint_view(store, ref, columns)

    if state.json_output:
        print_json({"view": str(view_ref), "fingerprint_columns": columns})
    else:
        print_success(f"View {view_ref} created")
