"""Row fingerprints: deterministic, order-stable, null-aware 64-bit digests.

A fingerprint is SHA-256 over the canonical JSON record of the selected
columns (keys in column order, JSON null for NULL values), truncated to its
first 8 bytes and read as a big-endian signed integer.

The same function is registered on every source connection as the SQL scalar
``row_fingerprint(VARCHAR) -> BIGINT`` and fed DuckDB's ``json_object(...)``
output, which is the same compact, order-preserving JSON that
``canonical_record`` produces for integer, text, boolean, date and NULL values. Key
selection, shard counting and shard extraction all use that one SQL
expression (``query.fingerprint_sql``).
"""

import hashlib
import json
from typing import TYPE_CHECKING, Any, Mapping, Sequence

import duckdb
import structlog

try:
    from duckdb.sqltypes import BIGINT, VARCHAR
except ImportError:  # duckdb < 1.4
    from duckdb.typing import BIGINT, VARCHAR

from pgp_export.query import (
    FINGERPRINT_COLUMN,
    FINGERPRINT_FUNCTION,
    TableRef,
    create_fingerprint_view as build_fingerprint_view,
)

if TYPE_CHECKING:
    from pgp_export.database import DataStore

logger = structlog.get_logger()


def _json_default(value: Any) -> str:
    # Dates, timestamps, decimals, UUIDs: their string form
    return str(value)


def canonical_record(row: Mapping[str, Any], columns: Sequence[str]) -> str:
    """Serialize the selected columns of a row as compact, ordered JSON."""
    columns = list(columns)
    if not columns:
        raise ValueError("At least one column is required")
    if len(set(columns)) != len(columns):
        raise ValueError(f"Duplicate column names: {columns}")

    record = {column: row[column] for column in columns}
    return json.dumps(
        record,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_json_default,
    )


def fingerprint_from_json(record: str) -> int:
    """Hash an already canonical record to a signed 64-bit integer."""
    digest = hashlib.sha256(record.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


def fingerprint(row: Mapping[str, Any], columns: Sequence[str]) -> int:
    """
    Fingerprint of a row over an ordered list of columns.

    Matches the SQL row_fingerprint(json_object(...)) value for integer,
    text, boolean, date and NULL values, and for doubles json.dumps writes
    in plain decimal form. Doubles rendered in exponent form (1e+20) and
    timestamps serialize differently in DuckDB; rows keyed on those are
    only routed consistently by the SQL expression.
    """
    return fingerprint_from_json(canonical_record(row, columns))


def register_fingerprint_function(conn: duckdb.DuckDBPyConnection) -> None:
    """
    Register row_fingerprint() on a DuckDB connection.

    Connections to the same database file within one process share a
    catalog, so the function may already exist from another DataStore.
    DuckDB needs numpy installed to run Python scalar functions.
    """
    try:
        conn.create_function(
            FINGERPRINT_FUNCTION,
            fingerprint_from_json,
            [VARCHAR],
            BIGINT,
        )
    except duckdb.CatalogException:
        logger.debug("fingerprint_function_already_registered", function=FINGERPRINT_FUNCTION)


def fingerprint_view_name(table: TableRef) -> TableRef:
    return table.sibling(f"v_{table.name}_with_fp")


def create_fingerprint_view(
    store: "DataStore",
    table: TableRef,
    columns: Sequence[str] | None = None,
    view: TableRef | None = None,
) -> TableRef:
    """
    Create (or replace) a view exposing all columns plus the fingerprint.

    The fingerprint covers ``columns`` (all table columns when omitted) and
    is exposed as ``rec_fp``. The view calls row_fingerprint(), so it can only
    be queried through a DataStore connection.
    """
    if columns is None:
        columns = store.table_columns(table)
    view = view or fingerprint_view_name(table)

    store.execute(build_fingerprint_view(view, table, columns))
    logger.info(
        "fingerprint_view_created",
        table=str(table),
        view=str(view),
        column=FINGERPRINT_COLUMN,
        fingerprint_columns=len(columns),
    )
    return view
