"""Parameterized SQL builder for the source data store.

Identifiers (database, schema, table and column names) are validated and
quoted here; values travel as prepared-statement parameters. DuckDB cannot
bind parameters inside COPY ... TO or USING SAMPLE, so those statements only
ever receive validated numbers and quoted string literals.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

# Python scalar function registered on every source connection (see fingerprint.py)
FINGERPRINT_FUNCTION = "row_fingerprint"

# Column exposing the fingerprint in fingerprint views
FINGERPRINT_COLUMN = "rec_fp"

SUPPORTED_FORMATS = ("csv", "parquet")


@dataclass(frozen=True)
class Query:
    """SQL text plus positional parameters."""

    sql: str
    params: list[Any] = field(default_factory=list)


def quote_identifier(name: str) -> str:
    """Quote an identifier, doubling embedded double quotes."""
    if not isinstance(name, str) or not name:
        raise ValueError("Identifier must be a non-empty string")
    if "\x00" in name:
        raise ValueError(f"Identifier contains NUL byte: {name!r}")
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    """Quote a string literal, doubling embedded single quotes."""
    if "\x00" in value:
        raise ValueError("String literal contains NUL byte")
    return "'" + value.replace("'", "''") + "'"


def _split_reference(reference: str) -> list[str]:
    """Split a dotted reference, honouring double-quoted parts."""
    parts: list[str] = []
    current: list[str] = []
    in_quotes = False
    i = 0
    while i < len(reference):
        ch = reference[i]
        if in_quotes:
            if ch == '"':
                if i + 1 < len(reference) and reference[i + 1] == '"':
                    current.append('"')
                    i += 1
                else:
                    in_quotes = False
            else:
                current.append(ch)
        elif ch == '"':
            in_quotes = True
        elif ch == ".":
            parts.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
        i += 1

    if in_quotes:
        raise ValueError(f"Unterminated quote in table reference: {reference}")
    parts.append("".join(current).strip())

    if any(not part for part in parts):
        raise ValueError(f"Empty part in table reference: {reference}")
    return parts


@dataclass(frozen=True)
class TableRef:
    """A [database.][schema.]table reference."""

    name: str
    schema: str | None = None
    database: str | None = None

    @classmethod
    def parse(cls, reference: str) -> "TableRef":
        parts = _split_reference(reference)
        if len(parts) == 1:
            return cls(name=parts[0])
        if len(parts) == 2:
            return cls(name=parts[1], schema=parts[0])
        if len(parts) == 3:
            return cls(name=parts[2], schema=parts[1], database=parts[0])
        raise ValueError(f"Too many parts in table reference: {reference}")

    @property
    def schema_name(self) -> str:
        return self.schema or "main"

    @property
    def sql(self) -> str:
        parts = [p for p in (self.database, self.schema, self.name) if p]
        return ".".join(quote_identifier(p) for p in parts)

    def sibling(self, name: str) -> "TableRef":
        """Reference to another object in the same schema."""
        return TableRef(name=name, schema=self.schema, database=self.database)

    def __str__(self) -> str:
        return ".".join(p for p in (self.database, self.schema, self.name) if p)


def _validate_columns(columns: Sequence[str]) -> list[str]:
    columns = list(columns)
    if not columns:
        raise ValueError("At least one column is required")
    if len(set(columns)) != len(columns):
        raise ValueError(f"Duplicate column names: {columns}")
    return columns


def _validate_fraction(sample_fraction: float) -> float:
    if not 0 < sample_fraction <= 1:
        raise ValueError(f"sample_fraction must be in (0, 1], got {sample_fraction}")
    return float(sample_fraction)


def _validate_shards(n_shards: int, shard_id: int | None = None) -> None:
    if isinstance(n_shards, bool) or not isinstance(n_shards, int) or n_shards < 1:
        raise ValueError(f"n_shards must be a positive integer, got {n_shards!r}")
    if shard_id is not None:
        if isinstance(shard_id, bool) or not isinstance(shard_id, int):
            raise ValueError(f"shard_id must be an integer, got {shard_id!r}")
        if not 0 <= shard_id < n_shards:
            raise ValueError(f"shard_id {shard_id} out of range for {n_shards} shards")


def sample_clause(sample_fraction: float, seed: int | None = None) -> str:
    """USING SAMPLE clause for a Bernoulli sample (empty for a full scan)."""
    fraction = _validate_fraction(sample_fraction)
    if fraction >= 1:
        return ""
    percent = format(fraction * 100, ".10g")
    if seed is None:
        return f"USING SAMPLE {percent} PERCENT (bernoulli)"
    return f"USING SAMPLE {percent} PERCENT (bernoulli, {int(seed)})"


# ============================================
# Introspection
# ============================================


def count_rows(table: TableRef) -> Query:
    return Query(f"SELECT COUNT(*) FROM {table.sql}")


def probe_table(table: TableRef) -> Query:
    """Cheap read used to validate access to a table."""
    return Query(f"SELECT 1 FROM {table.sql} LIMIT 1")


def list_columns(table: TableRef) -> Query:
    """Ordered column names of a table or view."""
    if table.database:
        catalog_filter = "table_catalog = ?"
        params = [table.database, table.schema_name, table.name]
    else:
        catalog_filter = "table_catalog = current_database()"
        params = [table.schema_name, table.name]

    return Query(
        f"""
        SELECT column_name
        FROM information_schema.columns
        WHERE {catalog_filter} AND table_schema = ? AND table_name = ?
        ORDER BY ordinal_position
        """,
        params,
    )


# ============================================
# Fingerprints
# ============================================


def json_record_sql(columns: Sequence[str]) -> str:
    """Order-preserving, null-keeping JSON object over the given columns."""
    columns = _validate_columns(columns)
    pairs = ", ".join(f"{quote_literal(c)}, {quote_identifier(c)}" for c in columns)
    return f"CAST(json_object({pairs}) AS VARCHAR)"


def fingerprint_sql(columns: Sequence[str]) -> str:
    """SQL expression computing the row fingerprint over the given columns."""
    return f"{FINGERPRINT_FUNCTION}({json_record_sql(columns)})"


def shard_key_sql(fingerprint_expr: str, n_shards: int) -> str:
    """SQL expression for abs(fingerprint) mod n_shards.

    The fingerprint is widened to HUGEINT first so abs() of the minimum BIGINT
    does not overflow.
    """
    _validate_shards(n_shards)
    return f"(abs(CAST({fingerprint_expr} AS HUGEINT)) % {n_shards})"


def shard_predicate(fingerprint_expr: str, n_shards: int, shard_id: int) -> str:
    _validate_shards(n_shards, shard_id)
    return f"{shard_key_sql(fingerprint_expr, n_shards)} = {shard_id}"


def count_distinct_fingerprints(table: TableRef, columns: Sequence[str]) -> Query:
    """Exact number of distinct fingerprints over the full table."""
    return Query(f"SELECT COUNT(DISTINCT {fingerprint_sql(columns)}) FROM {table.sql}")


def shard_counts(table: TableRef, fingerprint_expr: str, n_shards: int) -> Query:
    key = shard_key_sql(fingerprint_expr, n_shards)
    return Query(
        f"""
        SELECT CAST({key} AS INTEGER) AS shard_id, COUNT(*) AS row_count
        FROM {table.sql}
        GROUP BY 1
        ORDER BY 1
        """
    )


def create_fingerprint_view(view: TableRef, table: TableRef, columns: Sequence[str]) -> Query:
    return Query(
        f"CREATE OR REPLACE VIEW {view.sql} AS "
        f"SELECT t.*, {fingerprint_sql(columns)} AS {quote_identifier(FINGERPRINT_COLUMN)} "
        f"FROM {table.sql} AS t"
    )


# ============================================
# Sampling
# ============================================


def profile_columns(
    table: TableRef,
    columns: Sequence[str],
    sample_fraction: float,
    seed: int | None = None,
) -> Query:
    """Approximate NDV and null rate for every column on one shared sample.

    Result row: sampled_rows, then (ndv, null_rate) per column in order.
    """
    columns = _validate_columns(columns)
    select = ["COUNT(*) AS sampled_rows"]
    for i, column in enumerate(columns):
        quoted = quote_identifier(column)
        select.append(f"approx_count_distinct({quoted}) AS ndv_{i}")
        select.append(f"avg(CASE WHEN {quoted} IS NULL THEN 1 ELSE 0 END) AS null_rate_{i}")

    return Query(
        f"SELECT {', '.join(select)} FROM {table.sql} {sample_clause(sample_fraction, seed)}"
    )


def average_row_bytes(
    table: TableRef,
    columns: Sequence[str],
    sample_fraction: float,
    seed: int | None = None,
) -> Query:
    """Average serialized row width on a sample (sizing heuristic input)."""
    record = json_record_sql(columns)
    return Query(
        f"SELECT avg(strlen({record})) FROM {table.sql} {sample_clause(sample_fraction, seed)}"
    )


# ============================================
# Bulk extract
# ============================================


def select_shard(table: TableRef, columns: Sequence[str], n_shards: int, shard_id: int) -> str:
    predicate = shard_predicate(fingerprint_sql(columns), n_shards, shard_id)
    return f"SELECT * FROM {table.sql} WHERE {predicate}"


def copy_to(
    select_sql: str,
    path: Path,
    file_format: str,
    delimiter: str | None = None,
    include_header: bool | None = None,
) -> Query:
    """COPY (select) TO 'path' writing a single CSV or Parquet file."""
    options = []
    if file_format == "csv":
        options.append("FORMAT CSV")
        options.append(f"DELIMITER {quote_literal(delimiter or ',')}")
        options.append(f"HEADER {'true' if include_header else 'false'}")
    elif file_format == "parquet":
        options.append("FORMAT PARQUET")
    else:
        raise ValueError(f"Unsupported format: {file_format}")

    return Query(f"COPY ({select_sql}) TO {quote_literal(str(path))} ({', '.join(options)})")
