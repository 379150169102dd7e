"""Deterministic fingerprint sharding.

shard_id = abs(fingerprint) mod n_shards. The Python function and the SQL
predicate used by extraction are the same arithmetic over the same
fingerprint, so for a fixed column list and n_shards every row lands in
exactly one shard, and in the same one on every run.
"""

import math
from dataclasses import dataclass
from typing import Sequence

import structlog

from pgp_export.database import DataStore
from pgp_export.query import (
    TableRef,
    average_row_bytes,
    fingerprint_sql,
    quote_identifier,
    select_shard,
    shard_counts as build_shard_counts,
    shard_predicate,
)

logger = structlog.get_logger()

DEFAULT_TARGET_ROWS_PER_SHARD = 15_000_000
DEFAULT_MAX_FILE_BYTES = 5 * 1024 * 1024 * 1024
DEFAULT_MAX_SHARDS = 999


def shard_of(fingerprint: int, n_shards: int) -> int:
    """Shard a fingerprint belongs to."""
    if isinstance(n_shards, bool) or not isinstance(n_shards, int) or n_shards < 1:
        raise ValueError(f"n_shards must be a positive integer, got {n_shards!r}")
    return abs(fingerprint) % n_shards


@dataclass(frozen=True)
class ShardDescriptor:
    """One partition of a table: rows whose fingerprint maps to shard_id."""

    shard_id: int
    n_shards: int
    columns: tuple[str, ...]
    row_count: int | None = None

    @property
    def number(self) -> str:
        """1-based, zero-padded shard number used in file names."""
        return f"{self.shard_id + 1:03d}"

    @property
    def predicate(self) -> str:
        """SQL predicate selecting this shard's rows."""
        return shard_predicate(fingerprint_sql(self.columns), self.n_shards, self.shard_id)

    def select_sql(self, table: TableRef) -> str:
        return select_shard(table, self.columns, self.n_shards, self.shard_id)

    def contains(self, fingerprint: int) -> bool:
        return shard_of(fingerprint, self.n_shards) == self.shard_id


def plan_shards(
    n_shards: int,
    columns: Sequence[str],
    row_counts: dict[int, int] | None = None,
) -> list[ShardDescriptor]:
    """Descriptors for shards 0..n_shards-1 over the given fingerprint columns."""
    shard_of(0, n_shards)  # validates n_shards
    if not columns:
        raise ValueError("At least one fingerprint column is required")

    counts = row_counts or {}
    return [
        ShardDescriptor(
            shard_id=shard_id,
            n_shards=n_shards,
            columns=tuple(columns),
            row_count=counts.get(shard_id) if row_counts is not None else None,
        )
        for shard_id in range(n_shards)
    ]


def shard_counts(
    store: DataStore,
    table: TableRef,
    n_shards: int,
    columns: Sequence[str] | None = None,
    fingerprint_column: str | None = None,
) -> list[tuple[int, int]]:
    """
    Rows per shard, for skew analysis and capacity planning.

    The fingerprint is either read from ``fingerprint_column`` (e.g. the
    ``rec_fp`` column of a fingerprint view) or computed over ``columns``
    (all table columns when neither is given).

    Returns:
        (shard_id, row_count) for every shard id, zero-filled, ordered.
    """
    if fingerprint_column:
        fingerprint_expr = quote_identifier(fingerprint_column)
    else:
        if columns is None:
            columns = store.table_columns(table)
        fingerprint_expr = fingerprint_sql(columns)

    rows = store.fetchall(build_shard_counts(table, fingerprint_expr, n_shards))
    counts = {int(shard_id): int(row_count) for shard_id, row_count in rows}
    result = [(shard_id, counts.get(shard_id, 0)) for shard_id in range(n_shards)]

    if result:
        sizes = [count for _, count in result]
        logger.info(
            "shard_counts_computed",
            table=str(table),
            n_shards=n_shards,
            total_rows=sum(sizes),
            min_rows=min(sizes),
            max_rows=max(sizes),
        )
    return result


def shard_skew(counts: Sequence[tuple[int, int]]) -> float:
    """Largest shard relative to the mean shard (1.0 = perfectly balanced)."""
    sizes = [count for _, count in counts]
    total = sum(sizes)
    if not sizes or total == 0:
        return 1.0
    return max(sizes) / (total / len(sizes))


def estimate_row_bytes(
    store: DataStore,
    table: TableRef,
    columns: Sequence[str],
    sample_fraction: float = 0.01,
    seed: int | None = None,
) -> float | None:
    """Average serialized row width on a sample (None if the sample is empty)."""
    row = store.fetchone(average_row_bytes(table, columns, sample_fraction, seed))
    if not row or row[0] is None:
        return None
    return float(row[0])


def recommend_shard_count(
    total_rows: int,
    avg_row_bytes: float | None = None,
    target_rows_per_shard: int = DEFAULT_TARGET_ROWS_PER_SHARD,
    max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
    max_shards: int = DEFAULT_MAX_SHARDS,
) -> int:
    """
    Shard count sizing heuristic.

    Enough shards that no shard is expected to exceed target_rows_per_shard
    rows, nor max_file_bytes when a row width estimate is available. At
    least 1, at most max_shards.
    """
    if total_rows < 0:
        raise ValueError(f"total_rows must be >= 0, got {total_rows}")
    if target_rows_per_shard < 1:
        raise ValueError("target_rows_per_shard must be >= 1")

    by_rows = math.ceil(total_rows / target_rows_per_shard)
    by_bytes = 0
    if avg_row_bytes and max_file_bytes > 0:
        by_bytes = math.ceil(total_rows * avg_row_bytes / max_file_bytes)

    return max(1, min(max(by_rows, by_bytes), max_shards))
