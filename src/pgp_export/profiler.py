"""Approximate column statistics on a random sample.

Profiling cost scales with the sample, not the table: one Bernoulli-sampled
aggregate query computes approx_count_distinct and the null rate for every
column at once. The numbers only rank candidate key columns; the key
decision itself is verified on the full table (key_selection.py).
"""

from dataclasses import asdict, dataclass
from typing import Any, Sequence

import structlog

from pgp_export.database import DataStore
from pgp_export.query import TableRef, profile_columns as build_profile_query

logger = structlog.get_logger()


@dataclass(frozen=True)
class ColumnStat:
    """Sampled statistics for one column."""

    name: str
    approx_distinct_count: int
    null_rate: float
    cardinality_ratio: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def profile_columns(
    store: DataStore,
    table: TableRef,
    columns: Sequence[str],
    total_rows: int,
    sample_fraction: float,
    seed: int | None = None,
) -> list[ColumnStat]:
    """
    Profile all columns on one shared sample.

    Args:
        store: Source data store
        table: Table to profile
        columns: Columns to profile, in output order
        total_rows: Exact table row count (denominator of cardinality_ratio)
        sample_fraction: Fraction of rows to sample, in (0, 1]
        seed: Optional sampling seed for repeatable runs

    Returns:
        One ColumnStat per column, in the given order. An empty sample gives
        NDV 0 and null rate 0.0 for every column.
    """
    query = build_profile_query(table, columns, sample_fraction, seed)
    row = store.fetchone(query)

    sampled_rows = int(row[0]) if row else 0
    stats = []
    for i, column in enumerate(columns):
        ndv = row[1 + 2 * i] if row else None
        null_rate = row[2 + 2 * i] if row else None
        ndv = int(ndv or 0)
        stats.append(
            ColumnStat(
                name=column,
                approx_distinct_count=ndv,
                null_rate=float(null_rate) if null_rate is not None else 0.0,
                cardinality_ratio=ndv / total_rows if total_rows else 0.0,
            )
        )

    logger.debug(
        "columns_profiled",
        table=str(table),
        columns=len(columns),
        sampled_rows=sampled_rows,
        sample_fraction=sample_fraction,
    )
    return stats


def profile(
    store: DataStore,
    table: TableRef,
    column: str,
    sample_fraction: float,
    total_rows: int | None = None,
    seed: int | None = None,
) -> ColumnStat:
    """Profile a single column (counts the table when total_rows is not given)."""
    if total_rows is None:
        total_rows = store.row_count(table)
    return profile_columns(store, table, [column], total_rows, sample_fraction, seed)[0]


def rank_columns(stats: Sequence[ColumnStat]) -> list[ColumnStat]:
    """More unique first, then less null; ties keep ordinal order."""
    return sorted(stats, key=lambda s: (-s.cardinality_ratio, s.null_rate))
