"""Greedy minimal key column selection.

Algorithm:
1. Fetch the ordered column list (SchemaError when empty)
2. Count rows; an empty table yields an empty result, no scans
3. Profile every column on one shared sample (profiler.py)
4. Rank: higher cardinality ratio first, lower null rate as tie-break
5. Append ranked columns one at a time; after each append count DISTINCT
   row fingerprints over the working set on the FULL table
6. Stop once distinct / total >= threshold, or when columns run out
7. exact_unique = distinct == total
8. Persist the result with its selection path to the audit table

Only step 5 scans the full table, and only once per appended column.
"""

import time
from dataclasses import dataclass
from typing import Any, Literal

import structlog

from pgp_export import metrics
from pgp_export.config import settings
from pgp_export.database import AuditDB, DataStore, audit_db as default_audit_db
from pgp_export.errors import SchemaError
from pgp_export.profiler import ColumnStat, profile_columns, rank_columns
from pgp_export.query import TableRef, count_distinct_fingerprints

logger = structlog.get_logger()

PersistMode = Literal["append", "replace"]


@dataclass(frozen=True)
class SelectionStep:
    """State after the k-th column was appended."""

    k: int
    columns: tuple[str, ...]
    distinct_count: int
    ratio: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "k": self.k,
            "columns": list(self.columns),
            "distinct_count": self.distinct_count,
            "ratio": self.ratio,
        }


@dataclass(frozen=True)
class KeySelectionResult:
    """Outcome of a key column selection run."""

    table: TableRef
    selected_columns: tuple[str, ...]
    distinct_row_count: int
    total_rows: int
    uniqueness_ratio: float
    exact_unique: bool
    threshold_met: bool
    sample_fraction: float
    uniqueness_threshold: float
    column_stats: tuple[ColumnStat, ...] = ()
    selection_path: tuple[SelectionStep, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "database": self.table.database,
            "schema": self.table.schema,
            "table": self.table.name,
            "selected_columns": list(self.selected_columns),
            "distinct_row_count": self.distinct_row_count,
            "total_rows": self.total_rows,
            "uniqueness_ratio": self.uniqueness_ratio,
            "exact_unique": self.exact_unique,
            "threshold_met": self.threshold_met,
            "sample_fraction": self.sample_fraction,
            "uniqueness_threshold": self.uniqueness_threshold,
            "column_stats": [s.to_dict() for s in self.column_stats],
            "selection_path": [s.to_dict() for s in self.selection_path],
        }


class KeyColumnSelector:
    """Finds a compact set of columns that (nearly) uniquely identifies rows."""

    def __init__(self, store: DataStore, audit: AuditDB | None = None) -> None:
        self.store = store
        self.audit = audit or default_audit_db

    def count_distinct(self, table: TableRef, columns: list[str]) -> int:
        """Exact distinct fingerprint count over the full table."""
        metrics.KEY_SELECTION_SCANS_TOTAL.inc()
        row = self.store.fetchone(count_distinct_fingerprints(table, columns))
        return int(row[0]) if row else 0

    def select(
        self,
        table: TableRef | str,
        sample_fraction: float | None = None,
        uniqueness_threshold: float | None = None,
        seed: int | None = None,
        persist: bool = True,
        persist_mode: PersistMode = "append",
    ) -> KeySelectionResult:
        """Run the greedy selection and (optionally) persist the result."""
        if isinstance(table, str):
            table = TableRef.parse(table)
        if sample_fraction is None:
            sample_fraction = settings.key_sample_fraction
        if uniqueness_threshold is None:
            uniqueness_threshold = settings.uniqueness_threshold
        if seed is None:
            seed = settings.sample_seed

        if not 0 < sample_fraction <= 1:
            raise ValueError(f"sample_fraction must be in (0, 1], got {sample_fraction}")
        if not 0 < uniqueness_threshold <= 1:
            raise ValueError(
                f"uniqueness_threshold must be in (0, 1], got {uniqueness_threshold}"
            )
        if persist_mode not in ("append", "replace"):
            raise ValueError(f"Unknown persist mode: {persist_mode}")

        start_time = time.time()
        logger.info(
            "key_selection_start",
            table=str(table),
            sample_fraction=sample_fraction,
            uniqueness_threshold=uniqueness_threshold,
        )

        columns = self.store.table_columns(table)
        if not columns:
            metrics.KEY_SELECTIONS_TOTAL.labels(outcome="error").inc()
            raise SchemaError(
                f"No columns found for table {table}",
                details={"table": str(table)},
            )

        total_rows = self.store.row_count(table)
        if total_rows == 0:
            result = KeySelectionResult(
                table=table,
                selected_columns=(),
                distinct_row_count=0,
                total_rows=0,
                uniqueness_ratio=0.0,
                exact_unique=False,
                threshold_met=False,
                sample_fraction=sample_fraction,
                uniqueness_threshold=uniqueness_threshold,
            )
            logger.info("key_selection_empty_table", table=str(table))
            metrics.KEY_SELECTIONS_TOTAL.labels(outcome="empty_table").inc()
            if persist:
                self._persist(result, persist_mode)
            return result

        stats = profile_columns(self.store, table, columns, total_rows, sample_fraction, seed)
        ranked = rank_columns(stats)

        selected: list[str] = []
        path: list[SelectionStep] = []
        distinct_rows = 0
        ratio = 0.0

        for stat in ranked:
            selected.append(stat.name)
            distinct_rows = self.count_distinct(table, selected)
            ratio = distinct_rows / total_rows
            path.append(
                SelectionStep(
                    k=len(selected),
                    columns=tuple(selected),
                    distinct_count=distinct_rows,
                    ratio=ratio,
                )
            )
            logger.info(
                "key_selection_step",
                table=str(table),
                k=len(selected),
                column=stat.name,
                cardinality_ratio=stat.cardinality_ratio,
                null_rate=stat.null_rate,
                distinct_rows=distinct_rows,
                ratio=ratio,
            )
            if ratio >= uniqueness_threshold:
                break

        threshold_met = ratio >= uniqueness_threshold
        result = KeySelectionResult(
            table=table,
            selected_columns=tuple(selected),
            distinct_row_count=distinct_rows,
            total_rows=total_rows,
            uniqueness_ratio=ratio,
            exact_unique=distinct_rows == total_rows,
            threshold_met=threshold_met,
            sample_fraction=sample_fraction,
            uniqueness_threshold=uniqueness_threshold,
            column_stats=tuple(stats),
            selection_path=tuple(path),
        )

        if not threshold_met:
            logger.warning(
                "key_selection_threshold_not_met",
                table=str(table),
                uniqueness_ratio=ratio,
                uniqueness_threshold=uniqueness_threshold,
                columns=len(selected),
            )

        if persist:
            self._persist(result, persist_mode)

        metrics.KEY_SELECTIONS_TOTAL.labels(
            outcome="threshold_met" if threshold_met else "best_effort"
        ).inc()
        metrics.KEY_SELECTION_COLUMNS.observe(len(selected))

        logger.info(
            "key_selection_complete",
            table=str(table),
            selected_columns=list(selected),
            total_rows=total_rows,
            distinct_rows=distinct_rows,
            uniqueness_ratio=ratio,
            exact_unique=result.exact_unique,
            duration_ms=int((time.time() - start_time) * 1000),
        )
        return result

    def _persist(self, result: KeySelectionResult, persist_mode: PersistMode) -> None:
        self.audit.save_key_selection(result.to_dict(), replace=persist_mode == "replace")

    def latest(self, table: TableRef | str) -> dict[str, Any] | None:
        """Most recently persisted selection for a table."""
        if isinstance(table, str):
            table = TableRef.parse(table)
        return self.audit.latest_key_selection(table.name, table.schema, table.database)
