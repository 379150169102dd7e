"""DuckDB database management - source DataStore and AuditDB.

DataStore
=========
The managed data store the exports read from. A single connection per
DataStore, opened lazily and guarded by a lock; every query goes through it
so the row_fingerprint() scalar function registered at connect time is
available to key selection, shard counts and extraction alike.

AuditDB
=======
Separate DuckDB file holding the audit trail:
- report_process_logs: one row per export run (flag 'C' complete / 'F' failed)
- export_keys: one row per key column selection
"""

import json
import threading
import time
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Generator

import duckdb
import structlog

from pgp_export import metrics
from pgp_export.config import settings
from pgp_export.fingerprint import register_fingerprint_function
from pgp_export.query import Query, TableRef, count_rows, list_columns, quote_identifier

logger = structlog.get_logger()


# ============================================
# Source data store
# ============================================


class DataStore:
    """
    Connection to the source DuckDB database.

    DuckDB connections are not safe for concurrent use, so callers from
    worker threads are serialized on an internal lock. Bulk extracts are
    internally parallel in DuckDB anyway.

    Usage:
        with DataStore(path) as store:
            rows = store.fetchall(Query("SELECT 1"))
    """

    def __init__(self, db_path: Path | str | None = None, read_only: bool = False) -> None:
        self._db_path = Path(db_path) if db_path is not None else None
        self._read_only = read_only
        self._conn: duckdb.DuckDBPyConnection | None = None
        self._lock = threading.RLock()

    @property
    def db_path(self) -> Path:
        """Database path (settings are read on each access to support testing)."""
        return self._db_path or settings.source_db_path

    def _connect(self) -> duckdb.DuckDBPyConnection:
        db_path = self.db_path
        if not self._read_only:
            db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = duckdb.connect(
            str(db_path),
            read_only=self._read_only,
            config={
                "threads": settings.duckdb_threads,
                "memory_limit": settings.duckdb_memory_limit,
            },
        )
        register_fingerprint_function(conn)
        logger.debug("source_store_connected", path=str(db_path), read_only=self._read_only)
        return conn

    @contextmanager
    def connection(self) -> Generator[duckdb.DuckDBPyConnection, None, None]:
        """Exclusive access to the shared connection."""
        with self._lock:
            if self._conn is None:
                self._conn = self._connect()
            yield self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> "DataStore":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def _run(self, query: Query, operation: str, fetch: bool) -> list[tuple]:
        start_time = time.time()
        try:
            with self.connection() as conn:
                if query.params:
                    result = conn.execute(query.sql, query.params)
                else:
                    result = conn.execute(query.sql)
                return result.fetchall() if fetch else []
        finally:
            duration = time.time() - start_time
            metrics.STORE_QUERIES_TOTAL.labels(operation=operation).inc()
            metrics.STORE_QUERY_DURATION.labels(operation=operation).observe(duration)

    def fetchall(self, query: Query) -> list[tuple]:
        """Execute a read query and return all rows."""
        return self._run(query, "read", fetch=True)

    def fetchone(self, query: Query) -> tuple | None:
        """Execute a read query and return the first row."""
        rows = self.fetchall(query)
        return rows[0] if rows else None

    def execute(self, query: Query) -> None:
        """Execute a statement (DDL, COPY, INSERT)."""
        self._run(query, "write", fetch=False)

    # ========================================
    # Introspection helpers
    # ========================================

    def table_columns(self, table: TableRef) -> list[str]:
        """Ordered column names of a table or view (empty if not found)."""
        return [row[0] for row in self.fetchall(list_columns(table))]

    def row_count(self, table: TableRef) -> int:
        row = self.fetchone(count_rows(table))
        return int(row[0]) if row else 0


# ============================================
# Audit database
# ============================================


def _audit_schema() -> str:
    process_logs = quote_identifier(settings.process_log_table)
    export_keys = quote_identifier(settings.key_selection_table)
    return f"""
-- Export run audit trail
CREATE TABLE IF NOT EXISTS {process_logs} (
    process_name VARCHAR NOT NULL,
    process_date DATE NOT NULL,
    process_start_time TIMESTAMP,
    process_end_time TIMESTAMP,
    process_flag VARCHAR(1) NOT NULL,
    process_rows BIGINT DEFAULT 0,
    process_message VARCHAR,
    details JSON
);

-- Key column selections
CREATE TABLE IF NOT EXISTS {export_keys} (
    db_name VARCHAR,
    schema_name VARCHAR,
    table_name VARCHAR NOT NULL,
    key_cols JSON,
    total_rows BIGINT,
    distinct_rows BIGINT,
    uniqueness_ratio DOUBLE,
    exact_unique BOOLEAN,
    threshold_met BOOLEAN,
    sample_fraction DOUBLE,
    uniqueness_threshold DOUBLE,
    column_stats JSON,
    selection_path JSON,
    as_of TIMESTAMP NOT NULL
);
"""


def _utc_now() -> datetime:
    # Stored as naive UTC (TIMESTAMP columns)
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _naive(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class AuditDB:
    """
    Audit trail storage (process logs and key selections).

    Connections are opened per operation like the rest of the metadata
    layer. Note: db_path is read from settings on each access to support
    testing.
    """

    def __init__(self, db_path: Path | str | None = None) -> None:
        self._override_path = Path(db_path) if db_path is not None else None
        self._init_lock = threading.Lock()
        self._initialized: set[tuple[str, str, str]] = set()

    @property
    def _db_path(self) -> Path:
        return self._override_path or settings.audit_db_path

    def _schema_key(self) -> tuple[str, str, str]:
        return (str(self._db_path), settings.process_log_table, settings.key_selection_table)

    def initialize(self) -> None:
        """Create the audit database and schema."""
        db_path = self._db_path
        with self._init_lock:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = duckdb.connect(str(db_path))
            try:
                conn.execute(_audit_schema())
                conn.commit()
                self._initialized.add(self._schema_key())
                logger.info("audit_db_schema_created", path=str(db_path))
            finally:
                conn.close()

    @contextmanager
    def connection(self) -> Generator[duckdb.DuckDBPyConnection, None, None]:
        """
        Get a connection to the audit database (schema created on first use).

        Usage:
            with audit_db.connection() as conn:
                conn.execute("SELECT * FROM report_process_logs")
        """
        if self._schema_key() not in self._initialized:
            self.initialize()
        conn = duckdb.connect(str(self._db_path))
        try:
            yield conn
        finally:
            conn.close()

    def execute(self, query: str, params: list | None = None) -> list[tuple]:
        """Execute a read query and return results."""
        with self.connection() as conn:
            if params:
                return conn.execute(query, params).fetchall()
            return conn.execute(query).fetchall()

    def execute_write(self, query: str, params: list | None = None) -> None:
        """Execute a write query (INSERT, DELETE)."""
        with self.connection() as conn:
            if params:
                conn.execute(query, params)
            else:
                conn.execute(query)
            conn.commit()

    # ========================================
    # Process logs
    # ========================================

    def log_process(
        self,
        process_name: str,
        start_time: datetime,
        rows: int,
        flag: str,
        message: str,
        log_lines: list[str] | None = None,
        details: dict | None = None,
    ) -> None:
        """Record one export run ('C' complete, 'F' failed)."""
        full_message = message
        if log_lines:
            full_message = message + "\n\nDetailed Execution Log:\n" + "\n".join(log_lines)

        table = quote_identifier(settings.process_log_table)
        self.execute_write(
            f"""
            INSERT INTO {table}
            (process_name, process_date, process_start_time, process_end_time,
             process_flag, process_rows, process_message, details)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                process_name,
                start_time.date() if isinstance(start_time, datetime) else date.today(),
                _naive(start_time),
                _utc_now(),
                flag,
                rows,
                full_message,
                json.dumps(details or {}, default=str),
            ],
        )

    def list_process_logs(self, process_name: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        table = quote_identifier(settings.process_log_table)
        query = f"""
            SELECT process_name, process_date, process_start_time, process_end_time,
                   process_flag, process_rows, process_message, details
            FROM {table}
        """
        params: list[Any] = []
        if process_name:
            query += " WHERE process_name = ?"
            params.append(process_name)
        query += f" ORDER BY process_end_time DESC LIMIT {int(limit)}"

        return [
            {
                "process_name": row[0],
                "process_date": row[1].isoformat() if row[1] else None,
                "process_start_time": row[2].isoformat() if row[2] else None,
                "process_end_time": row[3].isoformat() if row[3] else None,
                "process_flag": row[4],
                "process_rows": row[5],
                "process_message": row[6],
                "details": json.loads(row[7]) if row[7] else {},
            }
            for row in self.execute(query, params)
        ]

    # ========================================
    # Key selections
    # ========================================

    def save_key_selection(self, record: dict[str, Any], replace: bool = False) -> None:
        """Persist a key selection; replace drops earlier rows for the table."""
        table = quote_identifier(settings.key_selection_table)
        with self.connection() as conn:
            conn.execute("BEGIN TRANSACTION")
            try:
                if replace:
                    conn.execute(
                        f"""
                        DELETE FROM {table}
                        WHERE db_name IS NOT DISTINCT FROM ?
                          AND schema_name IS NOT DISTINCT FROM ?
                          AND table_name = ?
                        """,
                        [record["database"], record["schema"], record["table"]],
                    )
                conn.execute(
                    f"""
                    INSERT INTO {table}
                    (db_name, schema_name, table_name, key_cols, total_rows, distinct_rows,
                     uniqueness_ratio, exact_unique, threshold_met, sample_fraction,
                     uniqueness_threshold, column_stats, selection_path, as_of)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        record["database"],
                        record["schema"],
                        record["table"],
                        json.dumps(record["selected_columns"]),
                        record["total_rows"],
                        record["distinct_row_count"],
                        record["uniqueness_ratio"],
                        record["exact_unique"],
                        record["threshold_met"],
                        record["sample_fraction"],
                        record["uniqueness_threshold"],
                        json.dumps(record["column_stats"]),
                        json.dumps(record["selection_path"]),
                        _utc_now(),
                    ],
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    def list_key_selections(
        self,
        table_name: str,
        schema_name: str | None = None,
        db_name: str | None = None,
        limit: int = 20,
    ) -> list[dict[str, Any]]:
        """Key selections for a table, newest first."""
        table = quote_identifier(settings.key_selection_table)
        results = self.execute(
            f"""
            SELECT db_name, schema_name, table_name, key_cols, total_rows, distinct_rows,
                   uniqueness_ratio, exact_unique, threshold_met, sample_fraction,
                   uniqueness_threshold, column_stats, selection_path, as_of
            FROM {table}
            WHERE db_name IS NOT DISTINCT FROM ?
              AND schema_name IS NOT DISTINCT FROM ?
              AND table_name = ?
            ORDER BY as_of DESC
            LIMIT {int(limit)}
            """,
            [db_name, schema_name, table_name],
        )
        return [self._row_to_key_selection_dict(row) for row in results]

    def latest_key_selection(
        self,
        table_name: str,
        schema_name: str | None = None,
        db_name: str | None = None,
    ) -> dict[str, Any] | None:
        rows = self.list_key_selections(table_name, schema_name, db_name, limit=1)
        return rows[0] if rows else None

    def _row_to_key_selection_dict(self, row: tuple) -> dict[str, Any]:
        return {
            "database": row[0],
            "schema": row[1],
            "table": row[2],
            "selected_columns": json.loads(row[3]) if row[3] else [],
            "total_rows": row[4],
            "distinct_row_count": row[5],
            "uniqueness_ratio": row[6],
            "exact_unique": row[7],
            "threshold_met": row[8],
            "sample_fraction": row[9],
            "uniqueness_threshold": row[10],
            "column_stats": json.loads(row[11]) if row[11] else [],
            "selection_path": json.loads(row[12]) if row[12] else [],
            "as_of": row[13].isoformat() if row[13] else None,
        }


# Global instance (path resolved from settings on each access)
audit_db = AuditDB()
