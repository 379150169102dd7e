"""Prometheus metrics definitions for the export service.

This module defines all Prometheus metrics used for observability:
- HTTP request metrics (count, duration, in-flight)
- Storage size metrics
- Source store query metrics (count, duration)
- Key column discovery metrics (runs, full-table distinctness scans)
- Export pipeline metrics (runs, duration, shards, rows, encrypted files)
- Notification delivery metrics
"""

import platform
import time

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, Info, ProcessCollector

# Register ProcessCollector for process_* metrics
# Note: ProcessCollector only works on Linux (uses /proc filesystem)
if platform.system() == "Linux":
    try:
        ProcessCollector()
    except ValueError:
        pass  # Already registered by prometheus_client itself

# =============================================================================
# Service Health Metrics
# =============================================================================

SERVICE_UP = Gauge(
    "pgp_export_up",
    "Whether the export service is up (1) or down (0)"
)

SERVICE_START_TIME = Gauge(
    "pgp_export_start_time_seconds",
    "Unix timestamp when the service started"
)

SERVICE_START_TIME.set(time.time())
SERVICE_UP.set(1)

SERVICE_INFO = Info(
    "pgp_export_service",
    "Export service build information"
)

# =============================================================================
# HTTP Request Metrics
# =============================================================================

REQUEST_COUNT = Counter(
    "pgp_export_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status_code"]
)

REQUEST_DURATION = Histogram(
    "pgp_export_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 60.0, 600.0]
)

REQUEST_IN_FLIGHT = Gauge(
    "pgp_export_requests_in_flight",
    "Number of HTTP requests currently being processed",
    ["method"]
)

ERROR_COUNT = Counter(
    "pgp_export_errors_total",
    "Total number of unhandled errors by type",
    ["type", "endpoint"]
)

# =============================================================================
# Storage Metrics
# =============================================================================

STORAGE_SIZE_BYTES = Gauge(
    "pgp_export_storage_size_bytes",
    "Storage size in bytes",
    ["type"]  # type: source, audit, stages
)

STAGE_FILES = Gauge(
    "pgp_export_stage_files",
    "Files currently held in each stage",
    ["stage"]
)

# =============================================================================
# Source Store Metrics
# =============================================================================

STORE_QUERIES_TOTAL = Counter(
    "pgp_export_store_queries_total",
    "Total queries executed against the source store",
    ["operation"]  # operation: read, write
)

STORE_QUERY_DURATION = Histogram(
    "pgp_export_store_query_duration_seconds",
    "Source store query duration in seconds",
    ["operation"],
    buckets=[0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0, 60.0, 300.0, 1800.0]
)

# =============================================================================
# Key Column Discovery Metrics
# =============================================================================

KEY_SELECTIONS_TOTAL = Counter(
    "pgp_export_key_selections_total",
    "Total key column selection runs",
    ["outcome"]  # outcome: threshold_met, best_effort, empty_table, error
)

KEY_SELECTION_SCANS_TOTAL = Counter(
    "pgp_export_key_selection_scans_total",
    "Full-table distinct fingerprint scans performed during key selection"
)

KEY_SELECTION_COLUMNS = Histogram(
    "pgp_export_key_selection_columns",
    "Number of key columns selected",
    buckets=[1, 2, 3, 4, 5, 8, 13, 21, 34]
)

# =============================================================================
# Export Pipeline Metrics
# =============================================================================

EXPORT_RUNS_TOTAL = Counter(
    "pgp_export_runs_total",
    "Total export pipeline runs",
    ["format", "status"]  # status: succeeded, failed
)

EXPORT_FAILURES_TOTAL = Counter(
    "pgp_export_failures_total",
    "Failed export runs by phase and error type",
    ["phase", "error_type"]
)

EXPORT_DURATION = Histogram(
    "pgp_export_run_duration_seconds",
    "Export pipeline run duration in seconds",
    ["format"],
    buckets=[1.0, 5.0, 30.0, 60.0, 300.0, 900.0, 1800.0, 3600.0, 7200.0]
)

EXPORT_SHARD_DURATION = Histogram(
    "pgp_export_shard_duration_seconds",
    "Per-shard extract/encrypt/upload duration in seconds",
    ["format"],
    buckets=[0.1, 0.5, 1.0, 5.0, 30.0, 60.0, 300.0, 900.0]
)

EXPORT_SHARD_ROWS = Histogram(
    "pgp_export_shard_rows",
    "Data rows per exported CSV shard",
    buckets=[0, 1_000, 10_000, 100_000, 1_000_000, 5_000_000, 15_000_000, 50_000_000]
)

EXPORT_ROWS_TOTAL = Counter(
    "pgp_export_rows_total",
    "Total rows exported"
)

EXPORT_FILES_TOTAL = Counter(
    "pgp_export_files_total",
    "Total encrypted files uploaded",
    ["format"]
)

EXPORT_RUNS_IN_PROGRESS = Gauge(
    "pgp_export_runs_in_progress",
    "Export runs currently executing"
)

# =============================================================================
# Notification Metrics
# =============================================================================

NOTIFICATIONS_TOTAL = Counter(
    "pgp_export_notifications_total",
    "Notifications sent",
    ["kind", "status"]  # kind: success, failure; status: sent, failed, skipped
)


def set_service_info(version: str, duckdb_version: str) -> None:
    """Set service build information."""
    SERVICE_INFO.info({
        "version": version,
        "duckdb_version": duckdb_version,
        "python_version": platform.python_version(),
    })


__all__ = [
    "REGISTRY",
    "SERVICE_UP",
    "SERVICE_INFO",
    "REQUEST_COUNT",
    "REQUEST_DURATION",
    "REQUEST_IN_FLIGHT",
    "ERROR_COUNT",
    "STORAGE_SIZE_BYTES",
    "STAGE_FILES",
    "STORE_QUERIES_TOTAL",
    "STORE_QUERY_DURATION",
    "KEY_SELECTIONS_TOTAL",
    "KEY_SELECTION_SCANS_TOTAL",
    "KEY_SELECTION_COLUMNS",
    "EXPORT_RUNS_TOTAL",
    "EXPORT_FAILURES_TOTAL",
    "EXPORT_DURATION",
    "EXPORT_SHARD_DURATION",
    "EXPORT_SHARD_ROWS",
    "EXPORT_ROWS_TOTAL",
    "EXPORT_FILES_TOTAL",
    "EXPORT_RUNS_IN_PROGRESS",
    "NOTIFICATIONS_TOTAL",
    "set_service_info",
]
