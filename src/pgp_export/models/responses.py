"""Request and response models for API endpoints (and YAML job files)."""

from typing import Literal

from pydantic import BaseModel, Field, field_validator


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status: 'healthy' or 'unhealthy'")
    version: str = Field(description="API version")
    storage_available: bool = Field(description="Whether storage paths are accessible")
    details: dict[str, bool] | None = Field(
        default=None, description="Detailed status of each storage path"
    )
    gpg_available: bool = Field(description="Whether the gpg binary was found on PATH")


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str = Field(description="Error type")
    message: str = Field(description="Error message")
    details: dict | None = Field(default=None, description="Additional error details")


# ============================================
# Export models
# ============================================


class RecipientKeySource(BaseModel):
    """Where to load one recipient's public key from."""

    name: str = Field(description="Recipient label used in logs and the audit trail")
    path: str = Field(description="Stage reference of the key file, e.g. '@keys/partner.asc'")


class ExportRequest(BaseModel):
    """Request to run a sharded, encrypted export."""

    source_table: str = Field(description="Table to export: [database.][schema.]table")
    file_format: str = Field(default="csv", description="Output format: 'csv' or 'parquet'")
    staging_stage: str = Field(description="Stage reference for plaintext extracts")
    output_stage: str = Field(description="Stage reference for encrypted files and the manifest")
    recipient_keys: list[RecipientKeySource] = Field(
        description="Recipient public keys; every file is decryptable by each of them"
    )
    file_prefix: str = Field(description="Prefix of generated file names")
    n_shards: int | None = Field(
        default=None,
        ge=1,
        le=999,
        description="Number of shards (None = derived from table size)",
    )
    key_columns: list[str] | None = Field(
        default=None,
        description="Fingerprint columns (None = saved key selection or all columns)",
    )
    use_saved_key: bool = Field(
        default=False,
        description="Fingerprint on the latest saved key selection when key_columns is not set",
    )
    delimiter: str | None = Field(default=None, description="CSV delimiter (default '|')")
    include_header: bool = Field(default=False, description="Write a CSV header row")
    max_workers: int | None = Field(
        default=None,
        ge=1,
        le=64,
        description="Shards processed concurrently (default from settings)",
    )
    armor: bool | None = Field(default=None, description="ASCII-armored output")
    notify_recipient: str | None = Field(
        default=None, description="Notification recipient (default from settings)"
    )

    @field_validator("file_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        if not v or "/" in v or "\\" in v or v.startswith("."):
            raise ValueError("file_prefix must be a plain, non-empty file name prefix")
        return v

    @field_validator("delimiter")
    @classmethod
    def validate_delimiter(cls, v: str | None) -> str | None:
        if v is not None and len(v) != 1:
            raise ValueError("delimiter must be a single character")
        return v


class RecipientKeyResponse(BaseModel):
    """An imported recipient key."""

    name: str
    fingerprint: str
    emails: list[str] = Field(default_factory=list)
    source: str | None = None


class ExportRunResponse(BaseModel):
    """Outcome of an export run (failed runs are reported, not raised)."""

    run_id: str = Field(description="Run identifier (also bound in logs)")
    process_name: str = Field(description="Process name in the audit trail")
    status: Literal["succeeded", "failed"]
    phase: str = Field(description="Last phase reached")
    error: ErrorResponse | None = Field(default=None, description="Failure cause")
    files_processed: int = Field(default=0, description="Encrypted files uploaded")
    total_rows: int = Field(default=0, description="Rows in the source table")
    n_shards: int | None = None
    fingerprint_columns: list[str] = Field(default_factory=list)
    recipients: list[RecipientKeyResponse] = Field(default_factory=list)
    files: list[str] = Field(default_factory=list, description="Uploaded encrypted file names")
    manifest: str | None = Field(default=None, description="Uploaded manifest file name")
    started_at: str | None = None
    finished_at: str | None = None
    duration_ms: int = 0
    log: list[str] = Field(default_factory=list, description="Human-readable run log")


class ProcessLogEntry(BaseModel):
    """One row of the export audit trail."""

    process_name: str
    process_date: str | None = None
    process_start_time: str | None = None
    process_end_time: str | None = None
    process_flag: str = Field(description="'C' complete or 'F' failed")
    process_rows: int | None = None
    process_message: str | None = None
    details: dict = Field(default_factory=dict)


class ProcessLogListResponse(BaseModel):
    logs: list[ProcessLogEntry]
    total: int


# ============================================
# Key selection models
# ============================================


class KeySelectionRequest(BaseModel):
    """Request to discover a minimal key column set."""

    table: str = Field(description="Table to analyze: [database.][schema.]table")
    sample_fraction: float | None = Field(
        default=None, description="Profiling sample fraction in (0, 1]"
    )
    uniqueness_threshold: float | None = Field(
        default=None, description="Target distinct/total ratio in (0, 1]"
    )
    seed: int | None = Field(default=None, description="Sampling seed")
    persist: bool = Field(default=True, description="Save the result to the audit table")
    persist_mode: Literal["append", "replace"] = Field(default="append")


class ColumnStatResponse(BaseModel):
    name: str
    approx_distinct_count: int
    null_rate: float
    cardinality_ratio: float


class SelectionStepResponse(BaseModel):
    k: int
    columns: list[str]
    distinct_count: int
    ratio: float


class KeySelectionResponse(BaseModel):
    """Key selection result (fresh or persisted)."""

    database: str | None = None
    schema_name: str | None = Field(default=None, alias="schema")
    table: str
    selected_columns: list[str]
    distinct_row_count: int
    total_rows: int
    uniqueness_ratio: float
    exact_unique: bool
    threshold_met: bool | None = None
    sample_fraction: float | None = None
    uniqueness_threshold: float | None = None
    column_stats: list[ColumnStatResponse] = Field(default_factory=list)
    selection_path: list[SelectionStepResponse] = Field(default_factory=list)
    as_of: str | None = None

    model_config = {"populate_by_name": True}


class KeySelectionListResponse(BaseModel):
    selections: list[KeySelectionResponse]
    total: int


# ============================================
# Shard models
# ============================================


class ShardCount(BaseModel):
    shard_id: int
    row_count: int


class ShardCountsResponse(BaseModel):
    """Rows per shard for a prospective export."""

    table: str
    n_shards: int
    fingerprint_columns: list[str]
    shards: list[ShardCount]
    total_rows: int
    skew: float = Field(description="Largest shard / mean shard size")
    recommended_shards: int = Field(description="Shard count suggested by the sizing heuristic")
