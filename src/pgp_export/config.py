"""Application configuration using pydantic-settings."""

from pathlib import Path
from typing import TYPE_CHECKING

import yaml
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from pgp_export.models.responses import ExportRequest


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be configured via:
    1. Environment variables (e.g., DATA_DIR=/my/path)
    2. .env file in the project root

    Storage paths are derived from DATA_DIR by default but can be overridden.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # API settings
    api_title: str = "DuckDB PGP Export API"
    api_version: str = "0.1.0"
    debug: bool = True  # Default to True for development

    # Authentication
    admin_api_key: str | None = None

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000

    # Storage paths - all derived from data_dir by default
    data_dir: Path = Path("./data")

    # These can be overridden, but default to files/subdirs of data_dir
    source_db_path: Path | None = None
    audit_db_path: Path | None = None
    stages_dir: Path | None = None

    # DuckDB settings
    duckdb_threads: int = 4
    duckdb_memory_limit: str = "4GB"

    # Key column discovery
    key_sample_fraction: float = 0.02
    uniqueness_threshold: float = 0.9999
    key_selection_table: str = "export_keys"
    sample_seed: int | None = None  # Fixed seed makes sampling repeatable

    # Export pipeline
    target_rows_per_shard: int = 15_000_000
    max_file_size_bytes: int = 5 * 1024 * 1024 * 1024  # 5GB per extracted file
    max_shards: int = 999  # File names carry a 3-digit shard number
    default_delimiter: str = "|"
    export_max_workers: int = 1
    armor: bool = False  # Binary .pgp output unless explicitly enabled
    gpg_binary: str = "gpg"

    # Audit trail
    process_log_table: str = "report_process_logs"
    timezone: str = "America/New_York"

    # Notifications (webhook receives {"recipient", "subject", "body"})
    notify_webhook_url: str | None = None
    notify_recipient: str = "data-exports@example.com"
    notify_timeout: float = 10.0

    @model_validator(mode="after")
    def set_default_paths(self) -> "Settings":
        """Set default paths based on data_dir if not explicitly provided."""
        if self.source_db_path is None:
            self.source_db_path = self.data_dir / "source.duckdb"
        if self.audit_db_path is None:
            self.audit_db_path = self.data_dir / "audit.duckdb"
        if self.stages_dir is None:
            self.stages_dir = self.data_dir / "stages"
        return self

    @property
    def storage_paths(self) -> dict[str, Path]:
        """Return directory paths for health check validation."""
        return {
            "data_dir": self.data_dir,
            "stages_dir": self.stages_dir,
        }


def load_job_file(path: Path) -> "ExportRequest":
    """Load an export job description from a YAML file.

    The file holds the same fields as the POST /exports request body:

        source_table: analytics.main.orders
        file_format: csv
        staging_stage: "@staging/orders"
        output_stage: "@outbound/orders"
        recipient_keys:
          - {name: partner, path: "@keys/partner.asc"}
          - {name: client, path: "@keys/client.asc"}
        file_prefix: orders
    """
    from pgp_export.models.responses import ExportRequest

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Job file must contain a mapping: {path}")

    return ExportRequest.model_validate(data)


# Global settings instance
settings = Settings()
