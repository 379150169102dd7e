"""Error taxonomy for key discovery and the export pipeline.

Every fatal error derives from ExportError and carries the pipeline phase it
was raised in plus a details dict that ends up in the audit log and the
failure summary. CleanupWarning is never raised into the pipeline; it is
recorded in the run log when releasing a resource fails.
"""

from typing import Any


class ExportError(Exception):
    """Base class for fatal export and key-discovery errors."""

    phase: str = "unknown"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "phase": self.phase,
            "details": self.details,
        }


class AccessError(ExportError):
    """Source table or a stage is unreachable."""

    phase = "validating"


class SchemaError(ExportError):
    """Table has no columns (missing or not visible)."""

    phase = "analyzing"


class KeyImportError(ExportError):
    """Recipient key material is missing or could not be imported."""

    phase = "key_setup"


class UnsupportedFormatError(ExportError):
    """Requested output format is not CSV or Parquet."""

    phase = "analyzing"


class ShardError(ExportError):
    """Base for errors raised while processing a single shard."""

    phase = "shards"

    def __init__(
        self,
        message: str,
        shard_id: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.shard_id = shard_id
        details = dict(details or {})
        if shard_id is not None:
            details.setdefault("shard_id", shard_id)
        super().__init__(message, details)


class ExtractionError(ShardError):
    """Bulk extract of a shard failed or produced no file."""


class DownloadError(ShardError):
    """Staged file could not be downloaded to the local work directory."""


class EncryptionError(ShardError):
    """GnuPG reported a non-success status."""


class UploadError(ShardError):
    """Encrypted file could not be uploaded to the output stage."""


class ManifestError(ExportError):
    """Manifest file could not be written or uploaded."""

    phase = "finalizing"


class CleanupWarning(UserWarning):
    """A temporary resource could not be released (logged only)."""
