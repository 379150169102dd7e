"""Manifest (.tag) files and export file naming.

A manifest lists every encrypted CSV file of a run with its data row count,
one ``<file name>|<rows>`` line per file, in shard order. Parquet runs have
no manifest.
"""

import csv
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import structlog

from pgp_export.errors import ManifestError

logger = structlog.get_logger()

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
MANIFEST_EXTENSION = "tag"
ENCRYPTED_EXTENSION = "pgp"


def run_timestamp(moment: datetime) -> str:
    return moment.strftime(TIMESTAMP_FORMAT)


def data_file_name(prefix: str, timestamp: str, shard_id: int, file_format: str) -> str:
    """``<prefix>_<YYYYMMDD>_<HHMMSS>_<NNN>.<ext>`` with NNN = shard_id + 1."""
    return f"{prefix}_{timestamp}_{shard_id + 1:03d}.{file_format}"


def encrypted_file_name(data_file: str) -> str:
    return f"{data_file}.{ENCRYPTED_EXTENSION}"


def manifest_file_name(prefix: str, timestamp: str) -> str:
    return f"{prefix}_{timestamp}.{MANIFEST_EXTENSION}"


def count_data_rows(path: Path, delimiter: str = ",", has_header: bool = False) -> int:
    """
    Count CSV records, excluding the header row.

    Quoted fields may contain delimiters and newlines, so records are counted
    with the csv module rather than by lines.
    """
    with open(path, newline="", encoding="utf-8") as f:
        rows = sum(1 for _ in csv.reader(f, delimiter=delimiter))
    if has_header and rows:
        rows -= 1
    return rows


@dataclass(frozen=True)
class ManifestEntry:
    """One encrypted file and the number of data rows it holds."""

    encrypted_file_name: str
    row_count: int
    shard_id: int = 0

    def render(self) -> str:
        return f"{self.encrypted_file_name}|{self.row_count}"


class ManifestBuilder:
    """Collects manifest entries from concurrent shard workers."""

    def __init__(self) -> None:
        self._entries: list[ManifestEntry] = []
        self._lock = threading.Lock()

    def add(self, encrypted_file_name: str, row_count: int, shard_id: int = 0) -> ManifestEntry:
        if row_count < 0:
            raise ValueError(f"row_count must be >= 0, got {row_count}")
        entry = ManifestEntry(encrypted_file_name, row_count, shard_id)
        with self._lock:
            self._entries.append(entry)
        return entry

    @property
    def entries(self) -> list[ManifestEntry]:
        """Entries in shard order, whatever order shards completed in."""
        with self._lock:
            entries = list(self._entries)
        return sorted(entries, key=lambda e: (e.shard_id, e.encrypted_file_name))

    @property
    def total_rows(self) -> int:
        return sum(e.row_count for e in self.entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def render(self) -> str:
        return "\n".join(entry.render() for entry in self.entries)

    def write(self, directory: Path, file_name: str) -> Path:
        """
        Write the manifest file.

        Raises:
            ManifestError: No entries, or the file could not be written
        """
        if not len(self):
            raise ManifestError("Manifest has no entries", details={"file": file_name})

        path = directory / file_name
        try:
            directory.mkdir(parents=True, exist_ok=True)
            path.write_text(self.render(), encoding="utf-8")
        except OSError as e:
            raise ManifestError(
                f"Failed to write manifest {file_name}: {e}",
                details={"file": file_name},
            ) from e

        logger.debug("manifest_written", file=file_name, entries=len(self))
        return path
