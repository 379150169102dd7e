"""Per-shard bulk extraction into the staging stage.

Each shard is written by a single ``COPY (SELECT * ... WHERE <shard
predicate>) TO '<staging>/<file>'`` statement executed by the data store
itself, so rows never pass through Python. The predicate is the same
fingerprint expression used for shard counts, which keeps extraction and
planning consistent.
"""

import time
from pathlib import Path
from typing import Sequence

import structlog

from pgp_export.config import settings
from pgp_export.database import DataStore
from pgp_export.errors import ExtractionError, UnsupportedFormatError
from pgp_export.query import SUPPORTED_FORMATS, TableRef, copy_to
from pgp_export.sharding import ShardDescriptor
from pgp_export.stages import Stage

logger = structlog.get_logger()


class BatchExtractor:
    """Writes one file per shard into a staging stage."""

    def __init__(
        self,
        store: DataStore,
        staging_stage: Stage,
        table: TableRef,
        columns: Sequence[str],
        n_shards: int,
    ) -> None:
        self.store = store
        self.staging_stage = staging_stage
        self.table = table
        self.columns = tuple(columns)
        self.n_shards = n_shards

    def extract(
        self,
        shard: ShardDescriptor,
        file_name: str,
        output_format: str,
        delimiter: str | None = None,
        include_header: bool | None = None,
    ) -> Path:
        """
        Extract one shard to ``<staging>/<file_name>``, overwriting.

        Args:
            shard: Shard to extract (must match this extractor's plan)
            file_name: Target file name inside the staging stage
            output_format: 'csv' or 'parquet'
            delimiter: CSV field delimiter (default from settings)
            include_header: CSV header row (default False)

        Returns:
            Path of the staged file

        Raises:
            UnsupportedFormatError: Unknown output format
            ExtractionError: COPY failed or produced no file
        """
        if output_format not in SUPPORTED_FORMATS:
            raise UnsupportedFormatError(
                f"Unsupported format: {output_format}. Use 'csv' or 'parquet'.",
                details={"format": output_format},
            )
        if shard.n_shards != self.n_shards or shard.columns != self.columns:
            raise ValueError(
                f"Shard {shard.shard_id} was planned for a different shard layout"
            )

        if output_format == "csv":
            delimiter = delimiter or settings.default_delimiter
            include_header = bool(include_header)

        target = self.staging_stage.path_for(file_name)
        start_time = time.time()

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.unlink(missing_ok=True)
            query = copy_to(
                shard.select_sql(self.table),
                target,
                output_format,
                delimiter=delimiter,
                include_header=include_header,
            )
            self.store.execute(query)
        except Exception as e:
            logger.error(
                "export_shard_extract_failed",
                table=str(self.table),
                shard_id=shard.shard_id,
                file_name=file_name,
                error=str(e),
            )
            raise ExtractionError(
                f"Extraction of shard {shard.number} failed: {e}",
                shard_id=shard.shard_id,
                details={"file_name": file_name, "cause": str(e)},
            ) from e

        if not target.is_file():
            raise ExtractionError(
                f"Extraction of shard {shard.number} produced no file",
                shard_id=shard.shard_id,
                details={"file_name": file_name},
            )

        logger.info(
            "export_shard_extracted",
            table=str(self.table),
            shard_id=shard.shard_id,
            n_shards=self.n_shards,
            file_name=file_name,
            format=output_format,
            size_bytes=target.stat().st_size,
            duration_ms=int((time.time() - start_time) * 1000),
        )
        return target
