"""Export pipeline orchestrator.

A run moves through explicit phases:

    validating -> key_setup -> analyzing -> shards -> finalizing -> succeeded
                              (any phase) -> failed

Each phase function takes the RunContext and raises a typed ExportError on
failure. Every fatal error aborts the whole run; there is no per-shard
retry or resume. On failure, in this order: temporary resources are
released, the audit trail is written, a failure notification is sent. Each
of those steps logs its own failure without masking the original error.

Per shard: extract -> download -> count rows (CSV) -> encrypt -> upload ->
manifest entry -> release the shard work directory.

Staging locations assume a single writer: the pre-run clear would remove a
concurrent run's extracts.
"""

import csv
import shutil
import tempfile
import threading
import time
import uuid
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import duckdb
import structlog

from pgp_export import metrics
from pgp_export.config import settings
from pgp_export.database import AuditDB, DataStore, audit_db as default_audit_db
from pgp_export.encryption import Keyring, MultiRecipientEncryptor, RecipientKey
from pgp_export.errors import (
    AccessError,
    CleanupWarning,
    DownloadError,
    ExportError,
    ExtractionError,
    KeyImportError,
    ManifestError,
    SchemaError,
    UnsupportedFormatError,
    UploadError,
)
from pgp_export.extractor import BatchExtractor
from pgp_export.manifest import (
    ManifestBuilder,
    count_data_rows,
    data_file_name,
    encrypted_file_name,
    manifest_file_name,
    run_timestamp,
)
from pgp_export.models.responses import ExportRequest
from pgp_export.notifications import (
    Notifier,
    failure_body,
    failure_subject,
    get_notifier,
    success_body,
    success_subject,
)
from pgp_export.query import SUPPORTED_FORMATS, TableRef, probe_table
from pgp_export.sharding import ShardDescriptor, estimate_row_bytes, plan_shards, recommend_shard_count
from pgp_export.stages import Stage

logger = structlog.get_logger()


class Phase(str, Enum):
    VALIDATING = "validating"
    KEY_SETUP = "key_setup"
    ANALYZING = "analyzing"
    SHARDS = "shards"
    FINALIZING = "finalizing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def process_name_for(file_prefix: str) -> str:
    return f"{file_prefix.upper()}_PGP_ENCRYPTION"


def export_timezone() -> ZoneInfo:
    try:
        return ZoneInfo(settings.timezone)
    except ZoneInfoNotFoundError:
        logger.warning("export_timezone_not_found", timezone=settings.timezone)
        return ZoneInfo("UTC")


def _default_clock() -> datetime:
    return datetime.now(export_timezone())


@dataclass
class RunContext:
    """Mutable state of one export run."""

    request: ExportRequest
    run_id: str
    process_name: str
    started_at: datetime
    table: TableRef | None = None
    staging: Stage | None = None
    output: Stage | None = None
    phase: Phase = Phase.VALIDATING
    file_format: str = ""
    timestamp: str = ""
    fingerprint_columns: list[str] = field(default_factory=list)
    total_rows: int = 0
    n_shards: int | None = None
    recipients: list[RecipientKey] = field(default_factory=list)
    keyring: Keyring | None = None
    manifest: ManifestBuilder | None = None
    manifest_name: str | None = None
    files: list[str] = field(default_factory=list)
    log_lines: list[str] = field(default_factory=list)
    warnings: list[CleanupWarning] = field(default_factory=list)
    temp_dirs: list[Path] = field(default_factory=list)
    abort: threading.Event = field(default_factory=threading.Event)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def files_processed(self) -> int:
        with self._lock:
            return len(self.files)

    def log(self, message: str) -> None:
        with self._lock:
            self.log_lines.append(message)

    def enter(self, phase: Phase) -> None:
        self.phase = phase
        self.log(f"PHASE: {phase.value}")
        logger.info("export_phase", phase=phase.value)

    def record_file(self, name: str) -> None:
        with self._lock:
            self.files.append(name)

    def make_temp_dir(self, prefix: str) -> Path:
        path = Path(tempfile.mkdtemp(prefix=f"pgp_export_{prefix}"))
        with self._lock:
            self.temp_dirs.append(path)
        return path

    def release(self, path: Path) -> None:
        """Remove a temporary directory; failures become CleanupWarnings."""
        with self._lock:
            if path in self.temp_dirs:
                self.temp_dirs.remove(path)
        try:
            if path.exists():
                shutil.rmtree(path)
        except OSError as e:
            self.warn(f"Could not remove temporary directory {path}: {e}")

    def sweep(self) -> None:
        """Release every remaining temporary directory."""
        with self._lock:
            remaining = list(self.temp_dirs)
        for path in remaining:
            self.release(path)

    def warn(self, message: str) -> None:
        warning = CleanupWarning(message)
        with self._lock:
            self.warnings.append(warning)
        self.log(f"Note: {message}")
        logger.warning("export_cleanup_warning", message=message)


@dataclass
class RunResult:
    """Tagged outcome of a run."""

    run_id: str
    process_name: str
    status: str  # "succeeded" | "failed"
    phase: str
    error: ExportError | None
    files_processed: int
    total_rows: int
    n_shards: int | None
    fingerprint_columns: list[str]
    recipients: list[RecipientKey]
    files: list[str]
    manifest: str | None
    started_at: datetime
    finished_at: datetime
    log: list[str]

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "process_name": self.process_name,
            "status": self.status,
            "phase": self.phase,
            "error": self.error.to_dict() if self.error else None,
            "files_processed": self.files_processed,
            "total_rows": self.total_rows,
            "n_shards": self.n_shards,
            "fingerprint_columns": list(self.fingerprint_columns),
            "recipients": [r.to_dict() for r in self.recipients],
            "files": list(self.files),
            "manifest": self.manifest,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_ms": int((self.finished_at - self.started_at).total_seconds() * 1000),
            "log": list(self.log),
        }


class ExportPipeline:
    """
    Runs sharded, multi-recipient encrypted exports.

    Usage:
        with DataStore() as store:
            result = ExportPipeline(store).run(request)
            if not result.succeeded:
                print(result.error.message)
    """

    def __init__(
        self,
        store: DataStore,
        audit: AuditDB | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.audit = audit or default_audit_db
        self.notifier = notifier or get_notifier()
        self.clock = clock or _default_clock

    def run(self, request: ExportRequest) -> RunResult:
        """Execute one run. Failures are reported in the result, never raised."""
        started_at = self.clock()
        ctx = RunContext(
            request=request,
            run_id=str(uuid.uuid4()),
            process_name=process_name_for(request.file_prefix),
            started_at=started_at,
            timestamp=run_timestamp(started_at),
        )
        start_time = time.time()
        metrics.EXPORT_RUNS_IN_PROGRESS.inc()

        with structlog.contextvars.bound_contextvars(run_id=ctx.run_id):
            logger.info(
                "export_run_start",
                process_name=ctx.process_name,
                source_table=request.source_table,
                format=request.file_format,
            )
            ctx.log(f"Process: {ctx.process_name}")
            ctx.log(f"Using timestamp for file naming: {ctx.timestamp}")

            try:
                self._validate(ctx)
                ctx.enter(Phase.KEY_SETUP)
                with Keyring() as keyring:
                    ctx.keyring = keyring
                    self._setup_keys(ctx)
                    self._analyze(ctx)
                    self._process_shards(ctx)
                    self._finalize(ctx)
                ctx.keyring = None
            except ExportError as e:
                result = self._fail(ctx, e)
            except Exception as e:
                logger.exception("export_run_unexpected_error")
                error = ExportError(str(e), details={"cause": type(e).__name__})
                error.phase = ctx.phase.value
                result = self._fail(ctx, error)
            else:
                result = self._succeed(ctx)
            finally:
                metrics.EXPORT_RUNS_IN_PROGRESS.dec()

            metrics.EXPORT_RUNS_TOTAL.labels(
                format=ctx.file_format or request.file_format, status=result.status
            ).inc()
            metrics.EXPORT_DURATION.labels(format=ctx.file_format or request.file_format).observe(
                time.time() - start_time
            )
            logger.info(
                "export_run_complete",
                status=result.status,
                phase=result.phase,
                files_processed=result.files_processed,
                total_rows=result.total_rows,
                duration_ms=int((time.time() - start_time) * 1000),
            )
        return result

    # ========================================
    # Phases
    # ========================================

    def _validate(self, ctx: RunContext) -> None:
        ctx.enter(Phase.VALIDATING)
        request = ctx.request

        try:
            ctx.table = TableRef.parse(request.source_table)
            ctx.staging = Stage(request.staging_stage)
            ctx.output = Stage(request.output_stage)
        except ValueError as e:
            raise AccessError(str(e), details={"source_table": request.source_table}) from e

        try:
            self.store.fetchall(probe_table(ctx.table))
        except duckdb.Error as e:
            raise AccessError(
                f"Source table {ctx.table} is not accessible: {e}",
                details={"source_table": str(ctx.table)},
            ) from e
        ctx.log(f"Source table accessible: {ctx.table}")

        ctx.staging.check_access()
        ctx.output.check_access()
        ctx.log(f"Stages accessible: staging {ctx.staging}, output {ctx.output}")

        removed = ctx.staging.remove()
        ctx.log(f"Staging cleared ({removed} leftover files removed)")

    def _setup_keys(self, ctx: RunContext) -> None:
        sources = ctx.request.recipient_keys
        if not sources:
            raise KeyImportError("At least one recipient key is required")

        for source in sources:
            key_dir = ctx.make_temp_dir("key_")
            try:
                try:
                    downloaded = Stage(source.path).download(key_dir)
                except (DownloadError, ValueError) as e:
                    raise KeyImportError(
                        f"Failed to download {source.name} key from {source.path}: {e}",
                        details={"key": source.name, "source": source.path},
                    ) from e
                key = ctx.keyring.import_key_file(downloaded[0], source.name, source.path)
            finally:
                ctx.release(key_dir)

            ctx.recipients.append(key)
            emails = ", ".join(key.emails) or "No email address found in key"
            ctx.log(f"Key imported: {key.name} (fingerprint {key.short_fingerprint}..., {emails})")

    def _analyze(self, ctx: RunContext) -> None:
        ctx.enter(Phase.ANALYZING)
        request = ctx.request

        file_format = request.file_format.lower()
        if file_format not in SUPPORTED_FORMATS:
            raise UnsupportedFormatError(
                f"Unsupported format: {request.file_format}. Use 'csv' or 'parquet'.",
                details={"format": request.file_format},
            )
        ctx.file_format = file_format

        columns = self.store.table_columns(ctx.table)
        if not columns:
            raise SchemaError(
                f"No columns found for table {ctx.table}",
                details={"table": str(ctx.table)},
            )
        ctx.fingerprint_columns = self._fingerprint_columns(ctx, columns)

        ctx.total_rows = self.store.row_count(ctx.table)
        ctx.log(f"Total rows: {ctx.total_rows:,}")

        if request.n_shards is not None:
            ctx.n_shards = request.n_shards
        elif ctx.total_rows == 0:
            ctx.n_shards = 1
        else:
            sample_fraction = min(1.0, max(settings.key_sample_fraction, 1000 / ctx.total_rows))
            avg_row_bytes = estimate_row_bytes(
                self.store, ctx.table, ctx.fingerprint_columns, sample_fraction, settings.sample_seed
            )
            ctx.n_shards = recommend_shard_count(
                ctx.total_rows,
                avg_row_bytes,
                target_rows_per_shard=settings.target_rows_per_shard,
                max_file_bytes=settings.max_file_size_bytes,
                max_shards=settings.max_shards,
            )
        ctx.log(f"Shard plan: {ctx.n_shards} shards over {len(ctx.fingerprint_columns)} columns")

        if file_format == "csv":
            ctx.manifest = ManifestBuilder()

    def _fingerprint_columns(self, ctx: RunContext, columns: list[str]) -> list[str]:
        request = ctx.request
        if request.key_columns:
            unknown = [c for c in request.key_columns if c not in columns]
            if unknown:
                raise SchemaError(
                    f"Key columns not found in {ctx.table}: {', '.join(unknown)}",
                    details={"table": str(ctx.table), "unknown_columns": unknown},
                )
            ctx.log(f"Fingerprint columns (explicit): {', '.join(request.key_columns)}")
            return list(request.key_columns)

        if request.use_saved_key:
            saved = self.audit.latest_key_selection(
                ctx.table.name, ctx.table.schema, ctx.table.database
            )
            saved_columns = saved["selected_columns"] if saved else []
            if saved_columns and all(c in columns for c in saved_columns):
                ctx.log(f"Fingerprint columns (saved key selection): {', '.join(saved_columns)}")
                return list(saved_columns)
            ctx.log("No usable saved key selection, fingerprinting all columns")

        return list(columns)

    def _process_shards(self, ctx: RunContext) -> None:
        ctx.enter(Phase.SHARDS)
        if ctx.total_rows == 0:
            ctx.log("No data to export")
            return

        shards = plan_shards(ctx.n_shards, ctx.fingerprint_columns)
        extractor = BatchExtractor(
            self.store, ctx.staging, ctx.table, ctx.fingerprint_columns, ctx.n_shards
        )
        armor = ctx.request.armor if ctx.request.armor is not None else settings.armor
        encryptor = MultiRecipientEncryptor(ctx.keyring, armor=armor)

        max_workers = min(ctx.request.max_workers or settings.export_max_workers, len(shards))
        if max_workers <= 1:
            for shard in shards:
                self._process_shard(ctx, shard, extractor, encryptor)
            return

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="export-shard") as pool:
            futures = [
                pool.submit(self._process_shard_in_worker, ctx, shard, extractor, encryptor)
                for shard in shards
            ]
            done, not_done = wait(futures, return_when=FIRST_EXCEPTION)
            failed = [f for f in done if f.exception() is not None]
            if failed:
                ctx.abort.set()
                for future in not_done:
                    future.cancel()
                wait(not_done)
                raise failed[0].exception()

    def _process_shard_in_worker(
        self,
        ctx: RunContext,
        shard: ShardDescriptor,
        extractor: BatchExtractor,
        encryptor: MultiRecipientEncryptor,
    ) -> None:
        with structlog.contextvars.bound_contextvars(run_id=ctx.run_id):
            self._process_shard(ctx, shard, extractor, encryptor)

    def _process_shard(
        self,
        ctx: RunContext,
        shard: ShardDescriptor,
        extractor: BatchExtractor,
        encryptor: MultiRecipientEncryptor,
    ) -> None:
        if ctx.abort.is_set():
            return

        start_time = time.time()
        request = ctx.request
        delimiter = request.delimiter or settings.default_delimiter
        data_name = data_file_name(request.file_prefix, ctx.timestamp, shard.shard_id, ctx.file_format)
        encrypted_name = encrypted_file_name(data_name)

        extractor.extract(shard, data_name, ctx.file_format, delimiter, request.include_header)

        work_dir = ctx.make_temp_dir(f"shard_{shard.number}_")
        try:
            try:
                local_file = ctx.staging.download(work_dir, data_name)[0]
            except DownloadError as e:
                raise DownloadError(e.message, shard_id=shard.shard_id, details=e.details) from e

            row_count = None
            if ctx.manifest is not None:
                try:
                    row_count = count_data_rows(local_file, delimiter, request.include_header)
                except (OSError, UnicodeDecodeError, csv.Error) as e:
                    raise ExtractionError(
                        f"Row counting failed for shard {shard.number}: {e}",
                        shard_id=shard.shard_id,
                        details={"file_name": data_name},
                    ) from e

            encrypted = encryptor.encrypt(
                local_file, ctx.recipients, output=work_dir / encrypted_name, shard_id=shard.shard_id
            )

            try:
                ctx.output.upload(encrypted, encrypted_name, overwrite=True)
            except UploadError as e:
                raise UploadError(e.message, shard_id=shard.shard_id, details=e.details) from e

            if ctx.manifest is not None:
                ctx.manifest.add(encrypted_name, row_count, shard.shard_id)
            ctx.record_file(encrypted_name)
        finally:
            ctx.release(work_dir)

        metrics.EXPORT_FILES_TOTAL.labels(format=ctx.file_format).inc()
        metrics.EXPORT_SHARD_DURATION.labels(format=ctx.file_format).observe(time.time() - start_time)
        if row_count is not None:
            metrics.EXPORT_SHARD_ROWS.observe(row_count)
        rows_note = f", {row_count:,} rows" if row_count is not None else ""
        ctx.log(f"Shard {shard.number}/{shard.n_shards:03d}: {encrypted_name} uploaded{rows_note}")
        logger.info(
            "export_shard_complete",
            shard_id=shard.shard_id,
            file=encrypted_name,
            row_count=row_count,
            duration_ms=int((time.time() - start_time) * 1000),
        )

    def _finalize(self, ctx: RunContext) -> None:
        ctx.enter(Phase.FINALIZING)

        if ctx.manifest is not None and len(ctx.manifest):
            name = manifest_file_name(ctx.request.file_prefix, ctx.timestamp)
            manifest_dir = ctx.make_temp_dir("manifest_")
            try:
                path = ctx.manifest.write(manifest_dir, name)
                try:
                    ctx.output.upload(path, name, overwrite=True)
                except UploadError as e:
                    raise ManifestError(
                        f"Failed to upload manifest {name}: {e.message}",
                        details={"file": name},
                    ) from e
            finally:
                ctx.release(manifest_dir)
            ctx.manifest_name = name
            ctx.log(f"Manifest uploaded: {name} ({len(ctx.manifest)} entries)")
        else:
            ctx.log("No CSV files processed, manifest not required")

        try:
            ctx.staging.remove()
        except OSError as e:
            ctx.warn(f"Could not clear staging {ctx.staging}: {e}")
        ctx.sweep()

    # ========================================
    # Outcomes
    # ========================================

    def _result(self, ctx: RunContext, status: str, error: ExportError | None) -> RunResult:
        return RunResult(
            run_id=ctx.run_id,
            process_name=ctx.process_name,
            status=status,
            phase=ctx.phase.value,
            error=error,
            files_processed=ctx.files_processed,
            total_rows=ctx.total_rows,
            n_shards=ctx.n_shards,
            fingerprint_columns=list(ctx.fingerprint_columns),
            recipients=list(ctx.recipients),
            files=sorted(ctx.files),
            manifest=ctx.manifest_name,
            started_at=ctx.started_at,
            finished_at=self.clock(),
            log=list(ctx.log_lines),
        )

    def _succeed(self, ctx: RunContext) -> RunResult:
        ctx.phase = Phase.SUCCEEDED
        recipients = ", ".join(
            f"{r.name} ({', '.join(r.emails) or r.short_fingerprint})" for r in ctx.recipients
        )
        summary = [
            f"Source table: {ctx.table}",
            f"Files processed: {ctx.files_processed}",
            f"Total rows: {ctx.total_rows:,}",
            f"Recipients: {recipients}",
        ]
        if ctx.manifest_name:
            summary.append(f"Manifest: {ctx.manifest_name}")
        ctx.log("Process completed successfully")
        for line in summary:
            ctx.log(line)

        metrics.EXPORT_ROWS_TOTAL.inc(ctx.total_rows)
        self._audit(ctx, "C", "\n".join(summary))
        self._notify(
            ctx,
            success_subject(ctx.process_name),
            success_body(ctx.process_name, "\n".join(ctx.log_lines)),
        )
        return self._result(ctx, "succeeded", None)

    def _fail(self, ctx: RunContext, error: ExportError) -> RunResult:
        failed_phase = ctx.phase
        message = f"ERROR in {failed_phase.value}: {error.message}"
        ctx.log(message)
        logger.error(
            "export_run_failed",
            phase=failed_phase.value,
            error_type=type(error).__name__,
            error=error.message,
            details=error.details,
        )
        metrics.EXPORT_FAILURES_TOTAL.labels(
            phase=failed_phase.value, error_type=type(error).__name__
        ).inc()

        ctx.abort.set()
        # Staging is only ours once validation cleared it
        if ctx.staging is not None and failed_phase != Phase.VALIDATING:
            try:
                ctx.staging.remove()
            except OSError as e:
                ctx.warn(f"Could not clear staging {ctx.staging}: {e}")
        try:
            ctx.sweep()
        except Exception as e:
            logger.error("export_cleanup_failed", error=str(e))

        self._audit(ctx, "F", message)
        self._notify(
            ctx,
            failure_subject(ctx.process_name),
            failure_body(ctx.process_name, "\n".join(ctx.log_lines)),
        )
        return self._result(ctx, "failed", error)

    def _audit(self, ctx: RunContext, flag: str, message: str) -> None:
        try:
            self.audit.log_process(
                process_name=ctx.process_name,
                start_time=ctx.started_at,
                rows=ctx.files_processed,
                flag=flag,
                message=message,
                log_lines=ctx.log_lines,
                details={
                    "run_id": ctx.run_id,
                    "phase": ctx.phase.value,
                    "source_table": ctx.request.source_table,
                    "files": sorted(ctx.files),
                    "total_rows": ctx.total_rows,
                    "recipients": [r.to_dict() for r in ctx.recipients],
                },
            )
        except Exception as e:
            logger.error("export_audit_failed", error=str(e))

    def _notify(self, ctx: RunContext, subject: str, body: str) -> None:
        recipient = ctx.request.notify_recipient or settings.notify_recipient
        try:
            self.notifier.notify(recipient, subject, body)
        except Exception as e:
            logger.error("export_notification_failed", error=str(e))
