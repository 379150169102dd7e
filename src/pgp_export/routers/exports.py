"""Export endpoints: run a sharded, encrypted export and read the audit trail."""

import structlog
from fastapi import APIRouter, Depends, Query, status

from pgp_export.database import DataStore, audit_db
from pgp_export.dependencies import get_store, require_admin
from pgp_export.models.responses import (
    ErrorResponse,
    ExportRequest,
    ExportRunResponse,
    ProcessLogEntry,
    ProcessLogListResponse,
)
from pgp_export.pipeline import ExportPipeline

logger = structlog.get_logger()
router = APIRouter(tags=["exports"])


@router.post(
    "/exports",
    response_model=ExportRunResponse,
    status_code=status.HTTP_200_OK,
    responses={401: {"model": ErrorResponse}},
    summary="Run export",
    description=(
        "Run a sharded export of a table, encrypted to every recipient key. "
        "The call blocks until the run finishes; a failed run is reported "
        "with status 'failed' rather than an error status code."
    ),
    dependencies=[Depends(require_admin)],
)
def run_export(
    request: ExportRequest,
    store: DataStore = Depends(get_store),
) -> ExportRunResponse:
    """
    Run one export.

    Phases: validating, key_setup, analyzing, shards, finalizing. The
    response carries the last phase reached, the failure cause (if any),
    the uploaded files and the human-readable run log.
    """
    logger.info(
        "export_request",
        source_table=request.source_table,
        format=request.file_format,
        recipients=len(request.recipient_keys),
    )
    result = ExportPipeline(store).run(request)
    return ExportRunResponse.model_validate(result.to_dict())


@router.get(
    "/exports/logs",
    response_model=ProcessLogListResponse,
    summary="List export runs",
    description="Audit trail of export runs, newest first.",
)
def list_export_logs(
    process_name: str | None = Query(default=None, description="Filter by process name"),
    limit: int = Query(default=100, ge=1, le=1000),
) -> ProcessLogListResponse:
    logs = [ProcessLogEntry(**row) for row in audit_db.list_process_logs(process_name, limit)]
    return ProcessLogListResponse(logs=logs, total=len(logs))
