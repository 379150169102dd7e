"""Health check endpoint."""

import shutil
from pathlib import Path

import structlog
from fastapi import APIRouter, HTTPException, status

from pgp_export.config import settings
from pgp_export.models.responses import ErrorResponse, HealthResponse

logger = structlog.get_logger()
router = APIRouter(tags=["backend"])


def _is_directory(path: Path) -> bool:
    try:
        return path.is_dir()
    except OSError:
        return False


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={503: {"model": ErrorResponse}},
    summary="Health check",
    description="Check that the data and stages directories are accessible.",
)
async def health_check() -> HealthResponse:
    """
    Perform health check.

    Missing storage directories make the service unhealthy (503). A missing
    gpg binary is only reported: key selection and shard planning still work
    without it, exports fail in key setup.
    """
    path_status = {name: _is_directory(path) for name, path in settings.storage_paths.items()}
    storage_ok = all(path_status.values())
    gpg_available = shutil.which(settings.gpg_binary) is not None

    logger.info(
        "health_check",
        status="healthy" if storage_ok else "unhealthy",
        path_status=path_status,
        gpg_available=gpg_available,
    )

    if not storage_ok:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "storage_unavailable",
                "message": "One or more storage paths are not accessible",
                "details": path_status,
            },
        )

    return HealthResponse(
        status="healthy",
        version=settings.api_version,
        storage_available=True,
        details=path_status,
        gpg_available=gpg_available,
    )
