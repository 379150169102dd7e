"""Prometheus metrics endpoint router.

Exposes /metrics for Prometheus scraping and refreshes the storage
gauges (database file sizes, stage sizes, files per stage) on each scrape.
"""

from pathlib import Path

import duckdb
import structlog
from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from pgp_export.config import settings
from pgp_export.metrics import STAGE_FILES, STORAGE_SIZE_BYTES, set_service_info

logger = structlog.get_logger()

router = APIRouter(tags=["metrics"])


def _files(path: Path) -> list[Path]:
    return [p for p in path.rglob("*") if p.is_file()] if path.is_dir() else []


def _size(files: list[Path]) -> int:
    total = 0
    for f in files:
        try:
            total += f.stat().st_size
        except OSError:
            # Removed between listing and stat
            continue
    return total


def collect_storage_metrics() -> None:
    """Refresh storage gauges from the filesystem."""
    try:
        for kind, path in (("source", settings.source_db_path), ("audit", settings.audit_db_path)):
            if path.exists():
                STORAGE_SIZE_BYTES.labels(type=kind).set(path.stat().st_size)

        stages_total = 0
        if settings.stages_dir.is_dir():
            for stage_dir in sorted(settings.stages_dir.iterdir()):
                if not stage_dir.is_dir():
                    continue
                files = _files(stage_dir)
                STAGE_FILES.labels(stage=stage_dir.name).set(len(files))
                stages_total += _size(files)
        STORAGE_SIZE_BYTES.labels(type="stages").set(stages_total)
    except OSError as e:
        logger.error("metrics_collection_failed", error=str(e))


@router.get(
    "/metrics",
    response_class=PlainTextResponse,
    summary="Prometheus metrics endpoint",
    description="Returns metrics in Prometheus text format for scraping.",
)
async def get_metrics():
    set_service_info(version=settings.api_version, duckdb_version=duckdb.__version__)
    collect_storage_metrics()
    return PlainTextResponse(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
