"""Shard planning endpoints (dry run of an export's partitioning)."""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from pgp_export.config import settings
from pgp_export.database import DataStore
from pgp_export.dependencies import get_store
from pgp_export.models.responses import ErrorResponse, ShardCount, ShardCountsResponse
from pgp_export.query import TableRef
from pgp_export.sharding import recommend_shard_count, shard_counts, shard_skew

logger = structlog.get_logger()
router = APIRouter(tags=["shards"])


@router.get(
    "/tables/{table}/shards",
    response_model=ShardCountsResponse,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
    summary="Rows per shard",
    description="Row count of every shard for a given shard count and fingerprint columns.",
)
def get_shard_counts(
    table: str,
    n_shards: int = Query(ge=1, le=999, description="Number of shards"),
    columns: list[str] | None = Query(default=None, description="Fingerprint columns (default: all)"),
    store: DataStore = Depends(get_store),
) -> ShardCountsResponse:
    try:
        ref = TableRef.parse(table)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_table", "message": str(e), "details": {"table": table}},
        )

    table_columns = store.table_columns(ref)
    if not table_columns:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": "table_not_found",
                "message": f"No columns found for table {ref}",
                "details": {"table": table},
            },
        )

    fingerprint_columns = columns or table_columns
    unknown = [c for c in fingerprint_columns if c not in table_columns]
    if unknown:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "unknown_columns",
                "message": f"Columns not found: {', '.join(unknown)}",
                "details": {"table": table, "columns": unknown},
            },
        )

    counts = shard_counts(store, ref, n_shards, fingerprint_columns)
    total_rows = sum(count for _, count in counts)

    return ShardCountsResponse(
        table=str(ref),
        n_shards=n_shards,
        fingerprint_columns=list(fingerprint_columns),
        shards=[ShardCount(shard_id=shard_id, row_count=count) for shard_id, count in counts],
        total_rows=total_rows,
        skew=shard_skew(counts),
        recommended_shards=recommend_shard_count(
            total_rows,
            target_rows_per_shard=settings.target_rows_per_shard,
            max_shards=settings.max_shards,
        ),
    )
