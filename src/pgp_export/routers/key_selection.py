"""Key column discovery endpoints."""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from pgp_export.database import DataStore, audit_db
from pgp_export.dependencies import get_store, require_admin
from pgp_export.errors import SchemaError
from pgp_export.key_selection import KeyColumnSelector
from pgp_export.models.responses import (
    ErrorResponse,
    KeySelectionListResponse,
    KeySelectionRequest,
    KeySelectionResponse,
)
from pgp_export.query import TableRef

logger = structlog.get_logger()
router = APIRouter(tags=["key-selections"])


def _parse_table(reference: str) -> TableRef:
    try:
        return TableRef.parse(reference)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "invalid_table",
                "message": str(e),
                "details": {"table": reference},
            },
        )


@router.post(
    "/key-selections",
    response_model=KeySelectionResponse,
    status_code=status.HTTP_200_OK,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
    summary="Discover key columns",
    description=(
        "Greedily select a minimal set of columns whose combined fingerprint "
        "(nearly) uniquely identifies rows. Uniqueness is verified on the full table."
    ),
    dependencies=[Depends(require_admin)],
)
def select_key_columns(
    request: KeySelectionRequest,
    store: DataStore = Depends(get_store),
) -> KeySelectionResponse:
    table = _parse_table(request.table)
    selector = KeyColumnSelector(store)

    try:
        result = selector.select(
            table,
            sample_fraction=request.sample_fraction,
            uniqueness_threshold=request.uniqueness_threshold,
            seed=request.seed,
            persist=request.persist,
            persist_mode=request.persist_mode,
        )
    except SchemaError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": "table_not_found",
                "message": e.message,
                "details": e.details,
            },
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "invalid_parameters",
                "message": str(e),
                "details": {"table": request.table},
            },
        )

    return KeySelectionResponse.model_validate(result.to_dict())


@router.get(
    "/key-selections",
    response_model=KeySelectionListResponse,
    responses={400: {"model": ErrorResponse}},
    summary="List key selections",
    description="Persisted key selections for a table, newest first.",
)
def list_key_selections(
    table: str = Query(description="Table: [database.][schema.]table"),
    limit: int = Query(default=20, ge=1, le=500),
) -> KeySelectionListResponse:
    ref = _parse_table(table)
    rows = audit_db.list_key_selections(ref.name, ref.schema, ref.database, limit)
    selections = [KeySelectionResponse.model_validate(row) for row in rows]
    return KeySelectionListResponse(selections=selections, total=len(selections))
