"""DuckDB PGP Export API - FastAPI application."""

import logging
import time
import uuid
from contextlib import asynccontextmanager

import duckdb
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from pgp_export.config import settings
from pgp_export.database import audit_db
from pgp_export.errors import ExportError
from pgp_export.metrics import ERROR_COUNT, set_service_info
from pgp_export.middleware.metrics import MetricsMiddleware, normalize_path
from pgp_export.routers import backend, exports, key_selection, metrics, shards


def setup_logging() -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer() if not settings.debug else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.INFO if not settings.debug else logging.DEBUG
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger = structlog.get_logger()
    logger.info(
        "application_startup",
        version=settings.api_version,
        debug=settings.debug,
        data_dir=str(settings.data_dir),
    )

    for path in settings.storage_paths.values():
        path.mkdir(parents=True, exist_ok=True)

    try:
        audit_db.initialize()
        logger.info("audit_db_initialized", path=str(settings.audit_db_path))
    except Exception as e:
        logger.error("audit_db_init_failed", error=str(e), exc_info=True)
        raise

    set_service_info(version=settings.api_version, duckdb_version=duckdb.__version__)

    yield

    logger.info("application_shutdown")


# Setup logging before creating app
setup_logging()
logger = structlog.get_logger()

app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description="""
Deterministically sharded, multi-recipient PGP encrypted exports of DuckDB tables.

- Key column discovery: greedy minimal key selection verified on the full table
- Shard planning: `abs(fingerprint) mod n_shards` row partitioning
- Exports: per-shard CSV/Parquet extracts, each encrypted once for all recipients,
  with a `.tag` manifest of row counts for CSV runs
    """,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

app.add_middleware(MetricsMiddleware)

QUIET_PATHS = frozenset({"/health", "/metrics"})


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """Log all requests with timing and request ID."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)

    # Probes and scrapes are logged at debug level only
    log = logger.debug if request.url.path in QUIET_PATHS else logger.info
    start_time = time.perf_counter()
    log("request_started", method=request.method, path=request.url.path)

    response = await call_next(request)

    log(
        "request_completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
    )

    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(ExportError)
async def export_error_handler(request: Request, exc: ExportError):
    """Typed errors that escape a router become 400 responses with their details."""
    ERROR_COUNT.labels(type=type(exc).__name__, endpoint=normalize_path(request.url.path)).inc()
    logger.warning(
        "export_error",
        path=request.url.path,
        error_type=type(exc).__name__,
        phase=exc.phase,
        error=exc.message,
    )
    return JSONResponse(status_code=400, content={"detail": exc.to_dict()})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions."""
    endpoint = normalize_path(request.url.path)
    error_type = type(exc).__name__

    ERROR_COUNT.labels(type=error_type, endpoint=endpoint).inc()

    logger.error(
        "unhandled_exception",
        method=request.method,
        path=request.url.path,
        error=str(exc),
        error_type=error_type,
        exc_info=True,
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": str(exc) if settings.debug else "An internal error occurred",
        },
    )


# Include routers
app.include_router(backend.router)
app.include_router(exports.router)
app.include_router(key_selection.router)
app.include_router(shards.router)
app.include_router(metrics.router)


@app.get("/", include_in_schema=False)
async def root():
    """Root endpoint - redirects to health check."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "health": "/health",
        "docs": "/docs" if settings.debug else None,
    }


def run() -> None:
    """Run the API server."""
    import uvicorn

    uvicorn.run(
        "pgp_export.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
