"""DICOM Study Catalog

Main FastAPI application entry point.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import Counter, Histogram, make_asgi_app

from app.api.v1.router import api_router
from app.core.config import settings
from app.core.errors import StudyCatalogError
from app.core.logging import get_logger, setup_logging

# Initialize logging
setup_logging(
    log_level="DEBUG" if settings.debug else "INFO",
    json_logs=settings.environment == "production",
    log_file=settings.log_file,
)

logger = get_logger(__name__)

# Prometheus metrics
REQUEST_COUNT = Counter(
    "dicom_catalog_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)
REQUEST_LATENCY = Histogram(
    "dicom_catalog_request_latency_seconds",
    "HTTP request latency",
    ["method", "endpoint"],
)


def _safe_request_path(request: Request) -> str:
    """Return a route template path to avoid logging PHI in URLs."""
    route = request.scope.get("route")
    if route and hasattr(route, "path"):
        return route.path
    return request.url.path


def build_services(app: FastAPI, session_maker, blob_store) -> None:
    """Wire the study services onto ``app.state``."""
    from app.services.storage.metadata_store import SqlAlchemyMetadataStore
    from app.services.studies.catalog import StudyCatalogQuery
    from app.services.studies.lifecycle import StudyLifecycleCoordinator
    from app.services.studies.path_namer import PathNamer

    metadata_store = SqlAlchemyMetadataStore(session_maker)
    catalog = StudyCatalogQuery(
        metadata_store,
        blob_store,
        cache_ttl=settings.catalog.cache_ttl_seconds,
        retries=settings.catalog.query_retries,
        backoff=settings.catalog.retry_backoff_seconds,
        call_timeout=settings.storage.call_timeout_seconds,
    )
    lifecycle = StudyLifecycleCoordinator(
        blob_store,
        metadata_store,
        PathNamer(settings.storage.path_prefix),
        call_timeout=settings.storage.call_timeout_seconds,
        on_change=catalog.invalidate,
    )

    app.state.blob_store = blob_store
    app.state.metadata_store = metadata_store
    app.state.catalog = catalog
    app.state.lifecycle = lifecycle


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events."""
    # Startup
    logger.info(
        "Starting DICOM Study Catalog",
        version=settings.app_version,
        environment=settings.environment,
    )

    # Initialize database
    from app.models.base import async_session_maker, create_all_tables, engine

    app.state.db_engine = engine
    app.state.db_session_maker = async_session_maker
    if settings.environment != "production":
        # Production schemas are managed by Alembic
        await create_all_tables()
    logger.info("Database connection pool initialized")

    # Initialize blob storage
    from app.services.storage.blob_store import LocalBlobStore

    blob_store = LocalBlobStore(settings.storage.root_dir, settings.storage.public_base_url)
    await blob_store.initialize()

    build_services(app, async_session_maker, blob_store)

    logger.info("DICOM Study Catalog started successfully")

    yield

    # Shutdown
    logger.info("Shutting down DICOM Study Catalog")

    # Close database connections
    if hasattr(app.state, "db_engine"):
        await app.state.db_engine.dispose()
        logger.info("Database connections closed")

    logger.info("DICOM Study Catalog shutdown complete")


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        description="""
        Catalog of DICOM imaging studies.

        Each study is a metadata record plus one DICOM file held in blob
        storage. Create, update and delete keep the two consistent under
        partial failure; listings support time-window filters and name search.

        ## API Documentation

        - **Interactive docs**: `/docs` (Swagger UI)
        - **ReDoc**: `/redoc`
        - **OpenAPI spec**: `/openapi.json`
        """,
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )

    # Add GZip compression
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    # Add request logging middleware
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all incoming requests with timing."""
        import time
        import uuid

        request_id = str(uuid.uuid4())[:8]
        start_time = time.time()

        response = await call_next(request)
        process_time = time.time() - start_time
        safe_path = _safe_request_path(request)

        # Update metrics
        REQUEST_COUNT.labels(
            method=request.method,
            endpoint=safe_path,
            status=response.status_code,
        ).inc()
        REQUEST_LATENCY.labels(
            method=request.method,
            endpoint=safe_path,
        ).observe(process_time)

        # Add custom headers
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{process_time:.4f}"

        logger.info(
            "request_completed",
            request_id=request_id,
            method=request.method,
            path=safe_path,
            status_code=response.status_code,
            process_time=f"{process_time:.4f}s",
        )

        return response

    # Mount Prometheus metrics endpoint
    metrics_app = make_asgi_app()
    app.mount("/metrics", metrics_app)

    # Include API router
    app.include_router(api_router, prefix="/api/v1")

    # Health check endpoint
    @app.get("/health", tags=["Health"])
    async def health_check():
        """Health check endpoint for load balancers and monitoring."""
        return {
            "status": "healthy",
            "version": settings.app_version,
            "environment": settings.environment,
        }

    # Readiness check endpoint
    @app.get("/ready", tags=["Health"])
    async def readiness_check(request: Request):
        """Readiness check for Kubernetes deployments."""
        checks = {
            "database": False,
            "blob_storage": False,
        }

        # Check database connectivity
        if hasattr(request.app.state, "db_session_maker"):
            try:
                async with request.app.state.db_session_maker() as session:
                    from sqlalchemy import text

                    await session.execute(text("SELECT 1"))
                    checks["database"] = True
            except Exception as e:
                logger.warning("Database readiness check failed", error=str(e))

        if hasattr(request.app.state, "blob_store"):
            checks["blob_storage"] = request.app.state.blob_store.is_ready()

        all_ready = all(checks.values())
        return JSONResponse(
            status_code=200 if all_ready else 503,
            content={
                "ready": all_ready,
                "checks": checks,
            },
        )

    # Domain errors carry their own status code
    @app.exception_handler(StudyCatalogError)
    async def catalog_error_handler(request: Request, exc: StudyCatalogError):
        """Render lifecycle and catalog errors."""
        logger.warning(
            "request_failed",
            path=_safe_request_path(request),
            method=request.method,
            error_kind=exc.kind,
            error=exc.message,
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle uncaught exceptions."""
        logger.error(
            "unhandled_exception",
            path=_safe_request_path(request),
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal server error",
                "message": str(exc) if settings.debug else "An unexpected error occurred",
            },
        )

    return app


# Create application instance
app = create_application()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
        log_level="debug" if settings.debug else "info",
    )
