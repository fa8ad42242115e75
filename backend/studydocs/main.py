"""
StudyDocs API: application entry point

Architecture:
  - All routes are versioned under /api/v1/
  - Uploads are accepted here; extraction, chunking and embedding run in
    the Celery worker (studydocs.workers)
  - Structured JSON error responses on all 4xx/5xx

Middleware stack (innermost → outermost):
  1. Request ID + request logging — X-Request-ID header on every response
  2. CORS — open in development, restricted elsewhere
  3. Gzip — compress responses > 1 KB

Error mapping:
  ValidationError         → 400
  NotFoundError           → 404
  InvalidTransitionError  → 409
  ProviderError           → 502
  anything else           → 500 (no stack trace in the body)
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from studydocs.api.v1.documents import router as documents_router
from studydocs.api.v1.jobs import router as jobs_router
from studydocs.api.v1.queue import router as queue_router
from studydocs.api.v1.search import router as search_router
from studydocs.core.config import Settings, get_settings
from studydocs.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    ProviderError,
    StudyDocsError,
    ValidationError,
)
from studydocs.db.session import check_db_health, dispose_engine
from studydocs.schemas.documents import ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)

# (exception class, HTTP status, error_code); first match wins
ERROR_STATUS_MAP: tuple[tuple[type[StudyDocsError], int, str], ...] = (
    (ValidationError,        status.HTTP_400_BAD_REQUEST,  "VALIDATION_ERROR"),
    (NotFoundError,          status.HTTP_404_NOT_FOUND,    "NOT_FOUND"),
    (InvalidTransitionError, status.HTTP_409_CONFLICT,     "INVALID_TRANSITION"),
    (ProviderError,          status.HTTP_502_BAD_GATEWAY,  "PROVIDER_ERROR"),
)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s | %(message)s",
    )


def _request_id(request: Request) -> str:
    return request.headers.get("X-Request-ID") or str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Application lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info(
        "Starting StudyDocs API | env=%s bucket=%s embedding_model=%s",
        settings.app_env, settings.s3_bucket, settings.embedding_model,
    )
    yield
    logger.info("Shutting down StudyDocs API")
    await dispose_engine()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title="StudyDocs Document Processing API",
        description="Upload study documents, track their processing jobs and search their chunks.",
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order: last added = outermost)
    # ----------------------------------------------------------------

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else [],
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "X-Document-ID", "Location"],
    )

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = _request_id(request)
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "HTTP %s %s %d %.1fms | request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request_id,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(StudyDocsError)
    async def domain_exception_handler(request: Request, exc: StudyDocsError):
        for exc_type, status_code, error_code in ERROR_STATUS_MAP:
            if isinstance(exc, exc_type):
                break
        else:
            status_code, error_code = status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_ERROR"

        if status_code >= 500:
            logger.error("Request failed | path=%s error=%s", request.url.path, exc)
        body = ErrorResponse(
            error_code=error_code,
            message=str(exc),
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Request schema failures (bad UUID, blank query, limit out of range) → 422."""
        details = [
            ErrorDetail(
                field=" → ".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=details,
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Last resort: log the traceback, return a bare 500 body."""
        request_id = _request_id(request)
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        body = ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(documents_router, prefix="/api/v1")
    app.include_router(jobs_router,      prefix="/api/v1")
    app.include_router(search_router,    prefix="/api/v1")
    app.include_router(queue_router,     prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health & readiness endpoints (used by the load balancer)
    # ----------------------------------------------------------------

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness probe",
        description="API process is up. Does not touch PostgreSQL, S3 or the broker.",
    )
    async def health() -> dict:
        return {"status": "ok", "service": "studydocs-api"}

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness probe",
        description="200 when PostgreSQL answers; 503 otherwise.",
    )
    async def readiness() -> JSONResponse:
        db_status = await check_db_health()
        if db_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_status},
            )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": db_status},
        )

    return app


# ---------------------------------------------------------------------------
# Application instance (imported by uvicorn)
# ---------------------------------------------------------------------------

app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "studydocs.main:app",
        host="0.0.0.0",
        port=8000,
        reload=_settings.app_env == "development",
        log_level="debug" if _settings.debug else "info",
    )
