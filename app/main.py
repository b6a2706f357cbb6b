"""
FastAPI Application — Entry Point

Academic file ingestion service: uploads in, extraction + chunks out.

  ┌──────────┐   X-User-ID    ┌──────────────────────┐   direct   ┌─────────────────┐
  │ gateway  │ ─────────────▶ │ /api/v1/processing/* │ ─────────▶ │ HybridProcessor │
  └──────────┘                └──────────┬───────────┘            └─────────────────┘
                                         │ async (S3 + processing_jobs row)
                                         ▼
                                  Celery "processing" queue

Error envelopes:
  - ProcessingError        → {success: false, error: {...}}, status from ErrorKind
  - RequestValidationError → ErrorResponse, 422
  - anything else          → ErrorResponse, 500 (no internals)
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
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from app.api.v1.processing import router as processing_router
from app.core.config import settings
from app.db.session import check_db_health, engine
from app.processing.errors import ProcessingError, create_error_response, log_processing_error
from app.processing.strategy import SELF_HOSTED_MIME_TYPES
from app.schemas.processing import ErrorDetail, ErrorResponse, http_status_for

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

REQUEST_ID_HEADER = "X-Request-ID"
_MB = 1024 * 1024


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup logs which extraction paths are available. A missing database is
    logged but not fatal: direct processing and recommendations work without it.
    """
    logger.info(
        "Ingestion API starting | env=%s external=%s direct_limit=%dMB async_limit=%dMB",
        settings.app_env,
        settings.external_service_configured,
        settings.max_direct_file_size_bytes // _MB,
        settings.max_async_file_size_bytes // _MB,
    )
    db_health = await check_db_health()
    if db_health["status"] != "ok":
        logger.error("Database unreachable at startup; async jobs unavailable | %s", db_health)

    yield

    await engine.dispose()
    logger.info("Ingestion API stopped")


def _register_middleware(app: FastAPI) -> None:
    # Last added = outermost
    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Authorization", "Content-Type", REQUEST_ID_HEADER, "X-User-ID"],
        expose_headers=[REQUEST_ID_HEADER, "X-Job-ID", "Location"],
    )
    if settings.is_production and settings.allowed_hosts:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

    @app.middleware("http")
    async def access_log(request: Request, call_next):
        request.state.request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        started = time.perf_counter()
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request.state.request_id
        logger.info(
            "HTTP %s %s → %d | %.1fms user=%s request_id=%s",
            request.method, request.url.path, response.status_code,
            (time.perf_counter() - started) * 1000,
            request.headers.get("X-User-ID", "-"), request.state.request_id,
        )
        return response


def _register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(ProcessingError)
    async def on_processing_error(request: Request, exc: ProcessingError):
        log_processing_error(exc, f"{request.method} {request.url.path}")
        return JSONResponse(
            status_code=http_status_for(exc.kind),
            content=create_error_response(exc),
            headers={REQUEST_ID_HEADER: _request_id(request)},
        )

    @app.exception_handler(RequestValidationError)
    async def on_validation_error(request: Request, exc: RequestValidationError):
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=[
                ErrorDetail(
                    field=".".join(str(part) for part in err["loc"]),
                    message=err["msg"],
                    code=err.get("type", "VALIDATION_ERROR"),
                )
                for err in exc.errors()
            ],
            request_id=_request_id(request),
        )
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=body.model_dump(mode="json"))

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception):
        request_id = _request_id(request)
        logger.exception("Unhandled exception | %s %s request_id=%s", request.method, request.url.path, request_id)
        body = ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="Document processing failed unexpectedly. Please try again.",
            request_id=request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json"),
            headers={REQUEST_ID_HEADER: request_id},
        )


def create_app() -> FastAPI:
    docs_enabled = not settings.is_production
    app = FastAPI(
        title="Academic File Ingestion API",
        description=(
            "Turns uploaded PDF, DOCX and image files into structured text and "
            "chunks. Picks self-hosted or external extraction per file and hands "
            "large files to background workers."
        ),
        version="1.0.0",
        docs_url="/api/docs" if docs_enabled else None,
        redoc_url="/api/redoc" if docs_enabled else None,
        openapi_url="/api/openapi.json" if docs_enabled else None,
        lifespan=lifespan,
    )
    _register_middleware(app)
    _register_exception_handlers(app)
    app.include_router(processing_router, prefix="/api/v1")

    # Probes carry no identity; the load balancer calls them.

    @app.get("/health", tags=["Operations"], summary="Liveness probe")
    async def health() -> dict:
        return {"status": "ok", "service": "academic-ingestion-api"}

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness probe",
        description="503 when the job database is unreachable; always reports extraction capabilities.",
    )
    async def readiness() -> JSONResponse:
        database = await check_db_health()
        ready = database["status"] == "ok"
        return JSONResponse(
            status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status":   "ready" if ready else "not_ready",
                "database": database,
                "extraction": {
                    "self_hosted": sorted(SELF_HOSTED_MIME_TYPES),
                    "external":    settings.external_service_configured,
                },
            },
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
    )
