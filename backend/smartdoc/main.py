"""
SmartDoc HTTP API

Layout:
  - Versioned routes live under /api/v1; probes under /health
  - The lifespan builds one ServiceContainer and hangs it on app.state
  - The caller's identity arrives in X-User-ID (set by the auth gateway)
  - Every SmartDocError is rendered as an ErrorResponse with the status
    carried by the error itself
  - With EMBEDDED_WORKER=true the local WorkerPool runs inside this process

Middleware stack:
  1. CORS
  2. Request ID injection + request logging with latency
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from smartdoc.api.v1.chat import router as chat_router
from smartdoc.api.v1.documents import router as documents_router
from smartdoc.api.v1.search import router as search_router
from smartdoc.core.config import Settings, get_settings
from smartdoc.core.errors import SmartDocError
from smartdoc.core.logging_config import configure_logging
from smartdoc.db.session import check_db_health, create_tables
from smartdoc.schemas.documents import ErrorDetail, ErrorResponse
from smartdoc.services.container import ServiceContainer, build_container

logger = logging.getLogger(__name__)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get(
        "X-Request-ID", str(uuid.uuid4())
    )


def _error_json(
    status_code: int,
    error_code:  str,
    message:     str,
    request_id:  str,
    details:     list[ErrorDetail] | None = None,
) -> JSONResponse:
    body = ErrorResponse(
        error_code=error_code,
        message=message,
        details=details or [],
        request_id=request_id,
    )
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json"),
        headers={"X-Request-ID": request_id},
    )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(
    settings:  Settings | None = None,
    container: ServiceContainer | None = None,
) -> FastAPI:
    """
    Build the API. Passing ``container`` skips service construction in the
    lifespan (tests inject one wired to fakes).
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = container is None
        services = container or build_container(settings)
        app.state.container = services
        logger.info(
            "Starting SmartDoc | env=%s storage=%s queue=%s",
            settings.app_env, settings.storage_backend, settings.queue_backend,
        )

        if settings.db_auto_create:
            await create_tables(services.engine)
        db_health = await check_db_health(services.engine)
        if db_health["status"] != "ok":
            logger.critical("Startup aborted, database unreachable | detail=%s", db_health.get("detail"))
            raise RuntimeError(f"Database unreachable at startup: {db_health}")

        pool = None
        if settings.embedded_worker and settings.queue_backend == "local":
            pool = services.build_worker_pool()
            await pool.start()

        yield

        logger.info("Shutting down SmartDoc")
        if pool is not None:
            await pool.stop()
        if owned:
            await services.aclose()

    app = FastAPI(
        title="SmartDoc",
        description=(
            "Document processing pipeline with extraction, enrichment, semantic "
            "search and retrieval-augmented chat."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    # ----------------------------------------------------------------
    # Middleware
    # ----------------------------------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else [],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "X-Request-ID", "X-User-ID"],
        expose_headers=["X-Request-ID", "Location"],
    )

    @app.middleware("http")
    async def tag_and_time_requests(request: Request, call_next):
        request.state.request_id = _request_id(request)
        t0 = time.perf_counter()

        response = await call_next(request)

        response.headers["X-Request-ID"] = request.state.request_id
        logger.info(
            "HTTP %s %s %d %.1fms | user=%s",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - t0) * 1000,
            request.headers.get("X-User-ID", "-"),
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: every failure leaves as an ErrorResponse
    # ----------------------------------------------------------------

    @app.exception_handler(SmartDocError)
    async def smartdoc_exception_handler(request: Request, exc: SmartDocError):
        request_id = _request_id(request)
        if exc.code >= 500:
            logger.error(
                "Request failed | path=%s kind=%s request_id=%s error=%s",
                request.url.path, exc.kind.value, request_id, exc,
            )
        return _error_json(exc.code, exc.kind.value.upper(), str(exc), request_id)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        """Malformed bodies, paths or query strings: one ErrorDetail per field."""
        details = [
            ErrorDetail(
                field=".".join(str(part) for part in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        return _error_json(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "VALIDATION_ERROR",
            "The request did not match the endpoint's schema.",
            _request_id(request),
            details,
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        request_id = _request_id(request)
        logger.exception("Unhandled error | path=%s request_id=%s", request.url.path, request_id)
        return _error_json(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "INTERNAL_ERROR",
            "Internal server error.",
            request_id,
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(documents_router, prefix="/api/v1")
    app.include_router(search_router,    prefix="/api/v1")
    app.include_router(chat_router,      prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health & readiness endpoints
    # ----------------------------------------------------------------

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness probe",
        description="Process is up. Touches nothing external.",
    )
    async def health() -> dict:
        return {"status": "ok", "service": "smartdoc-api"}

    @app.get(
        "/health/ready",
        tags=["Operations"],
        summary="Readiness probe",
        description="Database reachable; also reports job counts by state.",
    )
    async def readiness(request: Request) -> JSONResponse:
        services: ServiceContainer = request.app.state.container
        db_status = await check_db_health(services.engine)
        if db_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_status},
            )
        queue_counts = await services.queue.counts()
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": db_status, "jobs": queue_counts},
        )

    return app


def get_app() -> FastAPI:
    """uvicorn factory: ``uvicorn smartdoc.main:get_app --factory``."""
    settings = get_settings()
    configure_logging(settings.debug)
    return create_app(settings)


# ---------------------------------------------------------------------------
# Local development entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "smartdoc.main:get_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=_settings.app_env == "development",
        log_level="debug" if _settings.debug else "info",
        access_log=True,
    )
