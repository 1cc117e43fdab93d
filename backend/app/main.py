"""
FastAPI Application — Entry Point

Document Processing Orchestrator API

Architecture:
  - All routes are versioned under /api/v1/
  - One DocumentStore, UpdateBroadcaster and DocumentOrchestrator per
    process, created in the lifespan and kept on app.state
  - Processing runs as background asyncio tasks; HTTP handlers only
    schedule work and return 202
  - Structured JSON error responses on all 4xx/5xx

Middleware stack (innermost → outermost):
  1. CORS — configured origins (settings.cors_origins)
  2. Request ID injection — X-Request-ID header on every response
  3. Gzip — compress responses > 1 KB

Shutdown:
  In-flight runs are stopped at their next stage boundary and awaited
  before the store is closed.
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

from app.api.v1.documents import router as documents_router
from app.api.v1.events import router as events_router
from app.api.v1.routing import router as routing_router
from app.core.config import settings
from app.schemas.documents import ErrorDetail, ErrorResponse, ProcessingErrors
from app.services.broadcaster import UpdateBroadcaster
from app.services.orchestrator import DocumentOrchestrator
from app.storage.documents import get_document_store

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


# ---------------------------------------------------------------------------
# Application lifespan — startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Run on startup: build the store (creating tables for the SQL backend),
    the broadcaster and the orchestrator.
    Run on shutdown: stop in-flight runs, then release the store.
    """
    logger.info(
        "Starting Document Orchestrator | env=%s store=%s default_provider=%s",
        settings.app_env, settings.document_store_backend, settings.default_llm_provider,
    )

    store = get_document_store()
    if settings.document_store_backend.lower() == "sql":
        from app.db.session import check_db_health, create_tables

        db_health = await check_db_health()
        if db_health["status"] != "ok":
            logger.critical("Database health check failed at startup: %s", db_health)
            raise RuntimeError(f"DB unavailable: {db_health}")
        await create_tables()
        logger.info("Database: connected")

    broadcaster  = UpdateBroadcaster(store)
    orchestrator = DocumentOrchestrator(store, broadcaster)

    app.state.store        = store
    app.state.broadcaster  = broadcaster
    app.state.orchestrator = orchestrator

    yield

    logger.info("Shutting down Document Orchestrator")
    await orchestrator.shutdown()
    await store.close()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="Document Processing Orchestrator",
        description=(
            "Uploads documents and runs them through metadata extraction, LLM routing "
            "and tiered content extraction, with live progress over Server-Sent Events."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order — last added = outermost)
    # ----------------------------------------------------------------

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "PATCH"],
        allow_headers=["Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Location"],
    )

    # ----------------------------------------------------------------
    # Request ID + structured logging middleware
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
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
    # Exception handlers — uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Convert Pydantic/FastAPI validation errors to structured ErrorResponse."""
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
        """Catch-all for unhandled exceptions — never expose stack traces."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        body = ProcessingErrors.internal_error(request_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(documents_router, prefix="/api/v1")
    app.include_router(routing_router,   prefix="/api/v1")
    app.include_router(events_router,    prefix="/api/v1")

    # Initialise observability tracing (LangSmith)
    from app.observability.tracing import TracingConfig
    TracingConfig.init()

    # ----------------------------------------------------------------
    # Health endpoint (used by load balancer)
    # ----------------------------------------------------------------

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness probe",
        description="Returns 200 if the process is alive, with orchestrator counters.",
    )
    async def health(request: Request) -> dict:
        orchestrator = getattr(request.app.state, "orchestrator", None)
        return {
            "status":      "ok",
            "service":     "document-orchestrator",
            "store":       settings.document_store_backend,
            "activeRuns":  len(orchestrator.claims) if orchestrator else 0,
        }

    return app


# ---------------------------------------------------------------------------
# Application instance (imported by uvicorn)
# ---------------------------------------------------------------------------

app = create_app()


# ---------------------------------------------------------------------------
# Local development entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
