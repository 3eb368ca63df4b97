"""
Main Application - FastAPI application setup.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from chainchat.api.auth_routes import router as auth_router
from chainchat.api.chat_routes import router as chat_router
from chainchat.api.dependencies import get_usage_recorder
from chainchat.api.routes import router
from chainchat.api.settings_routes import router as settings_router
from chainchat.api.status_routes import router as status_router
from chainchat.config import settings
from chainchat.db.migration_runner import run_migrations
from chainchat.db.session import close_engines, get_read_session_factory
from chainchat.models.api import HealthResponse
from chainchat.observability import get_logger, metrics, setup_logging, setup_tracing
from chainchat.observability.metrics import get_metrics_handler, track_http_request
from chainchat.observability.tracing import instrument_fastapi

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Startup applies pending migrations when enabled; shutdown waits for
    in-flight usage records before closing the engines.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
        builtin_llm_available=settings.builtin_llm_available,
    )

    if settings.run_migrations:
        await asyncio.to_thread(run_migrations)

    yield

    logger.info("application_shutting_down")
    recorder = get_usage_recorder()
    if recorder.pending:
        logger.info("draining_usage_records", pending=recorder.pending)
    await recorder.drain()
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log detailed validation errors for debugging."""
    sanitized_errors = []
    for error in exc.errors():
        sanitized = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        # ctx may contain non-serializable objects
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    # Request bodies can carry model API keys; only locations are logged
    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=[{"loc": e["loc"], "type": e["type"]} for e in sanitized_errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": sanitized_errors},
    )


# Setup tracing
setup_tracing()
instrument_fastapi(app)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    request_id = request.headers.get("X-Request-ID", "unknown")
    endpoint = request.url.path
    method = request.method

    logger.info("request_started", method=method, path=endpoint, request_id=request_id)

    with track_http_request(endpoint, method) as tracker:
        try:
            response = await call_next(request)
        except Exception as e:
            metrics.record_error(type(e).__name__, "http_request")
            logger.error(
                "request_failed",
                method=method,
                path=endpoint,
                error=str(e),
                request_id=request_id,
                exc_info=True,
            )
            raise
        tracker.set_status_code(response.status_code)

    logger.info(
        "request_completed",
        method=method,
        path=endpoint,
        status_code=response.status_code,
        request_id=request_id,
    )
    return response


# Register routes
app.include_router(router)  # Credits API
app.include_router(auth_router)  # Wallet login
app.include_router(chat_router)  # Streamed chat
app.include_router(settings_router)  # Per-user model settings
app.include_router(status_router)  # Dependency status


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse | JSONResponse:
    """Liveness plus database connectivity."""
    timestamp = datetime.now(UTC).isoformat()
    try:
        async with get_read_session_factory()() as db:
            await db.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        logger.warning("health_check_database_failed", error=str(e))
        body = HealthResponse(status="unhealthy", database="disconnected", timestamp=timestamp)
        return JSONResponse(status_code=503, content=body.model_dump())

    return HealthResponse(status="healthy", database="connected", timestamp=timestamp)


_render_metrics = get_metrics_handler()


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    if not settings.metrics_enabled:
        return PlainTextResponse("", status_code=404)
    return PlainTextResponse(_render_metrics())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "chainchat.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
