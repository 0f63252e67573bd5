"""
Main Application - FastAPI application setup.
"""

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.api.admin_routes import router as admin_router
from app.api.routes import router
from app.config import settings
from app.db.session import close_engines, get_write_engine
from app.exceptions import (
    ConcurrencyConflictError,
    ConstraintViolationError,
    DataIntegrityError,
    ExternalDependencyError,
    NotFoundError,
    ValidationError,
    WriteVerificationError,
)
from app.observability import get_logger, log_context, metrics, setup_logging, setup_tracing
from app.observability.metrics import get_metrics_handler
from app.observability.tracing import instrument_fastapi, instrument_sqlalchemy

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
        minimum_charge_minor=settings.minimum_charge_minor,
    )
    instrument_sqlalchemy(get_write_engine())

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


# ============================================================================
# Exception handlers
# ============================================================================


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log detailed validation errors for debugging."""
    errors = exc.errors()

    # Sanitize errors for JSON serialization (ctx may contain non-serializable objects)
    sanitized_errors = []
    for error in errors:
        sanitized = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
            "input": error.get("input"),
        }
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
        body_preview=str(exc.body)[:500] if exc.body else None,
    )
    return JSONResponse(
        status_code=422,
        content={"detail": sanitized_errors},
    )


@app.exception_handler(ValidationError)
async def ledger_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Malformed input that got past request validation."""
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": exc.message},
    )


@app.exception_handler(ConstraintViolationError)
async def constraint_violation_handler(
    request: Request, exc: ConstraintViolationError
) -> JSONResponse:
    """Business-rule rejection with a machine-readable reason."""
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": {"reason": exc.reason, "message": exc.message}},
    )


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(ConcurrencyConflictError)
async def concurrency_conflict_handler(
    request: Request, exc: ConcurrencyConflictError
) -> JSONResponse:
    """Lost an optimistic race. The client may retry immediately."""
    logger.warning(
        "concurrency_conflict",
        path=request.url.path,
        method=request.method,
        resource=exc.resource,
    )
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": {"reason": "CONCURRENT_MODIFICATION", "message": str(exc)}},
        headers={"Retry-After": "0"},
    )


@app.exception_handler(ExternalDependencyError)
async def external_dependency_handler(
    request: Request, exc: ExternalDependencyError
) -> JSONResponse:
    logger.error(
        "external_dependency_unavailable",
        path=request.url.path,
        method=request.method,
        error=exc.message,
    )
    metrics.record_error("ExternalDependencyError", "http_request")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Balance store unavailable"},
    )


@app.exception_handler(WriteVerificationError)
@app.exception_handler(DataIntegrityError)
async def integrity_error_handler(
    request: Request, exc: WriteVerificationError | DataIntegrityError
) -> JSONResponse:
    """Stored state failed a consistency check. Never leaks details to the caller."""
    logger.error(
        "ledger_integrity_failure",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        error=exc.message,
    )
    metrics.record_error(type(exc).__name__, "http_request")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal ledger error"},
    )


# Setup tracing
setup_tracing()
instrument_fastapi(app)


# Proxy headers middleware - trust X-Forwarded-* headers from nginx
class ProxyHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to handle X-Forwarded-* headers from reverse proxy."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        forwarded_proto = request.headers.get("X-Forwarded-Proto")
        if forwarded_proto:
            request.scope["scheme"] = forwarded_proto

        response = await call_next(request)
        return response


app.add_middleware(ProxyHeadersMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")
    actor = request.headers.get("X-Actor-Id")

    endpoint = request.url.path
    method = request.method

    with log_context(request_id=request_id, actor=actor):
        logger.info("request_started", method=method, path=endpoint)

        metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()
        try:
            response = await call_next(request)
            duration = time.time() - start_time

            metrics.record_http_request(endpoint, method, response.status_code, duration)

            logger.info(
                "request_completed",
                method=method,
                path=endpoint,
                status_code=response.status_code,
                duration_seconds=duration,
            )

            response.headers["X-Request-ID"] = request_id
            return response
        except Exception as e:
            duration = time.time() - start_time
            metrics.record_http_request(endpoint, method, 500, duration)
            metrics.record_error(type(e).__name__, "http_request")

            logger.error(
                "request_failed",
                method=method,
                path=endpoint,
                error=str(e),
                duration_seconds=duration,
                exc_info=True,
            )
            raise
        finally:
            metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).dec()


# Register routes
app.include_router(router)  # Ledger, pricing and health routes
app.include_router(admin_router)  # Discount administration


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


_render_metrics = get_metrics_handler()


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format, or 404 when metrics are disabled.
    """
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Metrics disabled")
    return PlainTextResponse(_render_metrics())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
