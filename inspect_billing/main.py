"""
Main Application - FastAPI application setup.
"""

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware

from inspect_billing.api.routes import router
from inspect_billing.config import settings
from inspect_billing.db.session import close_engines
from inspect_billing.exceptions import (
    BillingError,
    DataIntegrityError,
    InsufficientCreditsError,
    NotFoundError,
    PaymentProviderError,
    SubscriptionStateError,
    ValidationError,
    WebhookVerificationError,
    WriteVerificationError,
)
from inspect_billing.observability import (
    get_logger,
    log_context,
    metrics,
    setup_logging,
    setup_tracing,
)
from inspect_billing.observability.tracing import instrument_fastapi

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)

# Fallback for domain errors a route did not translate itself
_ERROR_STATUS: tuple[tuple[type[BillingError], int], ...] = (
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InsufficientCreditsError, status.HTTP_402_PAYMENT_REQUIRED),
    (SubscriptionStateError, status.HTTP_409_CONFLICT),
    (WebhookVerificationError, status.HTTP_401_UNAUTHORIZED),
    (PaymentProviderError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (WriteVerificationError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (DataIntegrityError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
        stripe_configured=settings.stripe_configured,
        api_key_required=bool(settings.api_key),
    )

    yield

    logger.info("application_shutting_down")
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


def _sanitize_validation_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    """ctx may hold exception objects that are not JSON serializable."""
    sanitized: list[dict[str, Any]] = []
    for error in exc.errors():
        item: dict[str, Any] = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
            "input": error.get("input"),
        }
        if "ctx" in error:
            item["ctx"] = {key: str(value) for key, value in error["ctx"].items()}
        sanitized.append(item)
    return sanitized


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Log request validation failures and return them without unserializable context."""
    errors = _sanitize_validation_errors(exc)
    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=errors,
        body_preview=str(exc.body)[:500] if exc.body else None,
    )
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": errors})


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Map an untranslated domain error onto its HTTP status."""
    status_code = next(
        (code for error_type, code in _ERROR_STATUS if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    metrics.record_error(type(exc).__name__, request.url.path)
    logger.warning(
        "billing_error_unhandled_by_route",
        path=request.url.path,
        error_type=type(exc).__name__,
        status_code=status_code,
    )
    detail = str(exc) if status_code < 500 else "Internal billing error"
    return JSONResponse(status_code=status_code, content={"detail": detail})


# Setup tracing
setup_tracing()
instrument_fastapi(app)


class ProxyHeadersMiddleware(BaseHTTPMiddleware):
    """Trust X-Forwarded-Proto and X-Forwarded-For from the reverse proxy."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        forwarded_proto = request.headers.get("X-Forwarded-Proto")
        if forwarded_proto:
            request.scope["scheme"] = forwarded_proto

        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for and request.scope.get("client"):
            _, port = request.scope["client"]
            request.scope["client"] = (forwarded_for.split(",")[0].strip(), port)

        return await call_next(request)


app.add_middleware(ProxyHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _endpoint_label(request: Request) -> str:
    """Route template rather than the raw path, so organization ids don't explode label cardinality."""
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing and request id context."""
    start_time = time.monotonic()
    request_id = request.headers.get("X-Request-ID", "unknown")
    method = request.method
    path = request.url.path

    with log_context(request_id=request_id):
        logger.info("request_started", method=method, path=path)
        metrics.http_requests_in_progress.labels(endpoint=path, method=method).inc()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration = time.monotonic() - start_time
            metrics.record_http_request(_endpoint_label(request), method, 500, duration)
            metrics.record_error(type(exc).__name__, "http_request")
            logger.error(
                "request_failed",
                method=method,
                path=path,
                error=str(exc),
                duration_seconds=duration,
                exc_info=True,
            )
            raise
        finally:
            metrics.http_requests_in_progress.labels(endpoint=path, method=method).dec()

        duration = time.monotonic() - start_time
        metrics.record_http_request(_endpoint_label(request), method, response.status_code, duration)
        logger.info(
            "request_completed",
            method=method,
            path=path,
            status_code=response.status_code,
            duration_seconds=duration,
        )
        return response


# Register routes
app.include_router(router)


@app.get("/")
async def root() -> dict[str, str]:
    """Service info."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format, or 404 when metrics are disabled.
    """
    if not settings.metrics_enabled:
        return PlainTextResponse("metrics disabled", status_code=status.HTTP_404_NOT_FOUND)
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "inspect_billing.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
