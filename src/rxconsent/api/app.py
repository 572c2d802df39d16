"""FastAPI application factory for the counter access service."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse

from rxconsent import metrics
from rxconsent.access.service import build_access_service
from rxconsent.api.routes import access, health, prescriptions
from rxconsent.errors import AccessError, InvalidOtp
from rxconsent.healthchecks import get_redis_client
from rxconsent.logging import configure_logging, correlation_id_var, new_correlation_id
from rxconsent.settings import Settings
from rxconsent.storage.audit_log import InMemoryAuditLog, PostgresAuditLog

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    import redis

    from rxconsent.storage.audit_log import AuditLogProtocol

__all__ = ["create_app"]

logger = logging.getLogger(__name__)

# Framework-raised HTTP errors that are not AccessError subclasses.
_GENERIC_CODES: dict[int, str] = {
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    429: "RATE_LIMIT_EXCEEDED",
}


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Fresh log context per request, correlation id header, status metrics."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        structlog.contextvars.clear_contextvars()
        incoming = request.headers.get("x-correlation-id")
        if incoming:
            correlation_id_var.set(incoming)
        request.state.request_id = incoming or new_correlation_id()

        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        response.headers["x-correlation-id"] = request.state.request_id
        response.headers["x-request-duration-ms"] = f"{elapsed_ms:.1f}"
        metrics.record_request(response.status_code)
        return response


def _error_response(
    request: Request,
    status_code: int,
    error_code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    """Every error leaves the API as ``{error_code, message, request_id[, details]}``."""
    request_id = getattr(request.state, "request_id", "") or request.headers.get("x-correlation-id", "")
    if not request_id:
        request_id = new_correlation_id()
        request.state.request_id = request_id
    body: dict[str, Any] = {"error_code": error_code, "message": message, "request_id": request_id}
    if details is not None:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body)


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AccessError)
    async def on_access_error(request: Request, exc: AccessError) -> JSONResponse:
        logger.info("Access error %s: %s", exc.error_code, exc.message)
        details = None
        if isinstance(exc, InvalidOtp) and exc.attempts_left is not None:
            details = {"attempts_left": exc.attempts_left}
        return _error_response(request, exc.http_status, exc.error_code, exc.message, details)

    @app.exception_handler(StarletteHTTPException)
    async def on_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        status_code = exc.status_code
        code = _GENERIC_CODES.get(status_code) or ("INVALID_REQUEST" if status_code < 500 else "INTERNAL_ERROR")
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return _error_response(request, status_code, code, message)

    @app.exception_handler(RequestValidationError)
    async def on_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error_response(request, 422, "INVALID_REQUEST", "Request validation failed", exc.errors())

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled application exception", exc_info=exc)
        return _error_response(request, 500, "INTERNAL_ERROR", "Internal server error")


def _open_backends(settings: Settings) -> tuple[AuditLogProtocol, redis.Redis | None]:  # type: ignore[type-arg]
    """Postgres audit log and Redis stores when configured, in-memory otherwise."""
    audit: AuditLogProtocol = (
        PostgresAuditLog.from_dsn(settings.pg_dsn) if settings.pg_dsn else InMemoryAuditLog()
    )
    redis_client = get_redis_client(settings.redis_url) if settings.redis_url else None
    return audit, redis_client


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = Settings()
    configure_logging(json_output=settings.environment != "dev", level="INFO")
    audit, redis_client = _open_backends(settings)

    app.state.settings = settings
    app.state.audit_log = audit
    app.state.access_service = build_access_service(settings, redis_client=redis_client, audit=audit)
    logger.info(
        "Access service ready (env=%s, stores=%s, audit=%s)",
        settings.environment,
        "redis" if redis_client is not None else "memory",
        type(audit).__name__,
    )
    try:
        yield
    finally:
        if redis_client is not None:
            redis_client.close()
        if isinstance(audit, PostgresAuditLog):
            audit.close()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Pharmacy Counter Access Service",
        version="0.1.0",
        description="Patient-consented, time-boxed access to prescription records at the pharmacy counter.",
        lifespan=lifespan,
    )
    _install_error_handlers(app)
    app.add_middleware(ObservabilityMiddleware)
    for router, tag in ((health.router, "health"), (access.router, "access"), (prescriptions.router, "prescriptions")):
        app.include_router(router, tags=[tag])
    return app


app = create_app()
