import logging
import os
import sys
import time
import uuid
from typing import Callable, Iterable

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.api.routes_bookings import router as bookings_router
from app.api.routes_metrics import router as metrics_router
from app.domain.errors import DomainError
from app.infra.db import get_session_factory
from app.infra.locks import create_calendar_lock
from app.infra.logging import configure_logging
from app.infra.metrics import configure_metrics
from app.infra.security import create_rate_limiter
from app.settings import settings

PROBLEM_TYPE_VALIDATION = "https://instant-booking.dev/problems/validation-error"
PROBLEM_TYPE_DOMAIN = "https://instant-booking.dev/problems/domain-error"
PROBLEM_TYPE_RATE_LIMIT = "https://instant-booking.dev/problems/rate-limit"
PROBLEM_TYPE_SERVER = "https://instant-booking.dev/problems/server-error"

MIN_SECRET_LENGTH = 32

logger = logging.getLogger(__name__)


def problem_details(
    request: Request,
    status: int,
    title: str,
    detail: str,
    errors: list[dict[str, str]] | None = None,
    type_: str = "about:blank",
    code: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    content = {
        "type": type_,
        "title": title,
        "status": status,
        "detail": detail,
        "code": code,
        "request_id": getattr(request.state, "request_id", None),
        "errors": errors or [],
    }
    return JSONResponse(status_code=status, content=content, headers=headers)


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        logger = logging.getLogger("app.request")
        start = time.time()
        response = await call_next(request)
        latency_ms = int((time.time() - start) * 1000)
        logger.info(
            "request",
            extra={
                "extra": {
                    "request_id": getattr(request.state, "request_id", None),
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "latency_ms": latency_ms,
                }
            },
        )
        if response.status_code >= 500:
            metrics_client = getattr(request.app.state, "metrics", None)
            if metrics_client is not None:
                metrics_client.record_http_5xx(request.method, request.url.path)
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        return response


def _resolve_cors_origins(app_settings) -> Iterable[str]:
    if app_settings.cors_origins:
        return app_settings.cors_origins
    if app_settings.strict_cors:
        return []
    if app_settings.app_env == "dev":
        return ["http://localhost:3000"]
    return []


def _validate_prod_config(app_settings) -> None:
    if (
        app_settings.app_env == "dev"
        or getattr(app_settings, "testing", False)
        or os.getenv("PYTEST_CURRENT_TEST")
        or "pytest" in sys.argv[0]
    ):
        return

    errors: list[str] = []
    secret = app_settings.auth_secret_key or ""
    if secret == "dev-auth-secret" or len(secret) < MIN_SECRET_LENGTH:
        errors.append(f"AUTH_SECRET_KEY must be at least {MIN_SECRET_LENGTH} characters outside dev")
    if app_settings.metrics_enabled and not app_settings.metrics_token:
        errors.append("METRICS_TOKEN is required when metrics are enabled outside dev")
    if app_settings.payment_mode == "stripe" and not app_settings.stripe_secret_key:
        errors.append("STRIPE_SECRET_KEY is required when PAYMENT_MODE=stripe")
    if app_settings.notification_mode == "webhook" and not app_settings.notification_webhook_url:
        errors.append("NOTIFICATION_WEBHOOK_URL is required when NOTIFICATION_MODE=webhook")

    if errors:
        for error in errors:
            logger.error("startup_config_error", extra={"extra": {"detail": error}})
        raise RuntimeError("Invalid production configuration; see logs for details")


def create_app(app_settings) -> FastAPI:
    configure_logging()
    _validate_prod_config(app_settings)
    app = FastAPI(title=app_settings.app_name, version="1.0.0")

    rate_limiter = create_rate_limiter(app_settings)
    calendar_lock = create_calendar_lock(app_settings)
    app.state.rate_limiter = rate_limiter
    app.state.calendar_lock = calendar_lock
    app.state.app_settings = app_settings
    app.state.db_session_factory = get_session_factory()
    app.state.metrics = configure_metrics(app_settings.metrics_enabled)
    app.state.payment_gateway = None
    app.state.notifier = None
    app.state.stripe_client = None
    app.state.clock = None

    @app.on_event("shutdown")
    async def shutdown_clients() -> None:
        await rate_limiter.close()
        await calendar_lock.close()

    app.add_middleware(LoggingMiddleware)
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(_resolve_cors_origins(app_settings)),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            loc = error.get("loc", [])
            field = ".".join(str(part) for part in loc if part not in {"body", "query", "path"}) or "body"
            errors.append({"field": field, "message": error.get("msg", "Invalid value")})
        return problem_details(
            request=request,
            status=400,
            title="Validation Error",
            detail="Request validation failed",
            errors=errors,
            type_=PROBLEM_TYPE_VALIDATION,
            code="INVALID_REQUEST",
        )

    @app.exception_handler(DomainError)
    async def domain_exception_handler(request: Request, exc: DomainError):
        logger.info(
            "booking_request_rejected",
            extra={
                "extra": {
                    "request_id": getattr(request.state, "request_id", None),
                    "path": request.url.path,
                    "status_code": exc.status_code,
                    "code": exc.code,
                }
            },
        )
        return problem_details(
            request=request,
            status=exc.status_code,
            title=exc.title,
            detail=exc.detail,
            errors=exc.errors or [],
            type_=exc.type or PROBLEM_TYPE_DOMAIN,
            code=exc.code,
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        if exc.status_code == 429:
            type_ = PROBLEM_TYPE_RATE_LIMIT
            code = "RATE_LIMITED"
        else:
            type_ = PROBLEM_TYPE_DOMAIN if exc.status_code < 500 else PROBLEM_TYPE_SERVER
            code = None
        return problem_details(
            request=request,
            status=exc.status_code,
            title=exc.detail if isinstance(exc.detail, str) else "HTTP Error",
            detail=exc.detail if isinstance(exc.detail, str) else "Request failed",
            type_=type_,
            code=code,
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            extra={"extra": {"request_id": getattr(request.state, "request_id", None), "path": request.url.path}},
        )
        return problem_details(
            request=request,
            status=500,
            title="Internal Server Error",
            detail="Unexpected error",
            type_=PROBLEM_TYPE_SERVER,
        )

    app.include_router(bookings_router)
    app.include_router(metrics_router)
    return app


app = create_app(settings)
