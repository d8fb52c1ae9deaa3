"""
TRUSTGATE REST API - Main Application.

Usage:
    uvicorn trustgate.api.main:app --reload --port 8000
"""
import time
import uuid
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError

from .routes import auth_router, two_factor_router, devices_router, account_router, health_router
from .models import ErrorResponse
from ..auth.errors import TwoFactorError, ThrottleExceeded
from ..database.auth_db import get_auth_db
from ..utils.config import get_settings
from ..utils.log_config import configure_logging, request_id_var

configure_logging()
logger = logging.getLogger(__name__)

API_DESCRIPTION = """
Password login with TOTP two-factor authentication and trusted devices.

1. `POST /auth/login` with email and password.
2. On `second_factor_required`, `POST /auth/2fa/verify-login` with the code
   and the `challenge_token`. This also sets the `trusted_device` cookie,
   which lets the same browser skip step 2 next time.
3. Send `Authorization: Bearer <access_token>`.
"""

SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
    "Cache-Control": "no-store",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info(f"Starting TRUSTGATE API v{settings.app_version} ({settings.app_env})")

    try:
        get_auth_db().init_schema()
    except SQLAlchemyError as e:
        # Trusted devices stay in degraded mode until the schema exists
        logger.warning(f"Schema initialization failed: {e}")

    yield

    logger.info("Shutting down TRUSTGATE API")


async def track_request(request: Request, call_next):
    """Assign a request ID, time the request and add security headers."""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
    request.state.request_id = request_id
    token = request_id_var.set(request_id)
    started = time.perf_counter()

    try:
        response = await call_next(request)
    except Exception:
        logger.exception(f"{request.method} {request.url.path} failed")
        raise
    finally:
        request_id_var.reset(token)

    elapsed_ms = (time.perf_counter() - started) * 1000
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time-Ms"] = f"{elapsed_ms:.2f}"
    response.headers.update(SECURITY_HEADERS)

    if not request.url.path.startswith("/health"):
        logger.info(
            f"{request.method} {request.url.path} -> "
            f"{response.status_code} ({elapsed_ms:.1f}ms)"
        )
    return response


async def handle_two_factor_error(request: Request, exc: TwoFactorError):
    body = ErrorResponse(
        error=exc.message,
        code=exc.code,
        retry_after=exc.retry_after if isinstance(exc, ThrottleExceeded) else None,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=body.model_dump(exclude_none=True),
        headers=exc.headers,
    )


async def handle_validation_error(request: Request, exc: RequestValidationError):
    problems = [
        f"{' -> '.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    ]
    body = ErrorResponse(error="Validation Error", detail="; ".join(problems), code="VALIDATION_ERROR")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=body.model_dump(exclude_none=True),
    )


async def handle_unexpected_error(request: Request, exc: Exception):
    request_id = getattr(request.state, "request_id", "unknown")
    logger.error(f"[{request_id}] Unhandled exception: {exc}", exc_info=exc)
    content = {"error": "Internal Server Error", "request_id": request_id, "code": "INTERNAL_ERROR"}
    if get_settings().app_env == "development":
        content["detail"] = str(exc)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=content)


def create_app() -> FastAPI:
    """Build the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="TRUSTGATE API",
        description=API_DESCRIPTION,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # Credentials are needed for the trusted_device cookie
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Retry-After", "X-MFA-Required", "X-Request-ID"],
    )
    app.middleware("http")(track_request)

    app.add_exception_handler(TwoFactorError, handle_two_factor_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    for router in (health_router, auth_router, two_factor_router, devices_router, account_router):
        app.include_router(router)

    return app


app = create_app()
