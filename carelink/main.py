"""
CareLink gateway - application entry point.

Wires the authorization chain, identity provider gateway, and FHIR proxy
into a FastAPI application.
"""

import os
import uuid
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from carelink import __version__
from carelink.api.api import api_router
from carelink.config import Settings
from carelink.di import ServiceContainer
from carelink.exceptions import CareLinkError, UpstreamRejected
from carelink.middleware import RateLimitMiddleware, SecurityHeadersMiddleware
from carelink.utils.error_responses import create_error_response, format_validation_errors
from carelink.utils.logging_utils import log_error, log_warning

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", None) or uuid.uuid4().hex


def create_app(
    settings: Optional[Settings] = None,
    container: Optional[ServiceContainer] = None,
) -> FastAPI:
    """
    Build the gateway application.

    Args:
        settings: Runtime settings; read from the environment when omitted
        container: Pre-built service container (tests inject one backed by a
            mock HTTP transport)
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting CareLink gateway (FHIR server %s)", settings.fhir_server_url)
        services = container or ServiceContainer(settings)
        await services.startup()
        app.state.container = services
        try:
            yield
        finally:
            logger.info("Shutting down CareLink gateway...")
            await services.shutdown()
            logger.info("Shutdown complete")

    app = FastAPI(
        title="CareLink Gateway",
        description="SMART-on-FHIR authorization gateway for the patient dashboard",
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(api_router)

    app.add_middleware(
        SecurityHeadersMiddleware,
        enabled=settings.security_headers_enabled,
    )
    app.add_middleware(
        RateLimitMiddleware,
        max_requests=settings.rate_limit_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
        enabled=settings.rate_limit_enabled,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        correlation_id = request.headers.get("X-Correlation-ID") or uuid.uuid4().hex
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    @app.exception_handler(CareLinkError)
    async def carelink_error_handler(request: Request, exc: CareLinkError):
        correlation_id = _correlation_id(request)
        context = {"kind": exc.kind, "path": request.url.path}
        if isinstance(exc, UpstreamRejected):
            context["upstream_status"] = exc.upstream_status

        if exc.status_code >= 500:
            log_error(exc.message, correlation_id=correlation_id, **context)
        else:
            log_warning(exc.message, correlation_id=correlation_id, **context)

        return create_error_response(
            exc.message,
            status_code=exc.status_code,
            details=exc.details,
            correlation_id=correlation_id,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        correlation_id = _correlation_id(request)
        details = format_validation_errors(exc.errors())
        log_warning("Validation failed", correlation_id=correlation_id, path=request.url.path)
        return create_error_response(
            "Validation failed",
            status_code=400,
            details=details,
            correlation_id=correlation_id,
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        correlation_id = _correlation_id(request)
        if exc.status_code == 404:
            message = "Route not found"
        else:
            message = exc.detail if isinstance(exc.detail, str) and exc.detail else "Request failed"

        if exc.status_code >= 500:
            log_error(message, correlation_id=correlation_id, status=exc.status_code)
        else:
            log_warning(message, correlation_id=correlation_id, status=exc.status_code)

        return create_error_response(
            message,
            status_code=exc.status_code,
            correlation_id=correlation_id,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        correlation_id = _correlation_id(request)
        log_error(
            f"Unhandled exception at {request.method} {request.url.path}: {exc}",
            correlation_id=correlation_id,
            exc_info=True,
        )

        message = "Internal server error"
        details = None
        if settings.debug:
            message = f"Internal server error: {type(exc).__name__}"
            details = [str(exc)]

        return create_error_response(
            message,
            status_code=500,
            details=details,
            correlation_id=correlation_id,
        )

    return app


if __name__ == "__main__":
    uvicorn.run(
        create_app(),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3000")),
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )
