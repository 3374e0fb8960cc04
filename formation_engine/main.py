import logging
from contextlib import asynccontextmanager
from typing import Optional, Tuple, Type

import structlog
import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from formation_engine.api.dependencies import OrchestratorRegistry
from formation_engine.api.v1 import formations
from formation_engine.core.config import Settings, settings as default_settings
from formation_engine.core.exceptions import (
    AmountMismatchError,
    BackupNotFoundError,
    CertificateError,
    CertificateExpiredError,
    CollaboratorRejectedError,
    CollaboratorResponseError,
    CollaboratorTransientError,
    DomainException,
    InvalidStateError,
    ReviewTimeoutError,
    SessionExpiredError,
    SessionNotFoundError,
    SessionStorageError,
    ValidationError,
)
from formation_engine.core.logging_config import configure_logging
from formation_engine.infrastructure.session_store import SessionStore, build_session_store
from formation_engine.middleware.trace_middleware import TraceMiddleware
from formation_engine.services.collaborators import Collaborators, build_collaborators
from formation_engine.services.orchestration import EventBus

logger = structlog.get_logger()
_startup_logger = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS: Tuple[Tuple[Type[DomainException], int], ...] = (
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (SessionNotFoundError, status.HTTP_404_NOT_FOUND),
    (BackupNotFoundError, status.HTTP_404_NOT_FOUND),
    (SessionExpiredError, status.HTTP_410_GONE),
    (InvalidStateError, status.HTTP_409_CONFLICT),
    (AmountMismatchError, status.HTTP_402_PAYMENT_REQUIRED),
    (CollaboratorTransientError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (CollaboratorRejectedError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (CollaboratorResponseError, status.HTTP_502_BAD_GATEWAY),
    (CertificateExpiredError, status.HTTP_410_GONE),
    (ReviewTimeoutError, status.HTTP_408_REQUEST_TIMEOUT),
    (CertificateError, status.HTTP_400_BAD_REQUEST),
)


def status_for(exc: DomainException) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    if isinstance(exc, SessionStorageError):
        return status.HTTP_503_SERVICE_UNAVAILABLE if exc.retryable else status.HTTP_500_INTERNAL_SERVER_ERROR
    return status.HTTP_400_BAD_REQUEST


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the engine components unless they were injected, and release what we built."""
    app_settings: Settings = app.state.settings
    _startup_logger.info("starting_application version=%s", app_settings.api_version)

    owned_store: Optional[SessionStore] = None
    owned_collaborators: Optional[Collaborators] = None
    if getattr(app.state, "registry", None) is None:
        owned_store = build_session_store(app_settings)
        owned_collaborators = build_collaborators(app_settings)
        app.state.registry = OrchestratorRegistry(owned_store, owned_collaborators, EventBus(), app_settings)

    yield

    _startup_logger.info("shutting_down_application")
    if owned_collaborators is not None:
        await owned_collaborators.aclose()
    if owned_store is not None:
        await owned_store.backend.close()


def create_app(
    app_settings: Optional[Settings] = None,
    store: Optional[SessionStore] = None,
    collaborators: Optional[Collaborators] = None,
    events: Optional[EventBus] = None,
) -> FastAPI:
    """
    Application factory.

    Passing both a store and collaborators wires the app immediately, which is
    what tests do; otherwise the lifespan builds them from settings.
    """
    app_settings = app_settings or default_settings
    is_production = app_settings.environment == "production"

    app = FastAPI(
        title=app_settings.api_title,
        version=app_settings.api_version,
        lifespan=lifespan,
        docs_url=None if is_production else f"{app_settings.api_v1_prefix}/docs",
        redoc_url=None if is_production else f"{app_settings.api_v1_prefix}/redoc",
        openapi_url=None if is_production else f"{app_settings.api_v1_prefix}/openapi.json",
    )
    app.state.settings = app_settings
    app.state.registry = None
    if store is not None and collaborators is not None:
        app.state.registry = OrchestratorRegistry(store, collaborators, events or EventBus(), app_settings)

    app.add_middleware(TraceMiddleware)
    app.include_router(formations.router, prefix=app_settings.api_v1_prefix)

    @app.exception_handler(DomainException)
    async def domain_exception_handler(request: Request, exc: DomainException):
        status_code = status_for(exc)
        log = logger.error if status_code >= 500 else logger.warning
        log(
            "domain_exception",
            error_code=exc.code,
            status_code=status_code,
            error=exc.message,
            path=request.url.path,
        )
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Handle HTTP exceptions"""
        logger.error(
            "http_exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": "HTTP_ERROR",
                "message": exc.detail,
                "status_code": exc.status_code,
            },
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle request validation errors"""
        invalid_fields = [".".join(str(p) for p in err["loc"]) for err in exc.errors()]
        logger.warning("request_validation_error", invalid_fields=invalid_fields, path=request.url.path)
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "error": "VALIDATION_ERROR",
                "message": "Request validation failed",
                "retryable": False,
                "field": invalid_fields[0] if invalid_fields else None,
                "details": {"invalid_fields": invalid_fields},
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle general exceptions"""
        logger.error("unhandled_exception", error=str(exc), path=request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "INTERNAL_SERVER_ERROR",
                "message": "An unexpected error occurred",
            },
        )

    @app.get("/health")
    async def health() -> JSONResponse:
        """Health check endpoint"""
        registry = app.state.registry
        backend = registry.store.backend.name if registry else None
        return JSONResponse({"status": "ok", "version": app_settings.api_version, "storage": backend})

    return app


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    configure_logging(default_settings.environment, default_settings.log_level)
    uvicorn.run(create_app(), host="0.0.0.0", port=default_settings.port, log_config=None)


if __name__ == "__main__":
    run()
