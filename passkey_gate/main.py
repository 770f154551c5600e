"""Main FastAPI application for the passkey gate service."""

import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api.auth import router as auth_router
from .api.credentials import router as credentials_router
from .api.dependencies import Services, correlation_id
from .api.logs import router as logs_router
from .clients.object_store import MemoryObjectStore, ObjectStore, StorageUnavailableError
from .clients.supabase_client import SupabaseClient, SupabaseObjectStore
from .clients.webauthn_client import WebAuthnCeremony
from .config import Settings, get_settings
from .middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware
from .models.api_models import ErrorResponse, HealthResponse
from .observability import instrument_fastapi_app, setup_observability
from .services.audit_logger import AuditLogger
from .services.auth_service import PasskeyAuthService
from .services.credential_repository import (
    CredentialNotFoundError,
    MutableCredentialRepository,
    PolicyDeniedError,
    build_credential_repository,
)
from .services.enrolled_dataset import EnrolledDatasetError
from .services.log_store import LogStore
from .services.session_tokens import SessionTokenCodec

VERSION = "1.0.0"


def configure_logging(settings: Settings) -> None:
    """Configure structured logging."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
    )
    renderer = (
        structlog.processors.JSONRenderer()
        if settings.json_logs
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger()


def build_object_store(settings: Settings) -> ObjectStore:
    if settings.supabase_configured:
        client = SupabaseClient(settings.supabase_url, settings.supabase_key)
        return SupabaseObjectStore(client, settings.storage_bucket)
    if not settings.interactive_mode:
        logger.warning("Supabase storage not configured; logs are kept in memory only")
    return MemoryObjectStore()


def build_services(
    settings: Settings,
    object_store: Optional[ObjectStore] = None,
    repository=None,
    ceremony: Optional[WebAuthnCeremony] = None,
) -> Services:
    """Wire every component once; the credential backend is fixed for the process."""
    object_store = object_store or build_object_store(settings)
    repository = repository or build_credential_repository(settings, object_store)
    log_store = LogStore(object_store, root=settings.log_root, page_size=settings.log_page_size)
    audit = AuditLogger(log_store, interactive=settings.interactive_mode)
    sessions = SessionTokenCodec(
        settings.session_secret,
        ttl_seconds=settings.session_ttl_seconds,
        cookie_name=settings.session_cookie_name,
        secure=not settings.interactive_mode,
    )
    auth = PasskeyAuthService(
        repository,
        ceremony or WebAuthnCeremony(),
        audit,
        rp_name=settings.rp_name,
    )
    return Services(
        settings=settings,
        repository=repository,
        log_store=log_store,
        audit=audit,
        sessions=sessions,
        auth=auth,
    )


def _error_body(request: Request, error: str, message: str) -> dict:
    return ErrorResponse(
        error=error,
        message=message,
        correlation_id=correlation_id(request),
        timestamp=datetime.now(timezone.utc),
    ).model_dump(mode="json")


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """Create the application; pass services to substitute components in tests."""
    settings = settings or (services.settings if services else get_settings())
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting passkey gate",
            host=settings.host,
            port=settings.port,
            interactive=settings.interactive_mode,
        )
        initialize = getattr(app.state.services.repository, "initialize", None)
        if initialize is not None:
            await initialize()
        yield
        logger.info("Shutting down passkey gate")

    app = FastAPI(
        title="Passkey Gate",
        description="Passkey-gated site access with an append-only audit log",
        version=VERSION,
        lifespan=lifespan
    )
    app.state.services = services or build_services(settings)

    # Last added is executed first
    app.add_middleware(SecurityHeadersMiddleware, strict_transport=not settings.interactive_mode)
    app.add_middleware(RequestLoggingMiddleware)

    if settings.observability_enabled:
        setup_observability(
            service_name="passkey-gate",
            service_version=VERSION,
            otlp_endpoint=settings.otlp_endpoint,
            enable_console_export=settings.enable_console_export
        )
        instrument_fastapi_app(app)

    @app.exception_handler(PolicyDeniedError)
    async def policy_denied_handler(request: Request, exc: PolicyDeniedError):
        logger.warning("Write rejected by policy", error=str(exc))
        return JSONResponse(status_code=403, content=_error_body(request, "PolicyDenied", str(exc)))

    @app.exception_handler(CredentialNotFoundError)
    async def not_found_handler(request: Request, exc: CredentialNotFoundError):
        return JSONResponse(status_code=404, content=_error_body(request, "CredentialNotFound", str(exc)))

    @app.exception_handler(StorageUnavailableError)
    async def storage_unavailable_handler(request: Request, exc: StorageUnavailableError):
        logger.error("Storage unavailable", error=str(exc))
        return JSONResponse(
            status_code=503,
            content=_error_body(request, "StorageUnavailable", "Storage is temporarily unavailable"),
        )

    @app.exception_handler(EnrolledDatasetError)
    async def enrolled_dataset_handler(request: Request, exc: EnrolledDatasetError):
        logger.error("Enrolled dataset unusable", error=str(exc))
        return JSONResponse(
            status_code=503,
            content=_error_body(request, "EnrolledDatasetError", "Credential store is unavailable"),
        )

    app.include_router(auth_router)
    app.include_router(credentials_router)
    app.include_router(logs_router)

    @app.get("/healthz", response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        """Health check endpoint."""
        repository = app.state.services.repository
        return HealthResponse(
            status="healthy",
            timestamp=datetime.now(timezone.utc),
            version=VERSION,
            backend="mutable" if isinstance(repository, MutableCredentialRepository) else "restricted",
        )

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "passkey_gate.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=False
    )
