"""Request-scoped dependencies shared by the API routers."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, HTTPException, Request

from ..config import Settings
from ..models.internal_models import User
from ..services.audit_logger import AuditLogger
from ..services.auth_service import AuditContext, PasskeyAuthService
from ..services.credential_repository import CredentialRepository
from ..services.log_store import LogStore
from ..services.session_tokens import SessionTokenCodec


@dataclass
class Services:
    """Components wired once at startup and shared by every request."""

    settings: Settings
    repository: CredentialRepository
    log_store: LogStore
    audit: AuditLogger
    sessions: SessionTokenCodec
    auth: PasskeyAuthService


def get_services(request: Request) -> Services:
    return request.app.state.services


def correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", None) or request.headers.get("X-Request-ID", "unknown")


def api_error(request: Request, status_code: int, error_type: str, message: str) -> HTTPException:
    """Create a standardized HTTP error."""
    return HTTPException(
        status_code=status_code,
        detail={
            "error": error_type,
            "message": message,
            "correlation_id": correlation_id(request),
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    )


def rp_id_for(request: Request, settings: Settings) -> str:
    return settings.rp_id or request.url.hostname or "localhost"


def origin_for(request: Request, settings: Settings) -> str:
    if settings.expected_origin:
        return settings.expected_origin
    return f"{request.url.scheme}://{request.url.netloc}"


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def audit_context(request: Request, services: Services = Depends(get_services)) -> AuditContext:
    return AuditContext(
        site=rp_id_for(request, services.settings),
        path=request.url.path,
        user_agent=request.headers.get("User-Agent"),
        ip=client_ip(request),
    )


async def get_current_user(request: Request, services: Services = Depends(get_services)) -> Optional[User]:
    """Resolve the caller from the session cookie; None when absent or invalid."""
    identity = services.sessions.validate(request.cookies.get(services.sessions.cookie_name))
    if identity is None:
        return None
    return await services.repository.get_user(identity.user_id)


async def require_user(request: Request, user: Optional[User] = Depends(get_current_user)) -> User:
    if user is None:
        raise api_error(request, 401, "NotAuthenticated", "Not authenticated")
    return user
