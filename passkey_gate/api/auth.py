"""
Passkey registration, login and session endpoints.
"""

from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Body, Depends, Request, Response

from ..models.api_models import (
    OkResponse,
    RegistrationOptionsRequest,
    SessionResponse,
    VerifyResponse,
)
from ..models.internal_models import User
from ..observability import record_ceremony_metrics, trace_function
from ..services.auth_service import (
    AuditContext,
    AuthenticationFailedError,
    CloneDetectedError,
    CredentialAlreadyRegisteredError,
    NoCredentialsError,
    RegistrationError,
)
from ..services.credential_repository import UserExistsError
from .dependencies import (
    Services,
    api_error,
    audit_context,
    get_current_user,
    get_services,
    origin_for,
    rp_id_for,
)

logger = structlog.get_logger()
router = APIRouter(prefix="/api/auth", tags=["authentication"])

CHALLENGE_COOKIE = "webauthn_challenge"
USER_ID_COOKIE = "webauthn_user_id"


def _set_ceremony_cookie(response: Response, services: Services, key: str, value: str) -> None:
    response.set_cookie(
        key=key,
        value=value,
        max_age=services.settings.challenge_ttl_seconds,
        path="/",
        httponly=True,
        secure=not services.settings.interactive_mode,
        samesite="strict",
    )


def _clear_ceremony_cookie(response: Response, services: Services, key: str) -> None:
    response.delete_cookie(
        key=key,
        path="/",
        httponly=True,
        secure=not services.settings.interactive_mode,
        samesite="strict",
    )


@router.post("/register")
@trace_function("register_options_endpoint")
async def register_options(
    body: RegistrationOptionsRequest,
    request: Request,
    response: Response,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """
    Generate WebAuthn registration options.

    Finds or creates the user for the normalized username and excludes the
    credentials they already hold. The challenge and pending user id travel
    in short-lived HTTP-only cookies.
    """
    try:
        pending = await services.auth.begin_registration(
            body.username, rp_id_for(request, services.settings)
        )
    except RegistrationError as e:
        raise api_error(request, 400, "ValidationError", str(e))
    except UserExistsError as e:
        raise api_error(request, 409, "UserExists", str(e))

    _set_ceremony_cookie(response, services, CHALLENGE_COOKIE, pending.challenge)
    _set_ceremony_cookie(response, services, USER_ID_COOKIE, pending.user.id)

    logger.info("Registration options issued", user_id=pending.user.id)
    return pending.options


@router.post("/register/verify", response_model=VerifyResponse)
@trace_function("register_verify_endpoint")
async def register_verify(
    request: Request,
    response: Response,
    credential: Dict[str, Any] = Body(...),
    services: Services = Depends(get_services),
    context: AuditContext = Depends(audit_context),
) -> VerifyResponse:
    """Verify the registration response, store the credential and sign the user in."""
    user_id = request.cookies.get(USER_ID_COOKIE)
    try:
        stored = await services.auth.finish_registration(
            response=credential,
            expected_challenge=request.cookies.get(CHALLENGE_COOKIE),
            user_id=user_id,
            origin=origin_for(request, services.settings),
            rp_id=rp_id_for(request, services.settings),
            context=context,
        )
    except CredentialAlreadyRegisteredError as e:
        record_ceremony_metrics("registration", False)
        raise api_error(request, 409, "CredentialExists", str(e))
    except RegistrationError as e:
        record_ceremony_metrics("registration", False)
        logger.warning("Registration verification failed", error=str(e))
        raise api_error(request, 400, "RegistrationError", str(e))

    _clear_ceremony_cookie(response, services, CHALLENGE_COOKIE)
    _clear_ceremony_cookie(response, services, USER_ID_COOKIE)

    if stored is None:
        record_ceremony_metrics("registration", False)
        return VerifyResponse(verified=False)

    services.sessions.attach(response, services.sessions.issue(stored.user_id))
    record_ceremony_metrics("registration", True)
    logger.info("Passkey registered", user_id=stored.user_id, credential_id=stored.id)
    return VerifyResponse(verified=True, userId=stored.user_id)


@router.post("/login")
@trace_function("login_options_endpoint")
async def login_options(
    request: Request,
    response: Response,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Generate WebAuthn authentication options allowing every enrolled credential."""
    try:
        pending = await services.auth.begin_authentication(rp_id_for(request, services.settings))
    except NoCredentialsError as e:
        raise api_error(request, 400, "NoCredentials", str(e))

    _set_ceremony_cookie(response, services, CHALLENGE_COOKIE, pending.challenge)
    return pending.options


@router.post("/login/verify", response_model=VerifyResponse)
@trace_function("login_verify_endpoint")
async def login_verify(
    request: Request,
    response: Response,
    credential: Dict[str, Any] = Body(...),
    services: Services = Depends(get_services),
    context: AuditContext = Depends(audit_context),
) -> VerifyResponse:
    """Verify the authentication assertion and issue a session."""
    try:
        updated = await services.auth.finish_authentication(
            response=credential,
            expected_challenge=request.cookies.get(CHALLENGE_COOKIE),
            origin=origin_for(request, services.settings),
            rp_id=rp_id_for(request, services.settings),
            context=context,
        )
    except CloneDetectedError as e:
        record_ceremony_metrics("authentication", False)
        raise api_error(request, 401, "CloneDetected", str(e))
    except AuthenticationFailedError as e:
        record_ceremony_metrics("authentication", False)
        raise api_error(request, 400, "AuthenticationFailed", str(e))

    _clear_ceremony_cookie(response, services, CHALLENGE_COOKIE)

    if updated is None:
        record_ceremony_metrics("authentication", False)
        return VerifyResponse(verified=False)

    services.sessions.attach(response, services.sessions.issue(updated.user_id))
    record_ceremony_metrics("authentication", True)
    logger.info("Login succeeded", user_id=updated.user_id)
    return VerifyResponse(verified=True, userId=updated.user_id)


@router.post("/logout", response_model=OkResponse)
async def logout(
    response: Response,
    user: Optional[User] = Depends(get_current_user),
    services: Services = Depends(get_services),
    context: AuditContext = Depends(audit_context),
) -> OkResponse:
    services.sessions.destroy(response)
    if user is not None:
        await services.auth.record_logout(user.id, context)
    return OkResponse()


@router.get("/session", response_model=SessionResponse)
async def current_session(
    user: Optional[User] = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> SessionResponse:
    """Current user (if any) and whether the service runs in interactive mode."""
    return SessionResponse(
        user={"id": user.id, "username": user.username} if user else None,
        interactive=services.settings.interactive_mode,
    )
