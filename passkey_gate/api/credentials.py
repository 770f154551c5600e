"""
Credential management endpoints for the signed-in user.
"""

from typing import List

import structlog
from fastapi import APIRouter, Depends, Request

from ..models.api_models import CredentialSummary, DeleteCredentialRequest, OkResponse
from ..models.internal_models import User
from ..services.auth_service import AuditContext
from ..services.credential_repository import WriteIgnoredError
from .dependencies import Services, api_error, audit_context, get_services, require_user

logger = structlog.get_logger()
router = APIRouter(prefix="/api/credentials", tags=["credentials"])


@router.get("", response_model=List[CredentialSummary])
async def list_credentials(
    user: User = Depends(require_user),
    services: Services = Depends(get_services),
) -> List[CredentialSummary]:
    credentials = await services.auth.list_credentials(user.id)
    return [CredentialSummary.from_credential(c) for c in credentials]


@router.delete("", response_model=OkResponse)
async def delete_credential(
    body: DeleteCredentialRequest,
    request: Request,
    user: User = Depends(require_user),
    services: Services = Depends(get_services),
    context: AuditContext = Depends(audit_context),
) -> OkResponse:
    """
    Delete one of the caller's credentials.

    The restricted backend may refuse (403) or drop the write (409), depending
    on its configured policy.
    """
    try:
        deleted = await services.auth.delete_credential(user.id, body.id, context)
    except WriteIgnoredError as e:
        logger.warning("Credential deletion ignored", user_id=user.id, credential_id=body.id)
        raise api_error(request, 409, "WriteIgnored", str(e))
    if not deleted:
        raise api_error(request, 404, "CredentialNotFound", "Credential not found")

    logger.info("Credential deleted", user_id=user.id, credential_id=body.id)
    return OkResponse()
