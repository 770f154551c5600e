"""
Passkey authentication service.

This module provides the core business logic for:
- Registration: find-or-create the user, issue options, verify and store the credential
- Authentication: issue options over every enrolled credential, verify the
  assertion, enforce the signature counter and record the new value
- Audit events for every security-relevant outcome

Credential writes are awaited and must succeed before a session is issued;
audit writes are best-effort and never fail the ceremony.
"""

import logging
import secrets
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..clients.webauthn_client import CeremonyError, WebAuthnCeremony
from ..models.internal_models import Credential, User
from .audit_logger import AuditLogger
from .credential_repository import (
    CounterRegressionError,
    CredentialExistsError,
    CredentialRepository,
    UserExistsError,
    WriteIgnoredError,
)

logger = logging.getLogger(__name__)

MAX_USERNAME_LENGTH = 64


class AuthenticationError(Exception):
    """Base exception for authentication service errors."""
    pass


class RegistrationError(AuthenticationError):
    """Raised when a registration cannot be started or verified."""
    pass


class AuthenticationFailedError(AuthenticationError):
    """Raised when an authentication assertion is rejected."""
    pass


class CloneDetectedError(AuthenticationFailedError):
    """Raised when the signature counter moved backwards."""
    pass


class NoCredentialsError(AuthenticationError):
    """Raised when authentication is attempted with nothing enrolled."""
    pass


class ChallengeMissingError(RegistrationError, AuthenticationFailedError):
    """Raised when a verification arrives without a pending challenge."""
    pass


class CredentialAlreadyRegisteredError(RegistrationError):
    """Raised when the verified credential id is already enrolled."""
    pass


@dataclass
class AuditContext:
    """Request details attached to audit events."""

    site: str
    path: Optional[str] = None
    user_agent: Optional[str] = None
    ip: Optional[str] = None


@dataclass
class RegistrationChallenge:
    options: Dict[str, Any]
    challenge: str
    user: User


@dataclass
class AuthenticationChallenge:
    options: Dict[str, Any]
    challenge: str


def normalize_username(username: Any) -> str:
    """Trim and lower-case a username, rejecting empty or oversized values."""
    if not isinstance(username, str) or not username.strip():
        raise RegistrationError("Username is required")
    normalized = username.strip().lower()
    if len(normalized) > MAX_USERNAME_LENGTH:
        raise RegistrationError(f"Username must be at most {MAX_USERNAME_LENGTH} characters")
    return normalized


def generate_user_id() -> str:
    return secrets.token_hex(16)


class PasskeyAuthService:
    """Orchestrates ceremonies against the credential repository."""

    def __init__(
        self,
        repository: CredentialRepository,
        ceremony: WebAuthnCeremony,
        audit: AuditLogger,
        rp_name: str = "Passkey Gate",
    ):
        self.repository = repository
        self.ceremony = ceremony
        self.audit = audit
        self.rp_name = rp_name

    async def _audit(self, context: Optional[AuditContext], level: str, message: str,
                     **metadata) -> None:
        if context is None:
            return
        await self.audit.log(
            context.site,
            level,
            message,
            path=context.path,
            user_agent=context.user_agent,
            ip=context.ip,
            metadata=metadata or None,
        )

    async def begin_registration(self, username: Any, rp_id: str) -> RegistrationChallenge:
        """
        Start a registration ceremony.

        Args:
            username: Raw username from the client; normalized here
            rp_id: Relying party id the credential will be scoped to

        Returns:
            RegistrationChallenge with options, challenge and the (possibly new) user
        """
        normalized = normalize_username(username)

        user = await self.repository.get_user_by_username(normalized)
        if user is None:
            try:
                user = await self.repository.create_user(generate_user_id(), normalized)
                logger.info(f"Created user {user.id} for registration")
            except UserExistsError:
                # Lost a race with a concurrent registration of the same name.
                user = await self.repository.get_user_by_username(normalized)
                if user is None:
                    raise

        existing = await self.repository.get_credentials_by_user(user.id)
        options, challenge = self.ceremony.generate_registration_options(
            rp_id=rp_id,
            rp_name=self.rp_name,
            user_id=user.id,
            user_name=user.username,
            display_name=user.username,
            exclude_credentials=existing,
        )
        logger.info(f"Registration options issued for user {user.id} ({len(existing)} excluded)")
        return RegistrationChallenge(options=options, challenge=challenge, user=user)

    async def finish_registration(
        self,
        response: Dict[str, Any],
        expected_challenge: Optional[str],
        user_id: Optional[str],
        origin: str,
        rp_id: str,
        context: Optional[AuditContext] = None,
    ) -> Optional[Credential]:
        """
        Verify a registration response and persist the new credential.

        Returns:
            The stored credential, or None when the ceremony was not verified

        Raises:
            RegistrationError: missing challenge, unknown user, failed verification
                or an already registered credential (CredentialAlreadyRegisteredError)
        """
        if not expected_challenge or not user_id:
            raise ChallengeMissingError("No pending registration challenge")

        user = await self.repository.get_user(user_id)
        if user is None:
            raise RegistrationError("Pending registration refers to an unknown user")

        try:
            verification = self.ceremony.verify_registration_response(
                response=response,
                expected_challenge=expected_challenge,
                origin=origin,
                rp_id=rp_id,
            )
        except CeremonyError as e:
            await self._audit(context, "warn", "Passkey registration failed",
                              userId=user_id, reason=str(e))
            raise RegistrationError(str(e)) from e

        if not verification.verified:
            await self._audit(context, "warn", "Passkey registration not verified", userId=user_id)
            return None

        user_handle = (response.get("response") or {}).get("userHandle")
        transports = (response.get("response") or {}).get("transports") or []

        try:
            credential = await self.repository.save_credential(Credential(
                id=verification.credential_id,
                user_id=user_id,
                webauthn_user_id=user_handle or user_id,
                public_key=verification.public_key,
                counter=verification.counter,
                device_type=verification.device_type,
                backed_up=verification.backed_up,
                transports=list(transports),
            ))
        except CredentialExistsError as e:
            await self._audit(context, "warn", "Passkey already registered",
                              userId=user_id, credentialId=verification.credential_id)
            raise CredentialAlreadyRegisteredError("This passkey is already registered") from e
        await self._audit(context, "info", "Passkey registered",
                          userId=user_id, credentialId=credential.id)
        return credential

    async def begin_authentication(self, rp_id: str) -> AuthenticationChallenge:
        """Issue authentication options allowing every enrolled credential."""
        credentials = await self.repository.get_all_credentials()
        if not credentials:
            raise NoCredentialsError("No passkeys enrolled. Register a passkey first.")

        options, challenge = self.ceremony.generate_authentication_options(
            rp_id=rp_id,
            allow_credentials=credentials,
        )
        return AuthenticationChallenge(options=options, challenge=challenge)

    async def finish_authentication(
        self,
        response: Dict[str, Any],
        expected_challenge: Optional[str],
        origin: str,
        rp_id: str,
        context: Optional[AuditContext] = None,
    ) -> Optional[Credential]:
        """
        Verify an authentication assertion and advance the credential counter.

        Returns:
            The updated credential, or None when the ceremony was not verified

        Raises:
            AuthenticationFailedError: missing challenge, unknown credential,
                failed verification or a counter regression (CloneDetectedError)
        """
        if not expected_challenge:
            raise ChallengeMissingError("No pending authentication challenge")

        credential_id = response.get("id") if isinstance(response, dict) else None
        stored = await self.repository.get_credential(credential_id) if credential_id else None
        if stored is None:
            await self._audit(context, "warn", "Login with unknown passkey",
                              credentialId=credential_id)
            raise AuthenticationFailedError("Passkey not found")

        try:
            verification = self.ceremony.verify_authentication_response(
                response=response,
                expected_challenge=expected_challenge,
                origin=origin,
                rp_id=rp_id,
                stored_credential=stored,
            )
        except CeremonyError as e:
            await self._audit(context, "warn", "Login failed",
                              userId=stored.user_id, credentialId=stored.id, reason=str(e))
            raise AuthenticationFailedError(str(e)) from e

        if not verification.verified:
            await self._audit(context, "warn", "Login not verified",
                              userId=stored.user_id, credentialId=stored.id)
            return None

        if verification.new_counter < stored.counter:
            raise await self._clone_detected(context, stored, verification.new_counter)

        try:
            updated = await self.repository.update_counter(stored.id, verification.new_counter)
        except CounterRegressionError as e:
            # A concurrent login advanced the counter after our read.
            raise await self._clone_detected(context, stored, e.received) from e

        await self._audit(context, "info", "Login succeeded",
                          userId=stored.user_id, credentialId=stored.id)
        return updated

    async def _clone_detected(self, context: Optional[AuditContext], stored: Credential,
                              received: int) -> CloneDetectedError:
        logger.warning(
            f"Counter regression for credential {stored.id}: stored {stored.counter}, got {received}"
        )
        await self._audit(context, "error", "Possible cloned authenticator",
                          userId=stored.user_id, credentialId=stored.id,
                          storedCounter=stored.counter, receivedCounter=received)
        return CloneDetectedError(
            f"Signature counter regressed from {stored.counter} to {received}"
        )

    async def list_credentials(self, user_id: str) -> List[Credential]:
        return await self.repository.get_credentials_by_user(user_id)

    async def delete_credential(self, user_id: str, credential_id: str,
                                context: Optional[AuditContext] = None) -> bool:
        """
        Delete one of the user's own credentials; returns False if they do not own it.

        Raises:
            WriteIgnoredError: the backend dropped the delete under its ignore policy
        """
        credential = await self.repository.get_credential(credential_id)
        if credential is None or credential.user_id != user_id:
            return False
        try:
            deleted = await self.repository.delete_credential(credential_id)
        except WriteIgnoredError:
            await self._audit(context, "warn", "Passkey deletion ignored by policy",
                              userId=user_id, credentialId=credential_id)
            raise
        if deleted:
            await self._audit(context, "info", "Passkey deleted",
                              userId=user_id, credentialId=credential_id)
        return deleted

    async def record_logout(self, user_id: Optional[str], context: Optional[AuditContext] = None):
        await self._audit(context, "info", "Logged out", userId=user_id)
