"""
WebAuthn ceremony engine adapter.

Wraps py_webauthn so the rest of the service deals in plain dataclasses,
JSON-ready option dicts and base64url strings.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url, options_to_json
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from ..models.internal_models import Credential

logger = logging.getLogger(__name__)

_DEVICE_TYPES = {
    "single_device": "singleDevice",
    "multi_device": "multiDevice",
}


class CeremonyError(Exception):
    """Raised when a ceremony response cannot be verified."""
    pass


@dataclass
class RegistrationVerification:
    """Outcome of a verified registration response."""

    verified: bool
    credential_id: str
    public_key: bytes
    counter: int
    device_type: str
    backed_up: bool


@dataclass
class AuthenticationVerification:
    """Outcome of a verified authentication response."""

    verified: bool
    new_counter: int


def _descriptors(credentials: List[Credential]) -> List[PublicKeyCredentialDescriptor]:
    descriptors = []
    for credential in credentials:
        transports = []
        for hint in credential.transports:
            try:
                transports.append(AuthenticatorTransport(hint))
            except ValueError:
                logger.debug(f"Ignoring unknown transport hint {hint!r} on {credential.id}")
        descriptors.append(PublicKeyCredentialDescriptor(
            id=base64url_to_bytes(credential.id),
            transports=transports or None,
        ))
    return descriptors


def _device_type(value: Any) -> str:
    raw = getattr(value, "value", value)
    return _DEVICE_TYPES.get(str(raw), str(raw))


class WebAuthnCeremony:
    """Generates ceremony options and verifies authenticator responses."""

    def generate_registration_options(
        self,
        rp_id: str,
        rp_name: str,
        user_id: str,
        user_name: str,
        display_name: str,
        exclude_credentials: List[Credential],
    ) -> Tuple[Dict[str, Any], str]:
        """Return (options, base64url challenge) for navigator.credentials.create()."""
        options = generate_registration_options(
            rp_id=rp_id,
            rp_name=rp_name,
            user_id=user_id.encode("utf-8"),
            user_name=user_name,
            user_display_name=display_name,
            attestation=AttestationConveyancePreference.NONE,
            exclude_credentials=_descriptors(exclude_credentials),
            authenticator_selection=AuthenticatorSelectionCriteria(
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=UserVerificationRequirement.PREFERRED,
            ),
        )
        return json.loads(options_to_json(options)), bytes_to_base64url(options.challenge)

    def generate_authentication_options(
        self,
        rp_id: str,
        allow_credentials: List[Credential],
    ) -> Tuple[Dict[str, Any], str]:
        """Return (options, base64url challenge) for navigator.credentials.get()."""
        options = generate_authentication_options(
            rp_id=rp_id,
            allow_credentials=_descriptors(allow_credentials),
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        return json.loads(options_to_json(options)), bytes_to_base64url(options.challenge)

    def verify_registration_response(
        self,
        response: Dict[str, Any],
        expected_challenge: str,
        origin: str,
        rp_id: str,
    ) -> RegistrationVerification:
        try:
            verification = verify_registration_response(
                credential=response,
                expected_challenge=base64url_to_bytes(expected_challenge),
                expected_origin=origin,
                expected_rp_id=rp_id,
            )
        except Exception as e:
            logger.warning(f"Registration verification failed: {e}")
            raise CeremonyError(str(e) or "Registration verification failed") from e

        return RegistrationVerification(
            verified=True,
            credential_id=bytes_to_base64url(verification.credential_id),
            public_key=verification.credential_public_key,
            counter=verification.sign_count,
            device_type=_device_type(verification.credential_device_type),
            backed_up=bool(verification.credential_backed_up),
        )

    def verify_authentication_response(
        self,
        response: Dict[str, Any],
        expected_challenge: str,
        origin: str,
        rp_id: str,
        stored_credential: Credential,
    ) -> AuthenticationVerification:
        try:
            verification = verify_authentication_response(
                credential=response,
                expected_challenge=base64url_to_bytes(expected_challenge),
                expected_origin=origin,
                expected_rp_id=rp_id,
                credential_public_key=stored_credential.public_key,
                # Counter regressions are judged by the auth service
                credential_current_sign_count=0,
            )
        except Exception as e:
            logger.warning(f"Authentication verification failed for {stored_credential.id}: {e}")
            raise CeremonyError(str(e) or "Authentication verification failed") from e

        return AuthenticationVerification(verified=True, new_counter=verification.new_sign_count)


def encode_public_key(public_key: bytes) -> str:
    """Text form used wherever public keys are persisted."""
    return bytes_to_base64url(public_key)


def decode_public_key(value: Optional[str]) -> bytes:
    return base64url_to_bytes(value or "")
