"""
Stateless session tokens.

A token is ``<userId>.<expiresAt>.<signature>`` where the signature is the
base64url HMAC-SHA256 of ``<userId>.<expiresAt>`` under the session secret.
The signature is recovered by splitting at the last separator; the payload is
then split at the first one, which is why user ids may never contain ``.``.
"""

import base64
import hashlib
import hmac
import logging
import time
from typing import Optional

from fastapi import Response

from ..models.internal_models import SessionIdentity

logger = logging.getLogger(__name__)

SEPARATOR = "."
DEFAULT_TTL_SECONDS = 60 * 60 * 24 * 7


class SessionTokenCodec:
    """Signs and validates session tokens and manages the session cookie."""

    def __init__(
        self,
        secret: str,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        cookie_name: str = "session",
        secure: bool = True,
    ):
        if not secret:
            raise ValueError("Session secret must not be empty")
        self._secret = secret.encode("utf-8")
        self.ttl_seconds = ttl_seconds
        self.cookie_name = cookie_name
        self.secure = secure

    def _sign(self, payload: str) -> str:
        digest = hmac.new(self._secret, payload.encode("utf-8"), hashlib.sha256).digest()
        return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")

    def issue(self, user_id: str, now: Optional[int] = None) -> str:
        """Build a signed token for user_id expiring one TTL after now."""
        if not user_id or SEPARATOR in user_id:
            raise ValueError(f"User id must be non-empty and must not contain {SEPARATOR!r}")
        issued_at = int(time.time()) if now is None else int(now)
        payload = f"{user_id}{SEPARATOR}{issued_at + self.ttl_seconds}"
        return f"{payload}{SEPARATOR}{self._sign(payload)}"

    def validate(self, token: Optional[str], now: Optional[float] = None) -> Optional[SessionIdentity]:
        """Return the identity carried by token, or None if it is forged, malformed or expired."""
        if not token:
            return None

        payload, separator, signature = token.rpartition(SEPARATOR)
        if not separator or not payload:
            return None

        if not hmac.compare_digest(self._sign(payload).encode("ascii"), signature.encode("utf-8")):
            logger.debug("Rejected session token with bad signature")
            return None

        user_id, separator, expires_text = payload.partition(SEPARATOR)
        if not separator or not user_id or not (expires_text.isascii() and expires_text.isdigit()):
            return None

        expires_at = int(expires_text)
        current = time.time() if now is None else now
        if current >= expires_at:
            return None

        return SessionIdentity(user_id=user_id, expires_at=expires_at)

    def attach(self, response: Response, token: str) -> None:
        """Set the session cookie on an outgoing response."""
        response.set_cookie(
            key=self.cookie_name,
            value=token,
            max_age=self.ttl_seconds,
            path="/",
            httponly=True,
            secure=self.secure,
            samesite="strict",
        )

    def destroy(self, response: Response) -> None:
        """Clear the session cookie."""
        response.delete_cookie(
            key=self.cookie_name,
            path="/",
            httponly=True,
            secure=self.secure,
            samesite="strict",
        )
