"""
Bearer token verification.

Tokens are issued by the identity provider; this service only verifies them.
The subject claim carries the user id.
"""

from datetime import timedelta
from typing import Any, Optional
from uuid import UUID

from jose import JWTError, jwt

from ctms.config import settings
from ctms.utils.time import utc_now


class InvalidToken(Exception):
    """Token is missing, malformed, expired or carries no usable subject."""


def _secret() -> str:
    if not settings.jwt_secret:
        raise InvalidToken("JWT verification secret not configured")
    return settings.jwt_secret


def decode_access_token(token: str) -> UUID:
    """Verify a token and return the user id from its subject."""
    try:
        payload = jwt.decode(token, _secret(), algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise InvalidToken(f"Invalid token: {exc}") from exc

    subject = payload.get("sub") or payload.get("id")
    if not subject:
        raise InvalidToken("Token has no subject")
    try:
        return UUID(str(subject))
    except ValueError as exc:
        raise InvalidToken("Token subject is not a user id") from exc


def create_access_token(
    user_id: UUID,
    expires_in: timedelta = timedelta(hours=1),
    extra_claims: Optional[dict[str, Any]] = None,
) -> str:
    """Mint a token the way the identity provider does. Used by tooling and tests."""
    claims: dict[str, Any] = {"sub": str(user_id), "exp": utc_now() + expires_in}
    if extra_claims:
        claims.update(extra_claims)
    return jwt.encode(claims, _secret(), algorithm=settings.jwt_algorithm)
