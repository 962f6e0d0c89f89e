"""Verification of caller access tokens issued by the identity provider."""

from __future__ import annotations

from typing import Any

import jwt

from ..config import get_settings
from ..domain.errors import AuthenticationError


def extract_bearer_token(header: str | None) -> str | None:
    """Return the token from an ``Authorization: Bearer <token>`` header, or ``None``."""
    if not header:
        return None
    parts = header.strip().split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    token = parts[1].strip()
    return token or None


def decode_access_token(token: str) -> dict[str, Any]:
    """Decode and verify a JWT returning its payload.

    Parameters
    ----------
    token:
        Encoded JWT issued by the identity provider for an end user.

    Returns
    -------
    dict[str, Any]
        The decoded payload if signature, expiry and audience checks succeed.

    Raises
    ------
    jwt.PyJWTError
        Propagated when the token is invalid, expired, or minted for another audience.
    """

    settings = get_settings()
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=["HS256"],
        audience=settings.jwt_audience,
    )


def caller_id_from_header(header: str | None) -> str:
    """Resolve the authenticated caller's user id from an Authorization header."""
    token = extract_bearer_token(header)
    if token is None:
        raise AuthenticationError("UNAUTHORIZED")
    try:
        claims = decode_access_token(token)
    except jwt.PyJWTError as exc:
        raise AuthenticationError("UNAUTHORIZED") from exc
    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject:
        raise AuthenticationError("UNAUTHORIZED")
    return subject
