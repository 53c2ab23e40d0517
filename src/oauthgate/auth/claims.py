"""Unverified JWT claim helpers.

Decoding here never checks signatures. It is used to key the session store by
user identity; trust decisions belong to ``oauthgate.auth.verifier``.
"""

import re
from typing import Any

import jwt as pyjwt

# Claim names checked for a user identity, highest priority first
USER_ID_CLAIMS: tuple[str, ...] = ("sub", "user_id", "uid")


def decode_unverified(token: str) -> dict[str, Any]:
    """Decode a JWT payload without verifying it.

    Args:
        token: Compact-serialized JWT

    Returns:
        Payload claims

    Raises:
        ValueError: Token is not a decodable JWT

    Example:
        >>> decode_unverified(token)["sub"]
        'user-123'
    """
    try:
        payload = pyjwt.decode(
            token,
            options={"verify_signature": False},
            algorithms=None,
        )
    except pyjwt.PyJWTError as e:
        raise ValueError(f"JWT decoding failed: {e}") from e

    if not isinstance(payload, dict):
        raise ValueError("JWT decoding failed: payload is not an object")
    return payload


def extract_user_id(claims: dict[str, Any]) -> str | None:
    """Return the first present identity claim (sub, user_id, uid)."""
    for name in USER_ID_CLAIMS:
        value = claims.get(name)
        if value is not None and str(value) != "":
            return str(value)
    return None


def user_id_from_token(token: str) -> str | None:
    """Extract a user identity from an access token, None if not possible.

    Opaque (non-JWT) tokens and JWTs without identity claims both yield None.
    """
    try:
        claims = decode_unverified(token)
    except ValueError:
        return None
    return extract_user_id(claims)


def parse_scopes(value: Any) -> list[str]:
    """Split a scope claim on whitespace and commas; lists pass through."""
    if not value:
        return []
    if isinstance(value, str):
        return [s for s in re.split(r"[\s,]+", value) if s]
    if isinstance(value, (list, tuple)):
        return [str(s) for s in value if s]
    return []


def redact_token(token: str | None) -> str:
    """Redact a token for logs, keeping only the last six characters."""
    if not token or len(token) <= 6:
        return "***"
    return "***" + token[-6:]
