"""Data models for discovery, tokens, sessions and device authorization.

Models exchanged with callers are frozen: a caller holding a StoredToken or
SessionAuthorization holds a snapshot and cannot alter the store's state.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DiscoveryMetadata(BaseModel):
    """IdP authorization server metadata (RFC 8414) plus cache expiry."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    issuer: str = Field(description="Issuer identifier")
    authorization_url: str = Field(
        alias="authorization_endpoint", description="Authorization endpoint"
    )
    token_url: str = Field(alias="token_endpoint", description="Token endpoint")
    jwks_url: str = Field(alias="jwks_uri", description="JSON Web Key Set URL")
    introspection_url: str | None = Field(
        default=None, alias="introspection_endpoint", description="RFC 7662 endpoint"
    )
    revocation_url: str | None = Field(
        default=None, alias="revocation_endpoint", description="RFC 7009 endpoint"
    )
    device_authorization_url: str | None = Field(
        default=None,
        alias="device_authorization_endpoint",
        description="RFC 8628 endpoint",
    )
    scopes_supported: list[str] = Field(default_factory=list)
    grant_types_supported: list[str] = Field(default_factory=list)
    expires_at: float = Field(description="Epoch seconds after which to re-fetch")

    @field_validator("issuer", "authorization_url", "token_url", "jwks_url")
    @classmethod
    def require_non_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value


class TokenBundle(BaseModel):
    """Token endpoint success response (RFC 6749 section 5.1)."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    access_token: str = Field(min_length=1)
    token_type: str = Field(default="Bearer")
    expires_in: int = Field(gt=0, description="Access token lifetime in seconds")
    refresh_token: str | None = None
    scope: str | None = None


class StoredToken(BaseModel):
    """Token held by the session store for one user."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    access_token: str
    token_type: str = "Bearer"
    refresh_token: str | None = None
    scope: str = ""
    issued_at: float = Field(description="Epoch seconds when the token was stored")
    expires_in: int = Field(description="Lifetime in seconds from issued_at")

    @property
    def expires_at(self) -> float:
        return self.issued_at + self.expires_in

    def is_expired(self, now: float, skew_seconds: float = 0) -> bool:
        """True once ``now`` is within ``skew_seconds`` of expiry."""
        return now >= self.expires_at - skew_seconds


class SessionAuthorization(BaseModel):
    """Live credentials for a session, as handed to collaborators."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    user_id: str
    access_token: str
    token_type: str = "Bearer"
    scopes: list[str] = Field(default_factory=list)
    expires_at: float

    @property
    def authorization_header(self) -> str:
        return f"{self.token_type} {self.access_token}"


class DeviceAuthorization(BaseModel):
    """Device authorization response (RFC 8628 section 3.2)."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    device_code: str = Field(min_length=1)
    user_code: str = Field(min_length=1)
    verification_uri: str = Field(min_length=1)
    verification_uri_complete: str | None = None
    expires_in: int = Field(gt=0)
    interval: int | None = Field(default=None, gt=0, description="Poll interval (seconds)")


class TokenClaims(BaseModel):
    """Normalized claims of a verified bearer token."""

    model_config = ConfigDict(frozen=True)

    subject: str | None = Field(default=None, description="sub, else user_id, else uid")
    scopes: list[str] = Field(default_factory=list)
    expires_at: int | None = None
    audience: list[str] = Field(default_factory=list)
    issuer: str | None = None
    client_id: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class IntrospectionResult(BaseModel):
    """Token introspection response (RFC 7662)."""

    model_config = ConfigDict(extra="ignore")

    active: bool
    client_id: str | None = None
    scope: str | None = None
    exp: int | None = None
    aud: str | list[str] | None = None
    sub: str | None = None
    username: str | None = None
