"""Collaborator-facing authentication interfaces.

The transport layer and the tool dispatcher only depend on these protocols:
- SessionAuthority: session-scoped token lifecycle (implemented by SessionTokenStore)
- BearerVerifier: incoming bearer token validation (implemented by TokenVerifier)
- TokenProducer: anything that yields a token bundle (implemented by DeviceFlow)
"""

from typing import Any, Protocol, runtime_checkable

from oauthgate.auth.models import (
    SessionAuthorization,
    StoredToken,
    TokenBundle,
    TokenClaims,
)


@runtime_checkable
class SessionAuthority(Protocol):
    """Narrow session interface offered to the transport and dispatcher."""

    def store_tokens(
        self,
        session_id: str,
        bundle: TokenBundle,
        fallback_user_id: str | None = None,
    ) -> StoredToken:
        """Bind a session to the bundle's user and store the token."""
        ...

    def capture_bearer_token(
        self,
        session_id: str,
        raw_token: str,
        hints: dict[str, Any] | None = None,
    ) -> StoredToken:
        """Store a client-presented bearer token for the session."""
        ...

    async def resolve_session_authorization(
        self, session_id: str
    ) -> SessionAuthorization | None:
        """Return live credentials for the session, or None if unauthenticated."""
        ...

    async def logout_session(self, session_id: str) -> bool:
        """Log out the session's user on every session."""
        ...

    def detach_session(self, session_id: str) -> bool:
        """Forget the session binding only."""
        ...

    @property
    def active_user_count(self) -> int: ...

    @property
    def active_session_count(self) -> int: ...

    def session_user_snapshot(self) -> dict[str, str]: ...


@runtime_checkable
class BearerVerifier(Protocol):
    async def verify(self, token: str) -> TokenClaims:
        """Validate a bearer token and return its normalized claims.

        Raises:
            TokenVerificationError: Token invalid or expired
        """
        ...


@runtime_checkable
class TokenProducer(Protocol):
    async def authenticate(self) -> TokenBundle:
        """Obtain a token bundle for a user."""
        ...
