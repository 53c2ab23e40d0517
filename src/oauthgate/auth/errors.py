"""Authentication error taxonomy.

Every error carries a short ``user_message`` that is safe to show to an end
user, and an optional ``detail`` with provider internals that is only logged.
"""

from enum import Enum


class AuthError(Exception):
    """Base class for all authentication failures."""

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message)
        self.detail = detail

    @property
    def user_message(self) -> str:
        """Short reason suitable for end users."""
        return str(self)


class DiscoveryError(AuthError):
    """IdP discovery metadata could not be fetched or validated."""


class VerificationFailure(str, Enum):
    """Reasons a bearer token failed verification."""

    MALFORMED = "malformed"
    SIGNATURE_INVALID = "signature_invalid"
    KEY_NOT_FOUND = "key_not_found"
    EXPIRED = "expired"
    ISSUER_MISMATCH = "issuer_mismatch"
    ISSUER_MISSING = "issuer_missing"
    AUDIENCE_MISMATCH = "audience_mismatch"
    INVALID_CLAIMS = "invalid_claims"
    JWKS_UNAVAILABLE = "jwks_unavailable"
    INACTIVE = "inactive"


class TokenVerificationError(AuthError):
    """Bearer token rejected."""

    def __init__(
        self,
        reason: VerificationFailure,
        message: str | None = None,
        detail: str | None = None,
    ):
        super().__init__(message or f"Token verification failed: {reason.value}", detail)
        self.reason = reason

    @property
    def user_message(self) -> str:
        if self.reason == VerificationFailure.EXPIRED:
            return "Token expired"
        return "Token verification failed"


class DeviceFlowErrorKind(str, Enum):
    """Outcome classes of a failed device authorization attempt."""

    ACCESS_DENIED = "access_denied"  # User declined
    INVALID_CLIENT = "invalid_client"  # IdP rejected our client
    NOT_SUPPORTED = "not_supported"  # IdP has no device flow
    EXPIRED = "expired"  # Device code lifetime elapsed
    MALFORMED_RESPONSE = "malformed_response"  # IdP sent garbage
    TRANSPORT = "transport"  # Network failure outside the poll loop
    PROVIDER_ERROR = "provider_error"  # Any other OAuth error code


TERMINAL_DEVICE_FLOW_KINDS = frozenset(
    {
        DeviceFlowErrorKind.ACCESS_DENIED,
        DeviceFlowErrorKind.INVALID_CLIENT,
        DeviceFlowErrorKind.NOT_SUPPORTED,
    }
)


class DeviceFlowError(AuthError):
    """Device authorization attempt failed."""

    def __init__(
        self,
        kind: DeviceFlowErrorKind,
        message: str,
        detail: str | None = None,
    ):
        super().__init__(message, detail)
        self.kind = kind

    @property
    def retryable(self) -> bool:
        """Whether restarting the whole flow with a new device code may help."""
        return self.kind not in TERMINAL_DEVICE_FLOW_KINDS

    @property
    def user_message(self) -> str:
        if self.kind in (
            DeviceFlowErrorKind.MALFORMED_RESPONSE,
            DeviceFlowErrorKind.PROVIDER_ERROR,
        ):
            return "Authentication failed"
        return str(self)


class TokenEndpointError(AuthError):
    """Token endpoint answered with an OAuth error."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        detail: str | None = None,
    ):
        super().__init__(message, detail)
        self.error_code = error_code
        self.status_code = status_code


class RefreshError(TokenEndpointError):
    """Refresh token grant failed; the user must re-authenticate."""


class TokenExchangeError(TokenEndpointError):
    """Authorization code exchange failed."""


class RevocationError(AuthError):
    """Token revocation failed (always best-effort)."""
