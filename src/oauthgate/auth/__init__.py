"""Authentication and session-token lifecycle for oauthgate.

This module provides OAuth 2.1 proxy authentication with:
- Discovery metadata resolution (RFC 8414) with a TTL cache
- Bearer JWT verification against the IdP JWKS
- Device authorization flow (RFC 8628) for headless clients
- Session -> user -> token store with de-duplicated refresh

The proxy never issues tokens; it relays and refreshes the IdP's.
"""

from oauthgate.auth.device_flow import DeviceFlow
from oauthgate.auth.environment import is_headless_environment, should_use_device_flow
from oauthgate.auth.errors import (
    AuthError,
    DeviceFlowError,
    DeviceFlowErrorKind,
    DiscoveryError,
    RefreshError,
    TokenVerificationError,
    VerificationFailure,
)
from oauthgate.auth.factory import AuthCore, build_auth_core, get_auth_core
from oauthgate.auth.metadata import MetadataResolver
from oauthgate.auth.models import (
    DeviceAuthorization,
    DiscoveryMetadata,
    SessionAuthorization,
    StoredToken,
    TokenBundle,
    TokenClaims,
)
from oauthgate.auth.providers import SessionAuthority
from oauthgate.auth.session_store import SessionTokenStore
from oauthgate.auth.token_client import TokenEndpointClient
from oauthgate.auth.verifier import TokenVerifier

__all__ = [
    "AuthCore",
    "AuthError",
    "DeviceAuthorization",
    "DeviceFlow",
    "DeviceFlowError",
    "DeviceFlowErrorKind",
    "DiscoveryError",
    "DiscoveryMetadata",
    "MetadataResolver",
    "RefreshError",
    "SessionAuthority",
    "SessionAuthorization",
    "SessionTokenStore",
    "StoredToken",
    "TokenBundle",
    "TokenClaims",
    "TokenEndpointClient",
    "TokenVerificationError",
    "TokenVerifier",
    "VerificationFailure",
    "build_auth_core",
    "get_auth_core",
    "is_headless_environment",
    "should_use_device_flow",
]
