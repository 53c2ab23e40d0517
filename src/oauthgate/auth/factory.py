"""Authentication component factory.

Wires resolver, token client, verifier, device flow and session store from
configuration.
"""

from dataclasses import dataclass
from typing import Mapping

import httpx
from loguru import logger

from oauthgate.auth.device_flow import DeviceFlow
from oauthgate.auth.device_ui import DevicePresenter
from oauthgate.auth.environment import should_use_device_flow
from oauthgate.auth.metadata import MetadataResolver
from oauthgate.auth.models import StoredToken
from oauthgate.auth.session_store import SessionTokenStore
from oauthgate.auth.token_client import TokenEndpointClient
from oauthgate.auth.verifier import TokenVerifier
from oauthgate.settings import Settings, settings as default_settings


@dataclass
class AuthCore:
    """The wired authentication components."""

    resolver: MetadataResolver
    client: TokenEndpointClient
    verifier: TokenVerifier
    store: SessionTokenStore
    device_flow: DeviceFlow | None

    def prefers_device_flow(
        self, environ: Mapping[str, str] | None = None, platform: str | None = None
    ) -> bool:
        """Whether login should use the device flow rather than a browser redirect."""
        if self.device_flow is None:
            return False
        return should_use_device_flow(self.device_flow.config, environ, platform)

    async def login_with_device_flow(self, session_id: str) -> StoredToken:
        """Run the device flow and bind the resulting token to a session.

        Raises:
            RuntimeError: Device flow unavailable (no client ID configured)
            DeviceFlowError: Authentication failed
        """
        if self.device_flow is None:
            raise RuntimeError(
                "Device flow requires an OAuth client ID (OAUTHGATE_OAUTH__CLIENT_ID)"
            )
        bundle = await self.device_flow.authenticate()
        return self.store.store_tokens(session_id, bundle)


def build_auth_core(
    config: Settings | None = None,
    http_client: httpx.AsyncClient | None = None,
    presenter: DevicePresenter | None = None,
) -> AuthCore:
    """Create all authentication components from settings.

    Args:
        config: Settings (defaults to the process settings)
        http_client: Shared HTTP client for every component
        presenter: Device flow output sink

    Returns:
        Wired components

    Raises:
        ValueError: IdP server URL not configured

    Example:
        >>> core = build_auth_core()
        >>> claims = await core.verifier.verify(token)
    """
    config = config or default_settings
    oauth = config.oauth

    resolver = MetadataResolver(
        oauth.server_url,
        cache_ttl=oauth.metadata_cache_ttl,
        http_client=http_client,
        timeout=oauth.http_timeout,
    )
    client = TokenEndpointClient(
        resolver,
        client_id=oauth.client_id,
        client_secret=oauth.client_secret,
        http_client=http_client,
        timeout=oauth.http_timeout,
    )
    verifier = TokenVerifier(
        resolver,
        audience=oauth.audience,
        allow_missing_issuer=oauth.allow_missing_issuer,
        jwks_cache_ttl=oauth.jwks_cache_ttl,
        failure_threshold=oauth.verification_failure_threshold,
        leeway=oauth.clock_leeway,
        token_client=client,
        http_client=http_client,
        timeout=oauth.http_timeout,
    )
    store = SessionTokenStore(
        client,
        skew_seconds=oauth.expiry_skew_seconds,
        captured_token_lifetime=oauth.captured_token_lifetime,
    )

    device_flow = None
    if oauth.client_id:
        device_flow = DeviceFlow(
            client,
            resolver,
            client_id=oauth.client_id,
            scopes=oauth.scopes,
            config=config.device_flow,
            presenter=presenter,
        )
    else:
        logger.info("No OAuth client ID configured - running as resource server only")

    logger.info(f"Initialized OAuth proxy core (IdP: {oauth.server_url})")
    return AuthCore(
        resolver=resolver,
        client=client,
        verifier=verifier,
        store=store,
        device_flow=device_flow,
    )


# Global instance (lazy-initialized)
_core_instance: AuthCore | None = None


def get_auth_core() -> AuthCore:
    """Get or create the process-wide AuthCore.

    Lazy-initializes on first call and caches for subsequent calls.
    """
    global _core_instance

    if _core_instance is None:
        _core_instance = build_auth_core()

    return _core_instance


def reset_auth_core() -> None:
    """Drop the cached AuthCore (tests and reconfiguration)."""
    global _core_instance
    _core_instance = None
