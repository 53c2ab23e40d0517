"""Token, revocation and introspection endpoint client.

All endpoint URLs come from discovery metadata. Client credentials are sent in
the form body (client_secret_post) when a secret is configured.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx
from loguru import logger
from pydantic import ValidationError

from oauthgate.auth.claims import redact_token
from oauthgate.auth.errors import (
    AuthError,
    RefreshError,
    RevocationError,
    TokenEndpointError,
    TokenExchangeError,
)
from oauthgate.auth.metadata import MetadataResolver
from oauthgate.auth.models import IntrospectionResult, TokenBundle

DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"

FORM_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "Accept": "application/json",
}


def oauth_error_of(response: httpx.Response) -> tuple[str | None, str]:
    """Extract an OAuth error code and message from an error response.

    Falls back to the raw response body, then the status line, when the body
    is not an RFC 6749 error object.

    Returns:
        (error code or None, human-readable message)
    """
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict) and body.get("error"):
        error = str(body["error"])
        description = body.get("error_description")
        message = f"{error} - {description}" if description else error
        return error, message

    text = response.text.strip()
    if text:
        return None, text
    return None, f"HTTP {response.status_code} {response.reason_phrase}".strip()


class TokenEndpointClient:
    """Talks to the IdP token, revocation and introspection endpoints."""

    def __init__(
        self,
        resolver: MetadataResolver,
        client_id: str = "",
        client_secret: str = "",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        """Initialize token endpoint client.

        Args:
            resolver: Discovery metadata source for endpoint URLs
            client_id: OAuth client ID (omitted from requests when empty)
            client_secret: OAuth client secret (omitted when empty)
            http_client: Shared client (a short-lived one is created per call if None)
            timeout: HTTP timeout for per-call clients
        """
        self.resolver = resolver
        self.client_id = client_id
        self.client_secret = client_secret
        self._http_client = http_client
        self._timeout = timeout

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                yield client

    def _with_credentials(self, data: dict[str, str]) -> dict[str, str]:
        form = dict(data)
        if self.client_id:
            form["client_id"] = self.client_id
        if self.client_secret:
            form["client_secret"] = self.client_secret
        return form

    async def post_form(
        self, url: str, data: dict[str, str], with_credentials: bool = True
    ) -> httpx.Response:
        """POST a form-encoded body and return the raw response.

        Raises:
            httpx.HTTPError: Transport failure
        """
        form = self._with_credentials(data) if with_credentials else data
        async with self._client() as client:
            return await client.post(url, data=form, headers=FORM_HEADERS)

    async def token_request(self, data: dict[str, str]) -> httpx.Response:
        """POST a grant to the token endpoint, returning the raw response.

        Callers interpret OAuth error bodies themselves (the device flow needs
        the individual error codes).

        Raises:
            DiscoveryError: Token endpoint unknown
            httpx.HTTPError: Transport failure
        """
        metadata = await self.resolver.resolve()
        return await self.post_form(metadata.token_url, data)

    async def _grant(
        self, data: dict[str, str], error_cls: type[TokenEndpointError], action: str
    ) -> TokenBundle:
        try:
            response = await self.token_request(data)
        except httpx.HTTPError as e:
            raise error_cls(f"{action} failed: {e}") from e
        except AuthError as e:
            raise error_cls(f"{action} failed: {e}", detail=e.detail) from e

        if not response.is_success:
            error_code, message = oauth_error_of(response)
            raise error_cls(
                f"{action} failed: {message}",
                error_code=error_code,
                status_code=response.status_code,
            )

        try:
            return TokenBundle.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise error_cls(
                f"{action} failed: invalid token response",
                status_code=response.status_code,
                detail=str(e),
            ) from e

    async def refresh(self, refresh_token: str, scope: str | None = None) -> TokenBundle:
        """Redeem a refresh token.

        Args:
            refresh_token: Refresh token to redeem
            scope: Optional scope to request (must not exceed the original grant)

        Returns:
            New token bundle (refresh_token and scope may be absent)

        Raises:
            RefreshError: Endpoint error, transport failure or malformed response
        """
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        if scope:
            data["scope"] = scope
        logger.debug(f"Refreshing token {redact_token(refresh_token)}")
        return await self._grant(data, RefreshError, "Token refresh")

    async def exchange_authorization_code(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: str | None = None,
    ) -> TokenBundle:
        """Exchange a browser-flow authorization code for tokens.

        Raises:
            TokenExchangeError: Endpoint error, transport failure or malformed response
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        }
        if code_verifier:
            data["code_verifier"] = code_verifier
        return await self._grant(data, TokenExchangeError, "Authorization code exchange")

    async def revoke(self, token: str, token_type_hint: str = "access_token") -> None:
        """Revoke a token (RFC 7009).

        Raises:
            RevocationError: No revocation endpoint, transport failure or non-2xx
        """
        metadata = await self.resolver.resolve()
        if not metadata.revocation_url:
            raise RevocationError("IdP does not advertise a revocation endpoint")

        try:
            response = await self.post_form(
                metadata.revocation_url,
                {"token": token, "token_type_hint": token_type_hint},
            )
        except httpx.HTTPError as e:
            raise RevocationError(f"Token revocation failed: {e}") from e

        if not response.is_success:
            _, message = oauth_error_of(response)
            raise RevocationError(f"Token revocation failed: {message}")
        logger.debug(f"Revoked {token_type_hint} {redact_token(token)}")

    async def introspect(self, token: str) -> IntrospectionResult:
        """Introspect a token (RFC 7662).

        Raises:
            TokenEndpointError: No introspection endpoint, transport failure,
                non-2xx or malformed response
        """
        metadata = await self.resolver.resolve()
        if not metadata.introspection_url:
            raise TokenEndpointError("IdP does not advertise an introspection endpoint")

        try:
            response = await self.post_form(
                metadata.introspection_url,
                {"token": token, "token_type_hint": "access_token"},
            )
        except httpx.HTTPError as e:
            raise TokenEndpointError(f"Token introspection failed: {e}") from e

        if not response.is_success:
            error_code, message = oauth_error_of(response)
            raise TokenEndpointError(
                f"Token introspection failed: {message}",
                error_code=error_code,
                status_code=response.status_code,
            )

        try:
            payload: Any = response.json()
            return IntrospectionResult.model_validate(payload)
        except (ValueError, ValidationError) as e:
            raise TokenEndpointError(
                "Token introspection failed: invalid response", detail=str(e)
            ) from e
