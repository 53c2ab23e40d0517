"""Bearer token verification against the IdP's published key set.

The proxy acts as a RESOURCE SERVER here: it validates tokens the IdP issued,
it never issues them.

Uses authlib for JWT signature and claim validation.
"""

import time
from typing import Any, Callable

import httpx
from authlib.jose import JoseError, JsonWebKey, JsonWebToken
from authlib.jose.errors import (
    BadSignatureError,
    DecodeError,
    ExpiredTokenError,
    InvalidClaimError,
    InvalidTokenError,
    MissingClaimError,
)
from loguru import logger

from oauthgate.auth.claims import extract_user_id, parse_scopes
from oauthgate.auth.errors import (
    DiscoveryError,
    TokenEndpointError,
    TokenVerificationError,
    VerificationFailure,
)
from oauthgate.auth.metadata import MetadataResolver
from oauthgate.auth.models import DiscoveryMetadata, TokenClaims
from oauthgate.auth.token_client import TokenEndpointClient

SUPPORTED_ALGORITHMS = ["RS256", "RS384", "RS512", "ES256", "ES384", "PS256"]

# Failures that may be caused by stale keys or stale metadata
_KEY_FAILURES = frozenset(
    {VerificationFailure.SIGNATURE_INVALID, VerificationFailure.KEY_NOT_FOUND}
)


def _names_claim(error: JoseError, claim: str) -> bool:
    """Whether an authlib claim error refers to the given claim."""
    if getattr(error, "claim_name", None) == claim:
        return True
    return f"'{claim}'" in (error.description or "")


class TokenVerifier:
    """Verifies bearer JWTs issued by the configured IdP.

    Verification steps:
    1. Resolve discovery metadata (issuer, jwks_uri)
    2. Load the JWKS (cached, forced refresh once on an unknown key id)
    3. Verify the signature and validate iss/exp/nbf/aud

    Tokens without an ``iss`` claim are accepted with signature-only
    verification when ``allow_missing_issuer`` is set; a warning is logged for
    every such token. Every other failure fails closed.
    """

    def __init__(
        self,
        resolver: MetadataResolver,
        audience: str | None = None,
        allow_missing_issuer: bool = True,
        jwks_cache_ttl: int = 3600,
        failure_threshold: int = 3,
        leeway: int = 0,
        token_client: TokenEndpointClient | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize verifier.

        Args:
            resolver: Discovery metadata source
            audience: Expected audience claim (unchecked if None)
            allow_missing_issuer: Accept tokens without iss via signature-only checks
            jwks_cache_ttl: JWKS cache TTL in seconds
            failure_threshold: Consecutive key failures before caches are dropped
            leeway: Clock leeway in seconds for exp/nbf/iat
            token_client: Client used for introspection (optional)
            http_client: Shared client for JWKS fetches
            timeout: HTTP timeout for per-fetch clients
            clock: Epoch-seconds clock
        """
        self.resolver = resolver
        self.audience = audience
        self.allow_missing_issuer = allow_missing_issuer
        self.jwks_cache_ttl = jwks_cache_ttl
        self.failure_threshold = failure_threshold
        self.leeway = leeway
        self.token_client = token_client
        self._http_client = http_client
        self._timeout = timeout
        self._clock = clock

        self._jwks: dict[str, Any] | None = None
        self._jwks_url: str | None = None
        self._jwks_cache_time: float = 0
        self._consecutive_key_failures = 0
        self._jwt = JsonWebToken(SUPPORTED_ALGORITHMS)

    async def _get_jwks(
        self, metadata: DiscoveryMetadata, force_refresh: bool = False
    ) -> dict[str, Any]:
        """Fetch the JWKS, serving from cache while fresh.

        Raises:
            TokenVerificationError: JWKS endpoint unavailable or invalid
        """
        now = self._clock()

        if (
            not force_refresh
            and self._jwks
            and self._jwks_url == metadata.jwks_url
            and (now - self._jwks_cache_time) < self.jwks_cache_ttl
        ):
            return self._jwks

        try:
            if self._http_client is not None:
                response = await self._http_client.get(metadata.jwks_url)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(metadata.jwks_url)
            response.raise_for_status()
            jwks = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TokenVerificationError(
                VerificationFailure.JWKS_UNAVAILABLE,
                f"JWKS fetch failed: {e}",
            ) from e

        if not isinstance(jwks, dict) or not isinstance(jwks.get("keys"), list):
            raise TokenVerificationError(
                VerificationFailure.JWKS_UNAVAILABLE,
                "JWKS fetch failed: response has no 'keys' array",
            )

        self._jwks = jwks
        self._jwks_url = metadata.jwks_url
        self._jwks_cache_time = now
        logger.info(f"Refreshed JWKS from {metadata.jwks_url}")
        return jwks

    def _claims_options(self, issuer: str | None) -> dict[str, Any]:
        options: dict[str, Any] = {}
        if issuer is not None:
            options["iss"] = {"essential": True, "value": issuer}
        if self.audience:
            options["aud"] = {"essential": True, "value": self.audience}
        return options

    def _decode(self, token: str, jwks: dict[str, Any], issuer: str | None):
        """Verify signature and claims, translating authlib errors."""
        try:
            claims = self._jwt.decode(
                token,
                key=JsonWebKey.import_key_set(jwks),
                claims_options=self._claims_options(issuer),
            )
            claims.validate(now=int(self._clock()), leeway=self.leeway)
            return claims
        except ExpiredTokenError as e:
            raise TokenVerificationError(VerificationFailure.EXPIRED, "Token expired") from e
        except MissingClaimError as e:
            if _names_claim(e, "iss"):
                raise TokenVerificationError(
                    VerificationFailure.ISSUER_MISSING, "Token has no issuer claim"
                ) from e
            if _names_claim(e, "aud"):
                raise TokenVerificationError(
                    VerificationFailure.AUDIENCE_MISMATCH, "Token has no audience claim"
                ) from e
            raise TokenVerificationError(
                VerificationFailure.INVALID_CLAIMS, f"Token verification failed: {e}"
            ) from e
        except InvalidClaimError as e:
            if _names_claim(e, "iss"):
                raise TokenVerificationError(
                    VerificationFailure.ISSUER_MISMATCH, "Token issuer mismatch"
                ) from e
            if _names_claim(e, "aud"):
                raise TokenVerificationError(
                    VerificationFailure.AUDIENCE_MISMATCH, "Token audience mismatch"
                ) from e
            raise TokenVerificationError(
                VerificationFailure.INVALID_CLAIMS, f"Token verification failed: {e}"
            ) from e
        except InvalidTokenError as e:
            raise TokenVerificationError(
                VerificationFailure.INVALID_CLAIMS, f"Token verification failed: {e}"
            ) from e
        except BadSignatureError as e:
            raise TokenVerificationError(
                VerificationFailure.SIGNATURE_INVALID, "Token signature invalid"
            ) from e
        except DecodeError as e:
            raise TokenVerificationError(
                VerificationFailure.MALFORMED, f"Malformed token: {e}"
            ) from e
        except JoseError as e:
            raise TokenVerificationError(
                VerificationFailure.MALFORMED, f"Token verification failed: {e}"
            ) from e
        except ValueError as e:
            # authlib raises ValueError when no key in the set matches the kid
            raise TokenVerificationError(
                VerificationFailure.KEY_NOT_FOUND, f"No matching signing key: {e}"
            ) from e

    def _decode_with_fallback(
        self, token: str, jwks: dict[str, Any], issuer: str | None
    ) -> dict[str, Any]:
        """Decode, retrying signature-only when the token has no iss claim."""
        try:
            claims = self._decode(token, jwks, issuer)
        except TokenVerificationError as e:
            if e.reason != VerificationFailure.ISSUER_MISSING or not self.allow_missing_issuer:
                raise
            logger.bind(event="auth.issuer_fallback").warning(
                "JWT missing issuer (iss) claim - falling back to signature-only "
                "verification. Configure the IdP to include the iss claim."
            )
            claims = self._decode(token, jwks, None)
        return dict(claims)

    async def _verify_with_keys(
        self, token: str, metadata: DiscoveryMetadata
    ) -> dict[str, Any]:
        jwks = await self._get_jwks(metadata)
        try:
            return self._decode_with_fallback(token, jwks, metadata.issuer)
        except TokenVerificationError as e:
            if e.reason != VerificationFailure.KEY_NOT_FOUND:
                raise

        logger.info("Unknown key ID, refreshing JWKS and retrying")
        jwks = await self._get_jwks(metadata, force_refresh=True)
        return self._decode_with_fallback(token, jwks, metadata.issuer)

    async def verify(self, token: str) -> TokenClaims:
        """Verify a bearer token and return its normalized claims.

        Args:
            token: Compact-serialized JWT

        Returns:
            Normalized claims

        Raises:
            TokenVerificationError: Any verification failure
        """
        try:
            metadata = await self.resolver.resolve()
        except DiscoveryError as e:
            raise TokenVerificationError(
                VerificationFailure.JWKS_UNAVAILABLE,
                f"Token verification failed: {e}",
                detail=e.detail,
            ) from e

        try:
            payload = await self._verify_with_keys(token, metadata)
        except TokenVerificationError as e:
            self._record_failure(e)
            logger.warning(f"Token validation failed: {e}")
            raise

        self._consecutive_key_failures = 0
        logger.debug(f"Token validated for user: {extract_user_id(payload)}")
        return self.normalize_claims(payload)

    async def introspect(self, token: str) -> TokenClaims:
        """Validate an opaque token through the IdP introspection endpoint.

        Raises:
            TokenVerificationError: Token inactive or introspection unavailable
        """
        if self.token_client is None:
            raise TokenVerificationError(
                VerificationFailure.MALFORMED, "Introspection is not configured"
            )

        try:
            result = await self.token_client.introspect(token)
        except (TokenEndpointError, DiscoveryError) as e:
            raise TokenVerificationError(
                VerificationFailure.JWKS_UNAVAILABLE,
                f"Token verification failed: {e}",
                detail=e.detail,
            ) from e

        if not result.active:
            raise TokenVerificationError(VerificationFailure.INACTIVE, "Token is not active")
        if result.exp is not None and result.exp + self.leeway <= self._clock():
            raise TokenVerificationError(VerificationFailure.EXPIRED, "Token expired")

        return self.normalize_claims(result.model_dump(exclude_none=True))

    def _record_failure(self, error: TokenVerificationError) -> None:
        if error.reason not in _KEY_FAILURES:
            return
        self._consecutive_key_failures += 1
        if self._consecutive_key_failures >= self.failure_threshold:
            logger.warning(
                f"{self._consecutive_key_failures} consecutive key failures - "
                "dropping JWKS and metadata caches"
            )
            self._jwks = None
            self.resolver.invalidate()
            self._consecutive_key_failures = 0

    @staticmethod
    def normalize_claims(payload: dict[str, Any]) -> TokenClaims:
        """Map raw claims to TokenClaims.

        Different providers encode scopes differently (space-separated string
        in ``scope`` or ``scp``, or an array), and audience as a string or a
        list.
        """
        scopes: list[str] = []
        for claim_name in ("scope", "scp", "scopes"):
            scopes = parse_scopes(payload.get(claim_name))
            if scopes:
                break

        aud = payload.get("aud")
        if isinstance(aud, str):
            audience = [aud]
        elif isinstance(aud, (list, tuple)):
            audience = [str(a) for a in aud]
        else:
            audience = []

        exp = payload.get("exp")
        return TokenClaims(
            subject=extract_user_id(payload),
            scopes=scopes,
            expires_at=int(exp) if isinstance(exp, (int, float)) else None,
            audience=audience,
            issuer=payload.get("iss"),
            client_id=payload.get("client_id") or payload.get("azp"),
            raw=payload,
        )
