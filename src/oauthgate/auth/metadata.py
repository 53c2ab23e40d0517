"""IdP discovery metadata resolution with a TTL cache."""

import time
from typing import Callable

import httpx
from loguru import logger
from pydantic import ValidationError

from oauthgate.auth.errors import DiscoveryError
from oauthgate.auth.models import DiscoveryMetadata

DISCOVERY_PATH = "/.well-known/oauth-authorization-server"


class MetadataResolver:
    """Fetches and caches RFC 8414 authorization server metadata.

    The cached snapshot is only ever replaced by a fully validated one, so
    concurrent readers never observe a partial document.
    """

    def __init__(
        self,
        server_url: str,
        cache_ttl: int = 3600,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize resolver.

        Args:
            server_url: IdP base URL
            cache_ttl: Cache lifetime in seconds
            http_client: Shared client (a short-lived one is created per fetch if None)
            timeout: HTTP timeout for per-fetch clients
            clock: Epoch-seconds clock
        """
        if not server_url:
            raise ValueError("IdP server URL required (OAUTHGATE_OAUTH__SERVER_URL)")

        self.server_url = server_url.rstrip("/")
        self.cache_ttl = cache_ttl
        self._http_client = http_client
        self._timeout = timeout
        self._clock = clock
        self._cached: DiscoveryMetadata | None = None

    @property
    def discovery_url(self) -> str:
        return f"{self.server_url}{DISCOVERY_PATH}"

    @property
    def cached(self) -> DiscoveryMetadata | None:
        return self._cached

    async def resolve(self) -> DiscoveryMetadata:
        """Return cached metadata, re-fetching once it has expired.

        Raises:
            DiscoveryError: Fetch, parse or schema validation failed
        """
        cached = self._cached
        if cached is not None and self._clock() < cached.expires_at:
            return cached

        document = await self._fetch()
        try:
            metadata = DiscoveryMetadata.model_validate(
                {**document, "expires_at": self._clock() + self.cache_ttl}
            )
        except ValidationError as e:
            raise DiscoveryError(
                f"Invalid discovery document from {self.discovery_url}",
                detail=str(e),
            ) from e

        self._cached = metadata
        logger.info(f"Fetched OAuth metadata from {self.discovery_url}")
        return metadata

    def invalidate(self) -> None:
        """Drop the cache so the next resolve() re-fetches."""
        if self._cached is not None:
            logger.info("OAuth metadata cache invalidated")
        self._cached = None

    async def _fetch(self) -> dict:
        try:
            if self._http_client is not None:
                response = await self._http_client.get(
                    self.discovery_url, headers={"Accept": "application/json"}
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(
                        self.discovery_url, headers={"Accept": "application/json"}
                    )
            response.raise_for_status()
            document = response.json()
        except httpx.HTTPStatusError as e:
            raise DiscoveryError(
                f"OAuth discovery failed: HTTP {e.response.status_code}",
                detail=e.response.text,
            ) from e
        except httpx.HTTPError as e:
            raise DiscoveryError(f"Failed to discover OAuth metadata: {e}") from e
        except ValueError as e:
            raise DiscoveryError(
                f"Failed to discover OAuth metadata: response is not JSON ({e})"
            ) from e

        if not isinstance(document, dict):
            raise DiscoveryError("Failed to discover OAuth metadata: expected a JSON object")
        return document
