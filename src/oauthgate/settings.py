"""Application settings using Pydantic Settings."""

import re
from urllib.parse import urlparse

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OAuthSettings(BaseSettings):
    """Identity provider and token lifecycle configuration."""

    model_config = SettingsConfigDict(
        env_prefix="OAUTH__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    server_url: str = Field(
        default="",
        description="IdP base URL (discovery is fetched from "
        "{server_url}/.well-known/oauth-authorization-server)",
    )
    scope: str = Field(
        default="profile",
        description="Requested scopes, separated by spaces or commas",
    )
    client_id: str = Field(
        default="",
        description="OAuth client ID (empty for pure resource-server deployments)",
    )
    client_secret: str = Field(
        default="",
        description="OAuth client secret (sent as client_secret_post when set)",
    )
    audience: str | None = Field(
        default=None, description="Expected audience claim (unchecked when unset)"
    )

    metadata_cache_ttl: int = Field(
        default=3600, description="Discovery metadata cache TTL in seconds"
    )
    jwks_cache_ttl: int = Field(default=3600, description="JWKS cache TTL in seconds")
    expiry_skew_seconds: int = Field(
        default=30,
        description="Tokens expiring within this window are refreshed proactively",
    )
    captured_token_lifetime: int = Field(
        default=300,
        description="Assumed lifetime of client-presented bearer tokens without exp",
    )
    allow_missing_issuer: bool = Field(
        default=True,
        description="Accept tokens without an iss claim via signature-only verification",
    )
    verification_failure_threshold: int = Field(
        default=3,
        description="Consecutive key/signature failures before caches are invalidated",
    )
    clock_leeway: int = Field(
        default=0, description="Leeway in seconds for exp/nbf/iat validation"
    )
    http_timeout: float = Field(default=10.0, description="HTTP timeout in seconds")

    @field_validator("server_url")
    @classmethod
    def validate_server_url(cls, value: str) -> str:
        """Reject anything that is not an absolute http(s) URL."""
        if not value:
            return value
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"server_url must be a valid http(s) URL, got {value!r}")
        return value.rstrip("/")

    @property
    def scopes(self) -> list[str]:
        """Requested scopes as a list.

        Examples:
            >>> OAuthSettings(scope="profile, email  content:read").scopes
            ['profile', 'email', 'content:read']
        """
        return [s for s in re.split(r"[\s,]+", self.scope) if s]


class DeviceFlowSettings(BaseSettings):
    """RFC 8628 device authorization flow tuning."""

    model_config = SettingsConfigDict(
        env_prefix="DEVICE_FLOW__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    max_retries: int = Field(
        default=3, description="Full-flow attempts before giving up"
    )
    base_interval: int = Field(
        default=5,
        description="Polling interval when the IdP sends none, and delay between attempts",
    )
    max_interval: int = Field(
        default=30, description="Upper bound for the slow_down-adjusted interval"
    )
    auto_retry: bool = Field(
        default=True, description="Restart the flow on retryable failures"
    )
    force_device_flow: bool = Field(
        default=False, description="Always use the device flow"
    )
    force_browser_flow: bool = Field(
        default=False, description="Never use the device flow"
    )


class Settings(BaseSettings):
    """Application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="OAUTHGATE_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Identity provider (nested)
    oauth: OAuthSettings = Field(default_factory=OAuthSettings)

    # Device flow (nested)
    device_flow: DeviceFlowSettings = Field(default_factory=DeviceFlowSettings)


settings = Settings()
