"""Device Authorization Grant (RFC 8628) driver.

Implements headless authentication:
1. POST client_id + scope to the device authorization endpoint
2. Show the verification URI and user code
3. Poll the token endpoint until the user approves, denies, or the code expires
4. Return the token bundle for the session store

Polling state machine (per attempt):
    PENDING --authorization_pending--> PENDING
    PENDING --slow_down--> PENDING (interval + 5s, capped)
    PENDING --access_token--> AUTHORIZED
    PENDING --expired_token / deadline--> EXPIRED
    PENDING --access_denied--> DENIED
"""

import asyncio
import time
from typing import Awaitable, Callable

import httpx
from loguru import logger
from pydantic import ValidationError

from oauthgate.auth.device_ui import ConsolePresenter, DevicePresenter
from oauthgate.auth.errors import (
    DeviceFlowError,
    DeviceFlowErrorKind,
    DiscoveryError,
)
from oauthgate.auth.metadata import MetadataResolver
from oauthgate.auth.models import DeviceAuthorization, TokenBundle
from oauthgate.auth.token_client import (
    DEVICE_CODE_GRANT,
    TokenEndpointClient,
    oauth_error_of,
)
from oauthgate.settings import DeviceFlowSettings

SLOW_DOWN_INCREMENT = 5

# OAuth error codes that mean the IdP will never accept this client/flow
_PROVIDER_REJECTIONS = {
    "invalid_client": DeviceFlowErrorKind.INVALID_CLIENT,
    "unauthorized_client": DeviceFlowErrorKind.INVALID_CLIENT,
    "unsupported_grant_type": DeviceFlowErrorKind.NOT_SUPPORTED,
}


def _classify(error_code: str | None) -> DeviceFlowErrorKind:
    if error_code == "access_denied":
        return DeviceFlowErrorKind.ACCESS_DENIED
    if error_code == "expired_token":
        return DeviceFlowErrorKind.EXPIRED
    return _PROVIDER_REJECTIONS.get(error_code or "", DeviceFlowErrorKind.PROVIDER_ERROR)


class DeviceFlow:
    """RFC 8628 device authorization driver.

    Each ``authenticate()`` call runs up to ``max_retries`` complete attempts
    (each with a fresh device code). Terminal failures (user denial, client
    rejection, flow unsupported) abort at once; anything else restarts the
    flow after a fixed ``base_interval`` delay.
    """

    def __init__(
        self,
        client: TokenEndpointClient,
        resolver: MetadataResolver,
        client_id: str,
        scopes: list[str],
        config: DeviceFlowSettings | None = None,
        presenter: DevicePresenter | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize device flow.

        Args:
            client: Token endpoint client (used for polling)
            resolver: Discovery metadata source
            client_id: OAuth client ID
            scopes: Requested scopes
            config: Retry and interval bounds
            presenter: Output sink for instructions (rich console by default)
            sleep: Cancellable sleep between polls and attempts
            clock: Monotonic clock for the device code deadline
        """
        if not client_id:
            raise ValueError("OAuth client ID required for the device flow")

        self.client = client
        self.resolver = resolver
        self.client_id = client_id
        self.scopes = scopes
        self.config = config or DeviceFlowSettings()
        self.presenter = presenter or ConsolePresenter()
        self._sleep = sleep
        self._clock = clock

    async def initiate(self) -> DeviceAuthorization:
        """Request a device code / user code pair.

        Returns:
            Validated device authorization

        Raises:
            DeviceFlowError: Endpoint missing, request rejected or response malformed
        """
        try:
            metadata = await self.resolver.resolve()
        except DiscoveryError as e:
            raise DeviceFlowError(
                DeviceFlowErrorKind.TRANSPORT,
                f"Failed to initiate device flow: {e}",
                detail=e.detail,
            ) from e

        if not metadata.device_authorization_url:
            raise DeviceFlowError(
                DeviceFlowErrorKind.NOT_SUPPORTED,
                "Device authorization endpoint not available in OAuth metadata. "
                "The IdP may not support RFC 8628 device flow.",
            )

        self._warn_unsupported_scopes(metadata.scopes_supported)

        try:
            response = await self.client.post_form(
                metadata.device_authorization_url,
                {"client_id": self.client_id, "scope": " ".join(self.scopes)},
                with_credentials=False,
            )
        except httpx.HTTPError as e:
            raise DeviceFlowError(
                DeviceFlowErrorKind.TRANSPORT, f"Failed to initiate device flow: {e}"
            ) from e

        if not response.is_success:
            error_code, message = oauth_error_of(response)
            kind = _classify(error_code)
            raise DeviceFlowError(kind, f"Device authorization failed: {message}")

        try:
            authorization = DeviceAuthorization.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error(f"Invalid device authorization response: {e}")
            raise DeviceFlowError(
                DeviceFlowErrorKind.MALFORMED_RESPONSE,
                "Invalid device authorization response",
                detail=str(e),
            ) from e

        if authorization.interval is None:
            authorization = authorization.model_copy(
                update={"interval": self.config.base_interval}
            )

        logger.info(
            f"Device authorization started (user code {authorization.user_code}, "
            f"expires in {authorization.expires_in}s)"
        )
        return authorization

    async def poll(self, device_code: str, interval: int, expires_in: int) -> TokenBundle:
        """Poll the token endpoint until the user completes authorization.

        Args:
            device_code: Device code from initiate()
            interval: Initial polling interval in seconds
            expires_in: Device code lifetime in seconds (hard deadline)

        Returns:
            Token bundle

        Raises:
            DeviceFlowError: Denied, expired, rejected or malformed response
        """
        deadline = self._clock() + expires_in
        current_interval = interval
        attempt = 0

        while self._clock() < deadline:
            attempt += 1
            self.presenter.show_polling(attempt, current_interval)

            try:
                bundle = await self._poll_once(device_code)
            except _PollPending as pending:
                if pending.slow_down:
                    current_interval = min(
                        current_interval + SLOW_DOWN_INCREMENT, self.config.max_interval
                    )
                    self.presenter.show_warning(
                        f"Slowing down polling to {current_interval} seconds"
                    )
            else:
                return bundle

            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            await self._sleep(min(current_interval, remaining))

        raise DeviceFlowError(
            DeviceFlowErrorKind.EXPIRED, "Device code expired - authentication timed out"
        )

    async def _poll_once(self, device_code: str) -> TokenBundle:
        data = {
            "grant_type": DEVICE_CODE_GRANT,
            "device_code": device_code,
            "client_id": self.client_id,
        }

        try:
            response = await self.client.token_request(data)
        except (httpx.HTTPError, DiscoveryError) as e:
            logger.warning(f"Polling error, will retry: {e}")
            raise _PollPending() from e

        if response.is_success:
            try:
                return TokenBundle.model_validate(response.json())
            except (ValueError, ValidationError) as e:
                logger.error(f"Invalid token response during device flow: {e}")
                raise DeviceFlowError(
                    DeviceFlowErrorKind.MALFORMED_RESPONSE,
                    "Invalid token response",
                    detail=str(e),
                ) from e

        error_code, message = oauth_error_of(response)

        if error_code is None:
            # Gateway pages and other non-OAuth bodies are transient
            logger.warning(
                f"Polling error (HTTP {response.status_code}), will retry: {message[:200]}"
            )
            raise _PollPending()
        if error_code == "authorization_pending":
            raise _PollPending()
        if error_code == "slow_down":
            raise _PollPending(slow_down=True)
        if error_code == "expired_token":
            raise DeviceFlowError(
                DeviceFlowErrorKind.EXPIRED,
                "Device code expired. Please restart authentication.",
                detail=message,
            )
        if error_code == "access_denied":
            raise DeviceFlowError(
                DeviceFlowErrorKind.ACCESS_DENIED,
                "Authentication was denied by user.",
                detail=message,
            )
        raise DeviceFlowError(
            _classify(error_code), f"Device authorization failed: {message}"
        )

    async def _attempt(self) -> TokenBundle:
        try:
            authorization = await self.initiate()
            self.presenter.show_instructions(authorization)
            bundle = await self.poll(
                authorization.device_code,
                authorization.interval,
                authorization.expires_in,
            )
        except DeviceFlowError as e:
            if e.detail:
                logger.error(f"Device flow failed ({e.kind.value}): {e} [{e.detail}]")
            self.presenter.show_error(e.user_message)
            raise

        self.presenter.show_success()
        return bundle

    async def authenticate(self) -> TokenBundle:
        """Run the complete device flow with bounded retries.

        Returns:
            Token bundle for the authorized user

        Raises:
            DeviceFlowError: Terminal failure, or the last retryable failure
                once attempts are exhausted
        """
        max_retries = max(1, self.config.max_retries)

        for attempt in range(1, max_retries + 1):
            try:
                return await self._attempt()
            except DeviceFlowError as e:
                if not e.retryable:
                    logger.warning(f"Device flow aborted: {e.kind.value}")
                    raise
                if not self.config.auto_retry or attempt >= max_retries:
                    raise

                self.presenter.show_warning(
                    f"Authentication attempt {attempt} failed: {e.user_message}"
                )
                self.presenter.show_warning(f"Retrying... ({attempt + 1}/{max_retries})")
                await self._sleep(self.config.base_interval)

        # Loop always returns or raises
        raise DeviceFlowError(
            DeviceFlowErrorKind.PROVIDER_ERROR, "Device flow authentication failed"
        )

    def _warn_unsupported_scopes(self, supported: list[str]) -> None:
        if not supported:
            return
        unsupported = [s for s in self.scopes if s not in supported]
        if unsupported:
            logger.warning(
                f"Requested scopes not advertised by the IdP: {', '.join(unsupported)} "
                f"(supported: {', '.join(supported)})"
            )


class _PollPending(Exception):
    """Internal signal: keep polling."""

    def __init__(self, slow_down: bool = False):
        super().__init__("authorization pending")
        self.slow_down = slow_down
