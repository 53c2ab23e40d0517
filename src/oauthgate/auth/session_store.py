"""Session / user / token lifecycle store.

Three relations are kept together in one object:
- sessions: session_id -> user_id (many sessions may share a user)
- tokens: user_id -> StoredToken
- refreshes: user_id -> in-flight refresh task (de-duplication only)

Tokens are keyed by user, not by session, so a reconnecting client with a new
session id recovers the user's token without re-authenticating, and a refresh
through one session is immediately visible to every sibling session.

All read-modify-write sequences run without an intervening await, which makes
them atomic on the event loop. The only suspension points are token endpoint
calls, and those are funnelled through one task per user.
"""

import asyncio
import time
from typing import Any, Callable

from loguru import logger

from oauthgate.auth.claims import (
    decode_unverified,
    parse_scopes,
    redact_token,
    user_id_from_token,
)
from oauthgate.auth.errors import AuthError, RefreshError
from oauthgate.auth.models import SessionAuthorization, StoredToken, TokenBundle
from oauthgate.auth.token_client import TokenEndpointClient


class SessionTokenStore:
    """Maps sessions to users and keeps each user's OAuth token fresh.

    Example:
        >>> store = SessionTokenStore(client)
        >>> store.store_tokens("session-1", bundle)
        >>> auth = await store.resolve_session_authorization("session-1")
        >>> auth.authorization_header
        'Bearer eyJ...'
    """

    def __init__(
        self,
        client: TokenEndpointClient | None = None,
        skew_seconds: int = 30,
        captured_token_lifetime: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize store.

        Args:
            client: Token endpoint client for refresh and revocation
                (refresh is unavailable when None)
            skew_seconds: Refresh this many seconds before nominal expiry
            captured_token_lifetime: Assumed lifetime of captured bearer tokens
                that carry no exp claim
            clock: Epoch-seconds clock
        """
        self.client = client
        self.skew_seconds = skew_seconds
        self.captured_token_lifetime = captured_token_lifetime
        self._clock = clock

        self._sessions: dict[str, str] = {}
        self._tokens: dict[str, StoredToken] = {}
        self._refreshes: dict[str, asyncio.Task[StoredToken]] = {}

    # ------------------------------------------------------------------
    # Binding
    # ------------------------------------------------------------------

    def store_tokens(
        self,
        session_id: str,
        bundle: TokenBundle,
        fallback_user_id: str | None = None,
    ) -> StoredToken:
        """Bind a session to the bundle's user and store the merged token.

        Args:
            session_id: Transport session identifier
            bundle: Token bundle from any producer (device flow, code exchange)
            fallback_user_id: Identity to use when the access token carries no
                identity claim (defaults to the session id)

        Returns:
            The stored token snapshot shared by every session of the user
        """
        user_id = self._resolve_user_id(session_id, bundle.access_token, fallback_user_id)
        stored = self._merge(user_id, bundle)

        previous = self._sessions.get(session_id)
        if previous is not None and previous != user_id:
            logger.info(f"Session {session_id} rebound from user {previous} to {user_id}")
        self._sessions[session_id] = user_id

        siblings = len(self.sessions_for_user(user_id))
        logger.debug(
            f"Token {redact_token(stored.access_token)} stored for session "
            f"{session_id} -> user {user_id} ({siblings} session(s) share it)"
        )
        return stored

    def capture_bearer_token(
        self,
        session_id: str,
        raw_token: str,
        hints: dict[str, Any] | None = None,
    ) -> StoredToken:
        """Store a bearer token a client presented directly.

        The token has no refresh token. Its lifetime comes from ``hints``
        (``expires_in``), else the token's own ``exp`` claim, else the
        configured short default.

        Args:
            session_id: Transport session identifier
            raw_token: Token from the Authorization header
            hints: Optional ``expires_in``, ``scope`` and ``token_type``
        """
        hints = hints or {}
        try:
            claims = decode_unverified(raw_token)
        except ValueError:
            claims = {}

        expires_in = hints.get("expires_in")
        if expires_in is None:
            exp = claims.get("exp")
            if isinstance(exp, (int, float)):
                expires_in = int(exp - self._clock())
            else:
                expires_in = self.captured_token_lifetime
        # Already-expired tokens are stored with a 1s lifetime and fail on resolve
        expires_in = max(int(expires_in), 1)

        scope = hints.get("scope")
        if scope is None:
            scope = " ".join(parse_scopes(claims.get("scope") or claims.get("scp")))

        bundle = TokenBundle(
            access_token=raw_token,
            token_type=hints.get("token_type", "Bearer"),
            expires_in=expires_in,
            refresh_token=None,
            scope=scope or None,
        )
        return self.store_tokens(session_id, bundle)

    def _resolve_user_id(
        self, session_id: str, access_token: str, fallback_user_id: str | None
    ) -> str:
        user_id = user_id_from_token(access_token)
        if user_id:
            return user_id

        fallback = fallback_user_id or session_id
        logger.bind(event="auth.user_id_fallback").warning(
            f"No user identity claim in token for session {session_id}; "
            f"using fallback identity {fallback}"
        )
        return fallback

    def _merge(self, user_id: str, bundle: TokenBundle) -> StoredToken:
        """Replace the user's token, keeping refresh_token/scope when omitted."""
        existing = self._tokens.get(user_id)

        refresh_token = bundle.refresh_token
        if refresh_token is None and existing is not None:
            refresh_token = existing.refresh_token

        scope = bundle.scope
        if not scope:
            scope = existing.scope if existing is not None else ""

        stored = StoredToken(
            user_id=user_id,
            access_token=bundle.access_token,
            token_type=bundle.token_type or "Bearer",
            refresh_token=refresh_token,
            scope=scope,
            issued_at=self._clock(),
            expires_in=bundle.expires_in,
        )
        self._tokens[user_id] = stored
        return stored

    # ------------------------------------------------------------------
    # Resolution and refresh
    # ------------------------------------------------------------------

    async def resolve_session_authorization(
        self, session_id: str
    ) -> SessionAuthorization | None:
        """Return live credentials for a session, refreshing if needed.

        Returns:
            Session authorization, or None when the session is unauthenticated
            or its user's token is expired and cannot be refreshed
        """
        user_id = self._sessions.get(session_id)
        if user_id is None:
            return None

        stored = self._tokens.get(user_id)
        if stored is None:
            # User state was purged through another session
            self._sessions.pop(session_id, None)
            return None

        if stored.is_expired(self._clock(), self.skew_seconds):
            if not stored.refresh_token or self.client is None:
                logger.info(
                    f"Token for user {user_id} expired without a refresh token - "
                    "clearing user state"
                )
                self._purge_user(user_id)
                return None

            try:
                stored = await self._refresh_once(user_id)
            except RefreshError as e:
                logger.warning(f"Token refresh failed for user {user_id}: {e}")
                return None

        return SessionAuthorization(
            session_id=session_id,
            user_id=user_id,
            access_token=stored.access_token,
            token_type=stored.token_type,
            scopes=parse_scopes(stored.scope),
            expires_at=stored.expires_at,
        )

    async def _refresh_once(self, user_id: str) -> StoredToken:
        """Join the user's in-flight refresh, starting one if none exists."""
        task = self._refreshes.get(user_id)
        if task is None:
            task = asyncio.ensure_future(self.perform_refresh(user_id))
            self._refreshes[user_id] = task
            task.add_done_callback(lambda t, uid=user_id: self._clear_refresh(uid, t))
        else:
            logger.debug(f"Joining in-flight refresh for user {user_id}")

        # One cancelled waiter must not cancel the refresh for the others
        return await asyncio.shield(task)

    def _clear_refresh(self, user_id: str, task: asyncio.Task) -> None:
        if self._refreshes.get(user_id) is task:
            del self._refreshes[user_id]
        if not task.cancelled():
            # Mark the exception retrieved when every waiter was cancelled
            task.exception()

    async def perform_refresh(self, user_id: str) -> StoredToken:
        """Redeem the user's refresh token and store the result.

        Any failure purges the user's state, forcing full re-authentication.

        Raises:
            RefreshError: No refresh token, endpoint failure, or the user
                logged out while the refresh was in flight
        """
        current = self._tokens.get(user_id)
        if current is None or not current.refresh_token:
            self._purge_user(user_id)
            raise RefreshError(f"No refresh token available for user {user_id}")
        if self.client is None:
            raise RefreshError("Token refresh is not configured")

        logger.bind(event="auth.refresh").info(f"Refreshing token for user {user_id}")
        try:
            bundle = await self.client.refresh(current.refresh_token)
        except RefreshError:
            self._purge_user(user_id)
            raise

        latest = self._tokens.get(user_id)
        if latest is None:
            raise RefreshError(f"User {user_id} logged out during token refresh")
        if latest is not current:
            # A newer login landed while the refresh was in flight
            logger.info(
                f"Discarding refresh result for user {user_id}: token was replaced "
                "during the refresh"
            )
            return latest

        stored = self._merge(user_id, bundle)
        logger.bind(event="auth.refresh").info(
            f"Token refreshed for user {user_id} "
            f"({len(self.sessions_for_user(user_id))} session(s) updated)"
        )
        return stored

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def detach_session(self, session_id: str) -> bool:
        """Forget one session binding; the user's token stays for reconnects.

        Returns:
            True if the session was bound
        """
        user_id = self._sessions.pop(session_id, None)
        if user_id is None:
            return False
        logger.debug(f"Session {session_id} detached from user {user_id}")
        return True

    async def logout_session(self, session_id: str) -> bool:
        """Log out the session's user everywhere.

        Every session of the user and the user's token are removed; the
        token is then revoked at the IdP on a best-effort basis.

        Returns:
            True if an authenticated user was logged out
        """
        user_id = self._sessions.get(session_id)
        if user_id is None:
            logger.info(f"Logout requested for unauthenticated session: {session_id}")
            return False

        stored = self._tokens.get(user_id)
        removed = self._purge_user(user_id)
        logger.bind(event="auth.logout").info(
            f"User {user_id} logged out ({removed} session(s) removed). "
            f"Active users: {self.active_user_count}, "
            f"active sessions: {self.active_session_count}"
        )

        if stored is not None and self.client is not None:
            await self._revoke(stored)
        return True

    async def _revoke(self, stored: StoredToken) -> None:
        if stored.refresh_token:
            token, hint = stored.refresh_token, "refresh_token"
        else:
            token, hint = stored.access_token, "access_token"
        try:
            await self.client.revoke(token, token_type_hint=hint)
        except AuthError as e:
            logger.warning(f"Token revocation skipped or failed: {e}")

    def _purge_user(self, user_id: str) -> int:
        """Remove the user's token and every session bound to it."""
        self._tokens.pop(user_id, None)
        sessions = self.sessions_for_user(user_id)
        for session_id in sessions:
            del self._sessions[session_id]
        return len(sessions)

    # ------------------------------------------------------------------
    # Diagnostics (read-only)
    # ------------------------------------------------------------------

    @property
    def active_user_count(self) -> int:
        return len(self._tokens)

    @property
    def active_session_count(self) -> int:
        return len(self._sessions)

    def session_user_snapshot(self) -> dict[str, str]:
        """Copy of the session -> user mapping."""
        return dict(self._sessions)

    def user_id_for_session(self, session_id: str) -> str | None:
        return self._sessions.get(session_id)

    def sessions_for_user(self, user_id: str) -> list[str]:
        return [sid for sid, uid in self._sessions.items() if uid == user_id]

    def stored_token(self, user_id: str) -> StoredToken | None:
        """Snapshot of the user's stored token."""
        return self._tokens.get(user_id)
