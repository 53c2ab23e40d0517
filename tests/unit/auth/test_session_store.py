"""Unit tests for the session / user / token store.

Covers user-keyed sharing across sessions, proactive refresh with
de-duplication, user-scoped logout and the bearer capture path.
"""

import asyncio

import httpx
import pytest

from conftest import ISSUER, FakeIdP, events, hs_token, oauth_error, token_response
from oauthgate.auth.metadata import MetadataResolver
from oauthgate.auth.models import TokenBundle
from oauthgate.auth.session_store import SessionTokenStore
from oauthgate.auth.token_client import TokenEndpointClient


def make_store(http: httpx.AsyncClient, clock) -> SessionTokenStore:
    resolver = MetadataResolver(ISSUER, http_client=http)
    client = TokenEndpointClient(resolver, client_id="cli", http_client=http)
    return SessionTokenStore(client, skew_seconds=30, clock=clock)


def bundle_for(user: str, refresh_token: str | None = "refresh-1", expires_in: int = 3600, **claims):
    return TokenBundle(
        access_token=hs_token(sub=user, **claims),
        expires_in=expires_in,
        refresh_token=refresh_token,
        scope="profile email",
    )


class TestBinding:
    """Session to user binding."""

    def test_store_is_idempotent(self, clock):
        store = SessionTokenStore(clock=clock)
        bundle = bundle_for("user-1")

        store.store_tokens("s1", bundle)
        store.store_tokens("s1", bundle)

        assert store.active_user_count == 1
        assert store.active_session_count == 1
        assert store.session_user_snapshot() == {"s1": "user-1"}

    def test_sessions_share_user_token(self, clock):
        """Test two sessions of one user resolve to a single stored token."""
        store = SessionTokenStore(clock=clock)
        store.store_tokens("s1", bundle_for("user-1", jti="a"))
        latest = store.store_tokens("s2", bundle_for("user-1", jti="b"))

        assert store.active_user_count == 1
        assert sorted(store.sessions_for_user("user-1")) == ["s1", "s2"]
        assert store.stored_token("user-1") == latest

    def test_rebind_keeps_refresh_token_and_scope(self, clock):
        store = SessionTokenStore(clock=clock)
        store.store_tokens("s1", bundle_for("user-1", refresh_token="keep-me"))

        stored = store.store_tokens(
            "s1",
            TokenBundle(access_token=hs_token(sub="user-1", jti="new"), expires_in=60),
        )

        assert stored.refresh_token == "keep-me"
        assert stored.scope == "profile email"

    def test_missing_identity_falls_back_with_warning(self, clock, log_records):
        """Test opaque tokens are keyed by the session id and logged."""
        store = SessionTokenStore(clock=clock)
        stored = store.store_tokens(
            "s1", TokenBundle(access_token="opaque-token-value", expires_in=60)
        )

        assert stored.user_id == "s1"
        warnings = events(log_records, "auth.user_id_fallback")
        assert len(warnings) == 1
        assert warnings[0]["level"].name == "WARNING"

    def test_explicit_fallback_identity(self, clock):
        store = SessionTokenStore(clock=clock)
        stored = store.store_tokens(
            "s1",
            TokenBundle(access_token="opaque-token-value", expires_in=60),
            fallback_user_id="alice",
        )
        assert stored.user_id == "alice"


class TestResolution:
    @pytest.mark.asyncio
    async def test_unknown_session(self, clock):
        store = SessionTokenStore(clock=clock)
        assert await store.resolve_session_authorization("nope") is None

    @pytest.mark.asyncio
    async def test_live_token_returned_without_refresh(self, idp, clock):
        async with idp.client() as http:
            store = make_store(http, clock)
            stored = store.store_tokens("s1", bundle_for("user-1"))
            auth = await store.resolve_session_authorization("s1")

        assert auth.user_id == "user-1"
        assert auth.access_token == stored.access_token
        assert auth.authorization_header == f"Bearer {stored.access_token}"
        assert auth.scopes == ["profile", "email"]
        assert idp.calls("/token") == []

    @pytest.mark.asyncio
    async def test_refresh_inside_skew_window(self, idp, clock):
        """Test a token within 30s of expiry is refreshed before use."""
        idp.token_responses = [token_response("refreshed-access", expires_in=3600)]
        async with idp.client() as http:
            store = make_store(http, clock)
            store.store_tokens("s1", bundle_for("user-1", expires_in=100))
            clock.advance(71)
            auth = await store.resolve_session_authorization("s1")

        assert auth.access_token == "refreshed-access"
        stored = store.stored_token("user-1")
        # Refresh response omitted refresh_token and scope
        assert stored.refresh_token == "refresh-1"
        assert stored.scope == "profile email"

        form = FakeIdP.form(idp.calls("/token")[0])
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "refresh-1"

    @pytest.mark.asyncio
    async def test_refresh_visible_to_sibling_sessions(self, idp, clock):
        idp.token_responses = [token_response("refreshed-access")]
        async with idp.client() as http:
            store = make_store(http, clock)
            store.store_tokens("s1", bundle_for("user-1", expires_in=60))
            store.store_tokens("s2", bundle_for("user-1", expires_in=60))
            clock.advance(60)

            await store.resolve_session_authorization("s1")
            sibling = await store.resolve_session_authorization("s2")

        assert sibling.access_token == "refreshed-access"
        assert len(idp.calls("/token")) == 1

    @pytest.mark.asyncio
    async def test_concurrent_resolves_share_one_refresh(self, idp, clock):
        """Test concurrent resolves for one user make exactly one token call."""
        idp.token_responses = [token_response("refreshed-access")]
        async with idp.client() as http:
            store = make_store(http, clock)
            for session_id in ("s1", "s2", "s3"):
                store.store_tokens(session_id, bundle_for("user-1", expires_in=60))
            clock.advance(60)

            results = await asyncio.gather(
                *(store.resolve_session_authorization(sid) for sid in ("s1", "s2", "s3", "s1", "s2"))
            )

        assert {r.access_token for r in results} == {"refreshed-access"}
        assert len(idp.calls("/token")) == 1

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token_clears_user(self, idp, clock):
        async with idp.client() as http:
            store = make_store(http, clock)
            store.store_tokens("s1", bundle_for("user-1", refresh_token=None, expires_in=60))
            store.store_tokens("s2", bundle_for("user-1", refresh_token=None, expires_in=60))
            clock.advance(60)

            assert await store.resolve_session_authorization("s1") is None
            assert await store.resolve_session_authorization("s2") is None

        assert store.active_user_count == 0
        assert store.active_session_count == 0
        assert idp.calls("/token") == []

    @pytest.mark.asyncio
    async def test_refresh_failure_purges_user(self, idp, clock):
        """Test a rejected refresh forces full re-authentication."""
        idp.token_responses = [oauth_error("invalid_grant")]
        async with idp.client() as http:
            store = make_store(http, clock)
            store.store_tokens("s1", bundle_for("user-1", expires_in=60))
            clock.advance(60)

            assert await store.resolve_session_authorization("s1") is None
            assert await store.resolve_session_authorization("s1") is None

        assert store.stored_token("user-1") is None
        assert store.user_id_for_session("s1") is None
        assert len(idp.calls("/token")) == 1

    @pytest.mark.asyncio
    async def test_logout_during_refresh_discards_result(self, idp, clock):
        """Test a refresh that completes after logout does not resurrect the user."""
        entered = asyncio.Event()
        release = asyncio.Event()

        async def gated(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/token":
                entered.set()
                await release.wait()
            return idp.handler(request)

        idp.token_responses = [token_response("too-late")]
        async with httpx.AsyncClient(transport=httpx.MockTransport(gated)) as http:
            store = make_store(http, clock)
            store.store_tokens("s1", bundle_for("user-1", expires_in=60))
            clock.advance(60)

            pending = asyncio.create_task(store.resolve_session_authorization("s1"))
            await entered.wait()
            assert await store.logout_session("s1") is True
            release.set()
            result = await pending

        assert result is None
        assert store.active_user_count == 0
        assert store.stored_token("user-1") is None

    @pytest.mark.asyncio
    async def test_login_during_refresh_wins_over_refresh_result(self, idp, clock):
        """Test a refresh that completes after a newer login does not overwrite it."""
        entered = asyncio.Event()
        release = asyncio.Event()

        async def gated(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/token":
                entered.set()
                await release.wait()
            return idp.handler(request)

        idp.token_responses = [token_response("stale-refresh-result")]
        async with httpx.AsyncClient(transport=httpx.MockTransport(gated)) as http:
            store = make_store(http, clock)
            store.store_tokens("s1", bundle_for("user-1", refresh_token="r-old", expires_in=60))
            clock.advance(60)

            pending = asyncio.create_task(store.resolve_session_authorization("s1"))
            await entered.wait()
            fresh = store.store_tokens(
                "s2", bundle_for("user-1", refresh_token="r-new", jti="fresh")
            )
            release.set()
            result = await pending

        stored = store.stored_token("user-1")
        assert stored == fresh
        assert stored.refresh_token == "r-new"
        assert result.access_token == fresh.access_token


class TestTeardown:
    @pytest.mark.asyncio
    async def test_logout_removes_all_sessions_of_user(self, idp, clock, log_records):
        async with idp.client() as http:
            store = make_store(http, clock)
            store.store_tokens("s1", bundle_for("user-1"))
            store.store_tokens("s2", bundle_for("user-1"))
            store.store_tokens("s3", bundle_for("user-2"))

            assert await store.logout_session("s1") is True

            assert await store.resolve_session_authorization("s2") is None
            assert (await store.resolve_session_authorization("s3")).user_id == "user-2"

        assert store.session_user_snapshot() == {"s3": "user-2"}
        assert len(events(log_records, "auth.logout")) == 1

        revoke_form = FakeIdP.form(idp.calls("/revoke")[0])
        assert revoke_form["token"] == "refresh-1"
        assert revoke_form["token_type_hint"] == "refresh_token"

    @pytest.mark.asyncio
    async def test_logout_succeeds_when_revocation_fails(self, idp, clock):
        idp.revocation_responses = [httpx.Response(503, text="down")]
        async with idp.client() as http:
            store = make_store(http, clock)
            store.store_tokens("s1", bundle_for("user-1"))
            assert await store.logout_session("s1") is True

        assert store.active_user_count == 0

    @pytest.mark.asyncio
    async def test_logout_unauthenticated_session(self, clock):
        store = SessionTokenStore(clock=clock)
        assert await store.logout_session("ghost") is False

    @pytest.mark.asyncio
    async def test_detach_keeps_user_token(self, clock):
        """Test closing one session leaves siblings and the token intact."""
        store = SessionTokenStore(clock=clock)
        store.store_tokens("s1", bundle_for("user-1"))
        store.store_tokens("s2", bundle_for("user-1"))

        assert store.detach_session("s1") is True
        assert store.detach_session("s1") is False

        assert await store.resolve_session_authorization("s1") is None
        assert (await store.resolve_session_authorization("s2")).user_id == "user-1"
        assert store.stored_token("user-1") is not None


class TestBearerCapture:
    @pytest.mark.asyncio
    async def test_lifetime_from_exp_claim(self, clock):
        store = SessionTokenStore(clock=clock)
        raw = hs_token(sub="user-9", exp=int(clock.now) + 120, scope="read write")

        stored = store.capture_bearer_token("s1", raw)

        assert stored.user_id == "user-9"
        assert stored.expires_in == 120
        assert stored.refresh_token is None
        assert stored.scope == "read write"

        auth = await store.resolve_session_authorization("s1")
        assert auth.authorization_header == f"Bearer {raw}"

    @pytest.mark.asyncio
    async def test_captured_token_not_refreshable(self, clock):
        store = SessionTokenStore(clock=clock)
        store.capture_bearer_token("s1", hs_token(sub="user-9"))

        # Default lifetime without exp claim or hints
        clock.advance(300)
        assert await store.resolve_session_authorization("s1") is None

    def test_hints_override_claims(self, clock):
        store = SessionTokenStore(clock=clock)
        stored = store.capture_bearer_token(
            "s1",
            hs_token(sub="user-9", exp=int(clock.now) + 120),
            hints={"expires_in": 900, "scope": "admin"},
        )
        assert stored.expires_in == 900
        assert stored.scope == "admin"
