"""Shared fixtures: a scripted identity provider, signing keys and fake time.

The fake IdP is an ``httpx.MockTransport`` handler, so every component runs
its real HTTP code path without a network.
"""

import time
from urllib.parse import parse_qs

import httpx
import jwt as pyjwt
import pytest
from authlib.jose import JsonWebKey, JsonWebToken
from loguru import logger

ISSUER = "https://idp.example.com"
HS_SECRET = "unit-test-secret-with-enough-bytes-for-hs256"


class FakeClock:
    """Controllable clock; ``sleep`` advances it instead of waiting."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


class FakeIdP:
    """Scripted OAuth authorization server.

    Endpoint responses are queues: each request consumes the head, and the
    last entry repeats once the queue is down to one.
    """

    def __init__(self, jwks: dict):
        self.discovery = {
            "issuer": ISSUER,
            "authorization_endpoint": f"{ISSUER}/authorize",
            "token_endpoint": f"{ISSUER}/token",
            "jwks_uri": f"{ISSUER}/jwks",
            "revocation_endpoint": f"{ISSUER}/revoke",
            "introspection_endpoint": f"{ISSUER}/introspect",
            "device_authorization_endpoint": f"{ISSUER}/device",
            "scopes_supported": ["profile", "email", "offline_access"],
        }
        self.jwks = jwks
        self.requests: list[httpx.Request] = []
        self.token_responses: list[httpx.Response] = []
        self.device_responses: list[httpx.Response] = [
            httpx.Response(
                200,
                json={
                    "device_code": "dev-code-1",
                    "user_code": "ABCD-EFGH",
                    "verification_uri": f"{ISSUER}/activate",
                    "verification_uri_complete": f"{ISSUER}/activate?user_code=ABCD-EFGH",
                    "expires_in": 600,
                    "interval": 5,
                },
            )
        ]
        self.revocation_responses: list[httpx.Response] = [httpx.Response(200)]
        self.introspection_responses: list[httpx.Response] = [
            httpx.Response(200, json={"active": True, "sub": "user-1", "scope": "profile"})
        ]
        self.discovery_status = 200

    @staticmethod
    def _next(queue: list[httpx.Response]) -> httpx.Response:
        if not queue:
            return httpx.Response(500, text="no scripted response")
        scripted = queue.pop(0) if len(queue) > 1 else queue[0]
        # Fresh copy, scripted responses may be served more than once
        return httpx.Response(
            scripted.status_code, headers=scripted.headers, content=scripted.content
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/.well-known/oauth-authorization-server":
            if self.discovery_status != 200:
                return httpx.Response(self.discovery_status, text="unavailable")
            return httpx.Response(200, json=self.discovery)
        if path == "/jwks":
            return httpx.Response(200, json=self.jwks)
        if path == "/token":
            return self._next(self.token_responses)
        if path == "/device":
            return self._next(self.device_responses)
        if path == "/revoke":
            return self._next(self.revocation_responses)
        if path == "/introspect":
            return self._next(self.introspection_responses)
        return httpx.Response(404, text="not found")

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    @staticmethod
    def form(request: httpx.Request) -> dict[str, str]:
        """Decode a form-encoded request body."""
        parsed = parse_qs(request.content.decode(), keep_blank_values=True)
        return {k: v[0] for k, v in parsed.items()}


def token_response(
    access_token: str,
    expires_in: int = 3600,
    refresh_token: str | None = None,
    scope: str | None = None,
) -> httpx.Response:
    body: dict = {"access_token": access_token, "token_type": "Bearer", "expires_in": expires_in}
    if refresh_token is not None:
        body["refresh_token"] = refresh_token
    if scope is not None:
        body["scope"] = scope
    return httpx.Response(200, json=body)


def oauth_error(error: str, status: int = 400, description: str | None = None) -> httpx.Response:
    body = {"error": error}
    if description:
        body["error_description"] = description
    return httpx.Response(status, json=body)


def hs_token(**claims) -> str:
    """Unverifiable HS256 token; the session store only reads its claims."""
    return pyjwt.encode(claims, HS_SECRET, algorithm="HS256")


@pytest.fixture(scope="session")
def signing_key():
    return JsonWebKey.generate_key("RSA", 2048, is_private=True, options={"kid": "test-key"})


@pytest.fixture(scope="session")
def rotated_key():
    return JsonWebKey.generate_key("RSA", 2048, is_private=True, options={"kid": "rotated-key"})


@pytest.fixture
def sign():
    """Sign a payload as the IdP would (RS256)."""
    jwt = JsonWebToken(["RS256"])

    def _sign(payload: dict, key) -> str:
        header = {"alg": "RS256", "kid": key.as_dict()["kid"]}
        return jwt.encode(header, payload, key).decode()

    return _sign


@pytest.fixture
def idp(signing_key):
    return FakeIdP({"keys": [signing_key.as_dict(is_private=False)]})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def valid_claims():
    now = int(time.time())
    return {
        "iss": ISSUER,
        "sub": "user-1",
        "aud": "oauthgate",
        "scope": "profile email",
        "iat": now,
        "exp": now + 3600,
    }


@pytest.fixture
def log_records():
    """Capture loguru records emitted during the test."""
    records: list[dict] = []
    handler_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
    yield records
    logger.remove(handler_id)


def events(records: list[dict], event: str) -> list[dict]:
    return [r for r in records if r["extra"].get("event") == event]
