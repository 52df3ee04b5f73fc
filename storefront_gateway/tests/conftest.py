"""
Shared fixtures for gateway tests.

The identity provider is simulated with httpx.MockTransport, so no test
touches the network.
"""

from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request
from starlette.responses import JSONResponse

from storefront_gateway.auth.logout import RemoteLogoutInvoker
from storefront_gateway.auth.oauth2 import OAuth2Client, OAuth2ClientConfig
from storefront_gateway.auth.session import SessionCodec
from storefront_gateway.config import Settings
from storefront_gateway.main import create_app


SESSION_KEY = "test-session-secret-0123456789abcdef"
COOKIE_NAME = "storefront-session"


# ============================================================================
# Fake Identity Provider
# ============================================================================

class FakeIdentityProvider:
    """Token, userinfo and logout endpoints behind an httpx.MockTransport."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.token_status = 200
        self.token_body: Dict[str, Any] = {
            "access_token": "access-123",
            "refresh_token": "refresh-123",
            "token_type": "bearer",
            "expires_in": 3600,
        }
        self.token_errors: List[Exception] = []
        self.userinfo_body: Dict[str, Any] = {"sub": "user-42", "email": "shopper@example.com"}
        self.logout_status = 200
        self.logout_error: Optional[Exception] = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if request.url.path == "/oauth2/token":
            if self.token_errors:
                raise self.token_errors.pop(0)
            return httpx.Response(self.token_status, json=self.token_body)

        if request.url.path == "/userinfo":
            return httpx.Response(200, json=self.userinfo_body)

        if request.url.path == "/logout":
            if self.logout_error is not None:
                raise self.logout_error
            return httpx.Response(self.logout_status, json={})

        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def requests_to(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]


def form_of(request: httpx.Request) -> Dict[str, str]:
    """Decode a form-encoded request body into a flat dict."""
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


# ============================================================================
# Downstream
# ============================================================================

async def echo_downstream(scope, receive, send):
    """Stand-in for the storefront: echoes what it received."""
    request = Request(scope, receive)
    user = getattr(request.state, "user", None)
    response = JSONResponse({
        "path": request.url.path,
        "method": request.method,
        "access_token": user.access_token if user else None,
    })
    await response(scope, receive, send)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def settings() -> Settings:
    """Settings for tests, independent of the process environment."""
    return Settings(
        _env_file=None,
        OAUTH2_AUTH_URL="https://idp.example.com/oauth2/auth",
        OAUTH2_TOKEN_URL="https://idp.example.com/oauth2/token",
        OAUTH2_CLIENT_ID="storefront",
        OAUTH2_CLIENT_SECRET="storefront-secret",
        OAUTH2_REDIRECT_URL="http://testserver/callback",
        OAUTH2_IDP_HOST_URL="https://idp.example.com/",
        SESSION_SECRET=SESSION_KEY,
    )


@pytest.fixture
def idp() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def oauth2_client(settings, idp) -> OAuth2Client:
    return OAuth2Client(
        OAuth2ClientConfig.from_settings(settings),
        transport=idp.transport,
        refresh_backoff=(0,),
    )


@pytest.fixture
def app(settings, idp, oauth2_client):
    return create_app(
        settings,
        downstream=echo_downstream,
        oauth2_client=oauth2_client,
        logout_invoker=RemoteLogoutInvoker(settings.idp_logout_url, transport=idp.transport),
    )


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app, follow_redirects=False)


@pytest.fixture
def codec() -> SessionCodec:
    return SessionCodec([SESSION_KEY], max_age=24 * 60 * 60)


# ============================================================================
# Helpers
# ============================================================================

def read_session(client: TestClient) -> Dict[str, Any]:
    """Decode the session cookie currently held by the test client."""
    token = client.cookies.get(COOKIE_NAME)
    if not token:
        return {}
    return SessionCodec([SESSION_KEY], max_age=24 * 60 * 60).loads(token)


def state_from_location(location: str) -> str:
    return parse_qs(urlparse(location).query)["state"][0]


def sign_in(client: TestClient, referer: Optional[str] = None) -> httpx.Response:
    """Run /signin followed by a successful /callback."""
    headers = {"Referer": referer} if referer else {}
    start = client.get("/signin", headers=headers)
    assert start.status_code == 302
    state = state_from_location(start.headers["location"])
    return client.get("/callback", params={"code": "auth-code", "state": state})
