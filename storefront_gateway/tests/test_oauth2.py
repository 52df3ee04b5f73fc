"""
Tests for the OAuth2 authorization-code client.
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from conftest import form_of
from storefront_gateway.auth.oauth2 import (
    AuthorizationDeniedError,
    AuthorizationError,
    OAuth2Client,
    OAuth2ClientConfig,
    StateMismatchError,
    TokenError,
    TokenExchangeError,
)
from storefront_gateway.models import LoginAction


def query_of(url):
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


@pytest.fixture
def config(settings):
    return OAuth2ClientConfig.from_settings(settings)


def pending_session(client, state="state-1"):
    return {client.state_key: {"state": state}}


class TestAuthorize:

    def test_authorization_url(self, oauth2_client):
        session = {}

        url = oauth2_client.authorize(session, LoginAction.SIGNIN)

        query = query_of(url)
        assert query["state"] == session["oauth2:idp.example.com"]["state"]
        assert query["loginAction"] == "signin"
        assert query["scope"] == "offline openid"

    def test_without_login_action(self, oauth2_client):
        query = query_of(oauth2_client.authorize({}))

        assert "loginAction" not in query

    def test_custom_parameters_hook(self, config, idp):
        def hook(login_action):
            return {"ui_locales": "de", "prompt": "login"}

        client = OAuth2Client(config, authorization_params=hook, transport=idp.transport)

        query = query_of(client.authorize({}, LoginAction.SIGNUP))

        assert query["ui_locales"] == "de"
        assert query["prompt"] == "login"
        assert "loginAction" not in query

    def test_preserves_existing_query_on_authorization_url(self, settings, idp):
        config = OAuth2ClientConfig.from_settings(settings).model_copy(
            update={"authorization_url": "https://idp.example.com/oauth2/auth?tenant=shop"}
        )
        client = OAuth2Client(config, transport=idp.transport)

        url = client.authorize({})

        assert url.startswith("https://idp.example.com/oauth2/auth?tenant=shop&")


class TestComplete:

    @pytest.mark.asyncio
    async def test_returns_identity_with_empty_profile(self, oauth2_client, idp):
        session = pending_session(oauth2_client)

        identity = await oauth2_client.complete(session, {"code": "c", "state": "state-1"})

        assert identity.access_token == "access-123"
        assert identity.profile == {}
        assert session == {}
        assert idp.requests_to("/userinfo") == []

    @pytest.mark.asyncio
    async def test_loads_profile_from_userinfo(self, config, idp):
        client = OAuth2Client(
            config.model_copy(update={"userinfo_url": "https://idp.example.com/userinfo"}),
            transport=idp.transport,
        )

        identity = await client.complete(pending_session(client), {"code": "c", "state": "state-1"})

        assert identity.profile == {"sub": "user-42", "email": "shopper@example.com"}
        userinfo = idp.requests_to("/userinfo")[0]
        assert userinfo.headers["authorization"] == "Bearer access-123"

    @pytest.mark.asyncio
    async def test_state_consumed_on_failure(self, oauth2_client):
        session = pending_session(oauth2_client)

        with pytest.raises(StateMismatchError):
            await oauth2_client.complete(session, {"code": "c", "state": "other"})

        assert oauth2_client.state_key not in session

    @pytest.mark.asyncio
    async def test_missing_pending_state(self, oauth2_client):
        with pytest.raises(StateMismatchError) as exc:
            await oauth2_client.complete({}, {"code": "c", "state": "state-1"})

        assert exc.value.status_code == 403

    @pytest.mark.asyncio
    async def test_provider_error(self, oauth2_client):
        with pytest.raises(AuthorizationError) as exc:
            await oauth2_client.complete(
                pending_session(oauth2_client),
                {"error": "server_error", "state": "state-1"},
            )

        assert "server_error" in exc.value.message

    @pytest.mark.asyncio
    async def test_access_denied(self, oauth2_client):
        with pytest.raises(AuthorizationDeniedError):
            await oauth2_client.complete(
                pending_session(oauth2_client),
                {"error": "access_denied", "state": "state-1"},
            )


class TestTokenEndpoint:

    @pytest.mark.asyncio
    async def test_form_encoded_token_response(self, config):
        def handler(request):
            return httpx.Response(
                200,
                text="access_token=form-token&token_type=bearer",
                headers={"content-type": "application/x-www-form-urlencoded"},
            )

        client = OAuth2Client(config, transport=httpx.MockTransport(handler))

        tokens = await client.exchange_code("c")

        assert tokens.access_token == "form-token"
        assert tokens.token_type == "bearer"

    @pytest.mark.asyncio
    async def test_missing_access_token(self, oauth2_client, idp):
        idp.token_body = {"token_type": "bearer"}

        with pytest.raises(TokenExchangeError):
            await oauth2_client.exchange_code("c")

    @pytest.mark.asyncio
    async def test_error_in_successful_response(self, oauth2_client, idp):
        idp.token_body = {"error": "invalid_client"}

        with pytest.raises(TokenError) as exc:
            await oauth2_client.exchange_code("c")

        assert exc.value.error == "invalid_client"
        assert exc.value.provider_status == 200


class TestRefresh:

    @pytest.mark.asyncio
    async def test_refresh_grant(self, oauth2_client, idp):
        tokens = await oauth2_client.refresh("refresh-123")

        assert tokens.access_token == "access-123"
        assert form_of(idp.requests_to("/oauth2/token")[0]) == {
            "grant_type": "refresh_token",
            "refresh_token": "refresh-123",
            "client_id": "storefront",
            "client_secret": "storefront-secret",
        }

    @pytest.mark.asyncio
    async def test_retries_transport_errors(self, oauth2_client, idp):
        idp.token_errors = [httpx.ConnectError("refused"), httpx.ReadTimeout("slow")]

        tokens = await oauth2_client.refresh("refresh-123")

        assert tokens.access_token == "access-123"
        assert len(idp.requests_to("/oauth2/token")) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self, oauth2_client, idp):
        idp.token_status = 503

        with pytest.raises(TokenExchangeError):
            await oauth2_client.refresh("refresh-123")

        assert len(idp.requests_to("/oauth2/token")) == 3

    @pytest.mark.asyncio
    async def test_invalid_grant_is_not_retried(self, oauth2_client, idp):
        idp.token_status = 400
        idp.token_body = {"error": "invalid_grant"}

        with pytest.raises(TokenError):
            await oauth2_client.refresh("refresh-123")

        assert len(idp.requests_to("/oauth2/token")) == 1
