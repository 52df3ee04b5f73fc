"""
OAuth2 authorization-code client.

This module implements the three-step authorization-code flow against the
storefront's identity provider:

    authorize()  -> user agent is redirected to the provider (state stored in session)
    complete()   -> callback: state verified, code exchanged, identity built
    refresh()    -> refresh-token grant (not exposed as a route)

Flow state lives entirely in the signed session:
    Idle                      no pending state for this provider
    AuthorizationRequested    pending ``state`` stored under ``oauth2:<host>``
    Authenticated             identity returned by complete() (stored by the router)
    Failed                    an OAuth2Error was raised

The client is built once from configuration and injected into the router.
"""

import asyncio
import logging
import secrets
from typing import Any, Callable, Dict, Mapping, MutableMapping, Optional, Sequence, Tuple
from urllib.parse import parse_qsl, urlencode, urlparse

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from ..config import Settings
from ..models import AuthenticatedIdentity, LoginAction, TokenSet
from .utils import validate_state

logger = logging.getLogger("gateway.auth.oauth2")

DEFAULT_SCOPE: Tuple[str, ...] = ("offline", "openid")


# =============================================================================
# Exceptions
# =============================================================================

class OAuth2Error(Exception):
    """Base class for failures of the authorization-code flow."""

    status_code = 400
    title = "Authentication Failed"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class StateMismatchError(OAuth2Error):
    """Callback state missing from the session or not matching it."""
    status_code = 403
    title = "Security Error"


class AuthorizationDeniedError(OAuth2Error):
    """The user (or provider) denied the authorization request."""
    status_code = 401
    title = "Authorization Denied"


class AuthorizationError(OAuth2Error):
    """The provider returned an error, or the callback is malformed."""
    status_code = 400


class TokenError(OAuth2Error):
    """The token endpoint explicitly rejected the grant (e.g. invalid_grant)."""
    status_code = 401

    def __init__(self, error: str, description: Optional[str] = None, provider_status: Optional[int] = None):
        super().__init__(description or error)
        self.error = error
        self.description = description
        self.provider_status = provider_status


class TokenExchangeError(OAuth2Error):
    """The token endpoint could not be reached or returned an unusable response."""
    status_code = 502
    title = "Identity Provider Error"


# =============================================================================
# Configuration
# =============================================================================

class OAuth2ClientConfig(BaseModel):
    """
    Immutable OAuth2 client configuration.

    The ``state`` parameter is always used; there is no switch to disable it.
    """
    model_config = ConfigDict(frozen=True)

    authorization_url: str
    token_url: str
    client_id: str
    client_secret: str
    callback_url: str
    scope: Tuple[str, ...] = DEFAULT_SCOPE
    userinfo_url: Optional[str] = None
    timeout: float = 10.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "OAuth2ClientConfig":
        return cls(
            authorization_url=settings.OAUTH2_AUTH_URL,
            token_url=settings.OAUTH2_TOKEN_URL,
            client_id=settings.OAUTH2_CLIENT_ID,
            client_secret=settings.OAUTH2_CLIENT_SECRET,
            callback_url=settings.OAUTH2_REDIRECT_URL,
            userinfo_url=settings.OAUTH2_USERINFO_URL,
            timeout=settings.OAUTH2_TIMEOUT_SECONDS,
        )


# =============================================================================
# Authorization Parameters Hook
# =============================================================================

AuthorizationParamsHook = Callable[[Optional[LoginAction]], Mapping[str, str]]


def login_action_params(login_action: Optional[LoginAction]) -> Dict[str, str]:
    """Default hook: forward only ``loginAction`` to the authorization endpoint."""
    if login_action is None:
        return {}
    return {"loginAction": LoginAction(login_action).value}


# =============================================================================
# Client
# =============================================================================

class OAuth2Client:
    """
    Authorization-code client for a single identity provider.

    Args:
        config: Immutable client configuration
        authorization_params: Hook producing custom authorization parameters
        transport: Optional httpx transport (tests use httpx.MockTransport)
        refresh_attempts: Attempts for the refresh grant on transient failures
        refresh_backoff: Delays in seconds between refresh attempts
    """

    def __init__(
        self,
        config: OAuth2ClientConfig,
        authorization_params: AuthorizationParamsHook = login_action_params,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        refresh_attempts: int = 3,
        refresh_backoff: Sequence[float] = (0.5, 1.5),
    ):
        self.config = config
        self.authorization_params = authorization_params
        self._transport = transport
        self.refresh_attempts = max(1, refresh_attempts)
        self.refresh_backoff = tuple(refresh_backoff) or (0.0,)

    @property
    def state_key(self) -> str:
        """Session key holding the pending state for this provider."""
        return f"oauth2:{urlparse(self.config.authorization_url).hostname}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=httpx.Timeout(self.config.timeout),
        )

    # -------------------------------------------------------------------------
    # Step 1: authorization request
    # -------------------------------------------------------------------------

    def authorize(
        self,
        session: MutableMapping[str, Any],
        login_action: Optional[LoginAction] = None,
    ) -> str:
        """
        Start a login: store a fresh state in the session and build the
        provider's authorization URL.
        """
        state = secrets.token_urlsafe(24)
        session[self.state_key] = {"state": state}

        params = {
            "response_type": "code",
            "client_id": self.config.client_id,
            "redirect_uri": self.config.callback_url,
            "scope": " ".join(self.config.scope),
            "state": state,
        }
        params.update(self.authorization_params(login_action))

        separator = "&" if "?" in self.config.authorization_url else "?"
        return f"{self.config.authorization_url}{separator}{urlencode(params)}"

    # -------------------------------------------------------------------------
    # Step 2: callback
    # -------------------------------------------------------------------------

    async def complete(
        self,
        session: MutableMapping[str, Any],
        params: Mapping[str, str],
    ) -> AuthenticatedIdentity:
        """
        Handle the provider's redirect back to the callback URL.

        The pending state is consumed whether or not the callback succeeds.

        Raises:
            OAuth2Error: On provider error, state mismatch, or failed exchange
        """
        pending = session.pop(self.state_key, None)
        expected_state = pending.get("state") if isinstance(pending, dict) else None

        error = params.get("error")
        if error:
            description = params.get("error_description") or error
            if error == "access_denied":
                raise AuthorizationDeniedError(description)
            raise AuthorizationError(f"Authorization failed: {description}")

        if not expected_state:
            raise StateMismatchError("Unable to verify authorization request state.")
        if not validate_state(params.get("state"), expected_state):
            raise StateMismatchError("Invalid authorization request state.")

        code = params.get("code")
        if not code:
            raise AuthorizationError("Missing authorization code.")

        tokens = await self.exchange_code(code)
        profile = await self.load_profile(tokens.access_token)

        logger.info("Authorization code exchanged successfully")
        return AuthenticatedIdentity(access_token=tokens.access_token, profile=profile)

    async def exchange_code(self, code: str) -> TokenSet:
        """Exchange an authorization code at the token endpoint."""
        return await self._request_token({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.config.callback_url,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        })

    async def load_profile(self, access_token: str) -> Dict[str, Any]:
        """
        Load the user profile.

        Without a configured userinfo endpoint the profile is empty.
        """
        if not self.config.userinfo_url:
            return {}

        try:
            async with self._client() as client:
                response = await client.get(
                    self.config.userinfo_url,
                    headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
                )
        except httpx.TransportError as e:
            logger.error(f"Userinfo request failed: {e}")
            raise TokenExchangeError("Failed to fetch user profile") from e

        if not response.is_success:
            logger.warning(f"Userinfo endpoint returned {response.status_code}")
            raise TokenExchangeError("Failed to fetch user profile")

        try:
            profile = response.json()
        except ValueError as e:
            raise TokenExchangeError("Failed to parse user profile") from e

        if not isinstance(profile, dict):
            raise TokenExchangeError("Failed to parse user profile")
        return profile

    # -------------------------------------------------------------------------
    # Refresh
    # -------------------------------------------------------------------------

    async def refresh(self, refresh_token: str) -> TokenSet:
        """
        Exchange a refresh token for a new access token.

        Transport failures and 5xx responses are retried with backoff; an
        explicit rejection from the provider (TokenError) is raised at once.
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }

        for attempt in range(self.refresh_attempts):
            try:
                return await self._request_token(data)
            except TokenExchangeError as e:
                if attempt < self.refresh_attempts - 1:
                    delay = self.refresh_backoff[min(attempt, len(self.refresh_backoff) - 1)]
                    logger.warning(
                        f"Token refresh failed (attempt {attempt + 1}/{self.refresh_attempts}), retrying after {delay}s",
                        extra={"reason": e.message},
                    )
                    await asyncio.sleep(delay)
                    continue
                logger.error(f"Token refresh failed after {self.refresh_attempts} attempts: {e.message}")
                raise

    # -------------------------------------------------------------------------
    # Token endpoint
    # -------------------------------------------------------------------------

    async def _request_token(self, data: Dict[str, str]) -> TokenSet:
        try:
            async with self._client() as client:
                response = await client.post(
                    self.config.token_url,
                    data=data,
                    headers={"Accept": "application/json"},
                )
        except httpx.TransportError as e:
            logger.error(f"Token endpoint unreachable: {e}", extra={"grant_type": data["grant_type"]})
            raise TokenExchangeError("Unable to communicate with the identity provider") from e

        body = _parse_token_body(response)

        if response.status_code >= 500:
            logger.error(
                f"Token endpoint returned {response.status_code}",
                extra={"grant_type": data["grant_type"]},
            )
            raise TokenExchangeError(f"Identity provider error ({response.status_code})")

        if not response.is_success or "error" in body:
            error = str(body.get("error") or f"http_{response.status_code}")
            description = body.get("error_description")
            logger.warning(
                f"Token endpoint rejected grant: {error}",
                extra={"grant_type": data["grant_type"], "status_code": response.status_code},
            )
            raise TokenError(error, description, provider_status=response.status_code)

        if not body.get("access_token"):
            raise TokenExchangeError("Token response missing access_token")

        try:
            return TokenSet(
                access_token=body["access_token"],
                refresh_token=body.get("refresh_token"),
                token_type=body.get("token_type"),
                expires_in=body.get("expires_in"),
                id_token=body.get("id_token"),
                raw=body,
            )
        except ValidationError as e:
            raise TokenExchangeError("Token response is malformed") from e


def _parse_token_body(response: httpx.Response) -> Dict[str, Any]:
    """Token responses may be JSON or form-encoded."""
    try:
        body = response.json()
    except ValueError:
        body = dict(parse_qsl(response.text))
    return body if isinstance(body, dict) else {}
