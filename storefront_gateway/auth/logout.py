"""
Remote logout against the identity provider.

The provider keeps its own login session; a local logout alone would let the
next /signin complete silently. The gateway therefore asks the provider to end
the user's session first and only clears the local identity once the call went
through.
"""

import logging
from typing import Optional

import httpx

from ..config import Settings

logger = logging.getLogger("gateway.auth.logout")


class RemoteLogoutError(Exception):
    """The identity provider's logout endpoint could not confirm the logout."""

    status_code = 502

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class RemoteLogoutInvoker:
    """
    Calls ``<IDP_HOST>logout?userId=<id>``.

    Args:
        logout_url: Logout endpoint (IdP host + "logout")
        timeout: Request timeout in seconds
        require_success_status: Also fail on non-2xx responses. By default only
            transport errors fail the logout.
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        logout_url: str,
        timeout: float = 10.0,
        require_success_status: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.logout_url = logout_url
        self.timeout = timeout
        self.require_success_status = require_success_status
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "RemoteLogoutInvoker":
        return cls(
            logout_url=settings.idp_logout_url,
            timeout=settings.OAUTH2_TIMEOUT_SECONDS,
            require_success_status=settings.OAUTH2_LOGOUT_REQUIRE_SUCCESS,
        )

    async def logout(self, user_id: str) -> bool:
        """
        End the user's session at the identity provider.

        Returns:
            True once the provider call completed

        Raises:
            RemoteLogoutError: On transport failure (or non-2xx in strict mode)
        """
        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=httpx.Timeout(self.timeout),
            ) as client:
                response = await client.get(self.logout_url, params={"userId": user_id})
        except httpx.TransportError as e:
            logger.error(f"Identity provider logout failed: {e}")
            raise RemoteLogoutError("Unable to reach the identity provider to log out") from e

        if not response.is_success:
            logger.warning(
                f"Identity provider logout returned {response.status_code}",
                extra={"strict": self.require_success_status},
            )
            if self.require_success_status:
                raise RemoteLogoutError(
                    f"Identity provider rejected the logout ({response.status_code})"
                )

        return True
