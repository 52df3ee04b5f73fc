"""
Signed Cookie Session Module
============================

Client-held sessions for the gateway. The whole session dict lives in a
single cookie, signed as an HS256 JWT, so any gateway replica can serve any
request without sticky sessions or a server-side session table.

Components:
- SessionCodec: signs/verifies session payloads with rotating keys
- SessionMiddleware: attaches ``request.session`` and writes the cookie back
- IdentityMiddleware: deserializes ``session["user"]`` into ``request.state.user``

Key rotation:
    Keys are ordered newest first. New cookies are always signed with the
    first key; every key is accepted for verification, and a cookie verified
    by an older key is re-signed with the first key on the way out, keeping
    its original expiry.
"""

import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidSignatureError, InvalidTokenError
from starlette.datastructures import MutableHeaders
from starlette.requests import HTTPConnection
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from ..models import ErrorResponse
from .utils import IdentityDeserializationError, deserialize_identity

logger = logging.getLogger("gateway.auth.session")

SESSION_ALGORITHM = "HS256"


# =============================================================================
# Session Codec
# =============================================================================

class SessionCodec:
    """
    Sign and verify session payloads.

    Args:
        keys: Signing keys, newest first. Must not be empty.
        max_age: Session lifetime in seconds, stored as the ``exp`` claim.
        clock: Time source for ``iat``/``exp`` when signing.
    """

    def __init__(
        self,
        keys: Sequence[str],
        max_age: int,
        clock: Callable[[], float] = time.time,
    ):
        if not keys:
            raise ValueError("At least one session key is required")
        self.keys: List[str] = list(keys)
        self.max_age = max_age
        self._clock = clock

    def dumps(self, data: Dict[str, Any], expires_at: Optional[int] = None) -> str:
        """
        Sign ``data`` with the primary key.

        ``expires_at`` keeps an existing expiry instead of starting a new
        lifetime.
        """
        now = int(self._clock())
        payload = {
            "data": data,
            "iat": now,
            "exp": expires_at if expires_at is not None else now + self.max_age,
        }
        return jwt.encode(payload, self.keys[0], algorithm=SESSION_ALGORITHM)

    def remaining(self, expires_at: Optional[int] = None) -> int:
        """Cookie Max-Age in seconds for a session expiring at ``expires_at``."""
        if expires_at is None:
            return self.max_age
        return max(0, expires_at - int(self._clock()))

    def verify(self, token: str) -> Tuple[Dict[str, Any], Optional[int], Optional[int]]:
        """
        Verify a session token against every key.

        Returns:
            (session data, index of the key that verified it, ``exp`` claim).
            Any failure (bad signature for all keys, malformed, expired)
            yields ({}, None, None).
        """
        for index, key in enumerate(self.keys):
            try:
                payload = jwt.decode(
                    token,
                    key,
                    algorithms=[SESSION_ALGORITHM],
                    options={"require": ["exp", "iat"]},
                )
            except InvalidSignatureError:
                continue
            except ExpiredSignatureError:
                logger.debug("Session cookie expired")
                return {}, None, None
            except InvalidTokenError as e:
                logger.debug(f"Session cookie rejected: {e}")
                return {}, None, None

            data = payload.get("data")
            if not isinstance(data, dict):
                logger.debug("Session cookie payload is not an object")
                return {}, None, None
            return data, index, payload["exp"]

        logger.debug("Session cookie signature did not match any key")
        return {}, None, None

    def loads(self, token: str) -> Dict[str, Any]:
        """Verify a session token, returning an empty session on any failure."""
        data, _, _ = self.verify(token)
        return data


# =============================================================================
# Session Middleware
# =============================================================================

class SessionMiddleware:
    """
    Pure ASGI middleware exposing the signed cookie session as ``scope["session"]``.

    The cookie is written back only when the session changed or was verified
    with a rotated (non-primary) key, and is expired when a session that
    existed on the way in is emptied.
    """

    def __init__(
        self,
        app: ASGIApp,
        codec: SessionCodec,
        session_cookie: str = "storefront-session",
        path: str = "/",
        same_site: str = "lax",
        https_only: bool = False,
    ) -> None:
        self.app = app
        self.codec = codec
        self.session_cookie = session_cookie
        self.path = path
        self.security_flags = "httponly; samesite=" + same_site
        if https_only:
            self.security_flags += "; secure"

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        connection = HTTPConnection(scope)
        initial_session_was_empty = True
        needs_resign = False
        expires_at = None

        token = connection.cookies.get(self.session_cookie)
        if token:
            data, key_index, expires_at = self.codec.verify(token)
            scope["session"] = data
            initial_session_was_empty = not data
            needs_resign = bool(key_index)
        else:
            scope["session"] = {}

        initial_snapshot = _snapshot(scope["session"])

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                session = scope["session"]
                if session:
                    changed = _snapshot(session) != initial_snapshot
                    if needs_resign or changed:
                        # a re-sign alone keeps the original expiry
                        keep_expiry = None if changed else expires_at
                        headers = MutableHeaders(scope=message)
                        header_value = "{cookie}={data}; path={path}; Max-Age={max_age}; {flags}".format(
                            cookie=self.session_cookie,
                            data=self.codec.dumps(session, expires_at=keep_expiry),
                            path=self.path,
                            max_age=self.codec.remaining(keep_expiry),
                            flags=self.security_flags,
                        )
                        headers.append("Set-Cookie", header_value)
                elif not initial_session_was_empty or token:
                    headers = MutableHeaders(scope=message)
                    header_value = "{cookie}=null; path={path}; expires=Thu, 01 Jan 1970 00:00:00 GMT; {flags}".format(
                        cookie=self.session_cookie,
                        path=self.path,
                        flags=self.security_flags,
                    )
                    headers.append("Set-Cookie", header_value)
            await send(message)

        await self.app(scope, receive, send_wrapper)


def _snapshot(session: Dict[str, Any]) -> str:
    return json.dumps(session, sort_keys=True, default=str)


# =============================================================================
# Identity Middleware
# =============================================================================

class IdentityMiddleware:
    """
    Attach the authenticated identity from the session to ``request.state.user``.

    Must run inside SessionMiddleware. A ``user`` value that cannot be
    deserialized ends the request with a 500: an expired or unsigned cookie
    never reaches this point, so a corrupt identity means tampering or a bug,
    not an anonymous visitor.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        state = scope.setdefault("state", {})
        state["user"] = None

        payload = scope.get("session", {}).get("user")
        if payload:
            try:
                state["user"] = deserialize_identity(payload)
            except IdentityDeserializationError as e:
                logger.error(
                    f"Session identity could not be deserialized: {e}",
                    extra={"path": scope.get("path")},
                )
                error = ErrorResponse(
                    error="invalid_session_identity",
                    message="The session identity is corrupt",
                )
                response = JSONResponse(status_code=500, content=error.model_dump(mode="json"))
                await response(scope, receive, send)
                return

        await self.app(scope, receive, send)
