"""
Downstream Proxy - Storefront Request Forwarding
=================================================

Every request not matched by the authentication routes is handed to the
downstream application. When the gateway is deployed in front of a separate
rendering server, DownstreamProxy forwards those requests over HTTP.

Security Model:
---------------
1. The inbound Authorization header is never forwarded
2. When a user is signed in, the session's access token is sent as
   ``Authorization: Bearer <token>``
3. Hop-by-hop headers are stripped in both directions
4. WebSocket connections are closed, not forwarded
"""

import logging
from typing import Iterable, List, Optional, Tuple

import httpx
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.types import Receive, Scope, Send
from starlette.websockets import WebSocketClose

from ..models import AuthenticatedIdentity, ErrorResponse

logger = logging.getLogger("gateway.proxy")

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
})


# ============================================================================
# Header Functions
# ============================================================================

def build_downstream_headers(
    inbound_headers: Iterable[Tuple[str, str]],
    identity: Optional[AuthenticatedIdentity],
) -> List[Tuple[str, str]]:
    """
    Build headers for the downstream request.

    Drops Host, hop-by-hop and inbound Authorization headers, then adds the
    signed-in user's access token.

    Args:
        inbound_headers: Inbound request headers as (name, value) pairs
        identity: Identity attached to the request, if any

    Returns:
        Header pairs for the downstream request
    """
    dropped = HOP_BY_HOP_HEADERS | {"host", "content-length", "authorization"}
    headers = [(k, v) for k, v in inbound_headers if k.lower() not in dropped]

    if identity is not None:
        headers.append(("authorization", f"Bearer {identity.access_token}"))

    return headers


def _response_headers(upstream: httpx.Response) -> List[Tuple[str, str]]:
    # httpx already decoded the body, so its encoding/length no longer apply
    dropped = HOP_BY_HOP_HEADERS | {"content-length", "content-encoding"}
    return [(k, v) for k, v in upstream.headers.multi_items() if k.lower() not in dropped]


# ============================================================================
# Proxy Application
# ============================================================================

class DownstreamProxy:
    """
    ASGI application forwarding requests to the downstream rendering server.

    Args:
        base_url: Downstream base URL (e.g. http://storefront:3000)
        timeout: Request timeout in seconds
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout, connect=10.0)
        self._transport = transport

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "websocket":
            await _reject_websocket(scope, receive, send)
            return
        if scope["type"] != "http":
            return

        request = Request(scope, receive)
        identity = getattr(request.state, "user", None)
        headers = build_downstream_headers(request.headers.items(), identity)
        body = await request.body()

        target = request.url.path
        if request.url.query:
            target = f"{target}?{request.url.query}"

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                transport=self._transport,
                timeout=self.timeout,
            ) as client:
                upstream = await client.request(
                    request.method,
                    target,
                    headers=headers,
                    content=body,
                )
        except httpx.TimeoutException:
            logger.error("Downstream request timeout", extra={"path": request.url.path})
            response = _error_response(504, "gateway_timeout", "Storefront timeout - please try again")
        except httpx.TransportError as e:
            logger.error(f"Downstream network error: {e}", extra={"path": request.url.path})
            response = _error_response(503, "service_unavailable", "Cannot reach storefront")
        else:
            response = Response(content=upstream.content, status_code=upstream.status_code)
            for name, value in _response_headers(upstream):
                response.headers.append(name, value)

        await response(scope, receive, send)


def _error_response(status_code: int, error: str, message: str) -> JSONResponse:
    content = ErrorResponse(error=error, message=message).model_dump(mode="json")
    return JSONResponse(status_code=status_code, content=content)


async def not_found_app(scope: Scope, receive: Receive, send: Send) -> None:
    """Downstream used when no storefront is configured."""
    if scope["type"] == "websocket":
        await _reject_websocket(scope, receive, send)
        return
    if scope["type"] != "http":
        return
    response = PlainTextResponse("Not Found", status_code=404)
    await response(scope, receive, send)


async def _reject_websocket(scope: Scope, receive: Receive, send: Send) -> None:
    # WebSocket upgrades are not forwarded; close the handshake explicitly
    logger.debug("Rejecting WebSocket connection", extra={"path": scope.get("path")})
    await WebSocketClose()(scope, receive, send)
