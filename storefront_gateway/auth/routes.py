"""
Authentication routes for signin, signup, OAuth2 callback and logout.

This module wires the OAuth2 authorization-code flow and the remote logout
into HTTP endpoints. The OAuth2 client and logout invoker are created once by
the application factory and read from ``app.state``.
"""

import html
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import HTMLResponse, RedirectResponse

from ..models import LoginAction
from .logout import RemoteLogoutError, RemoteLogoutInvoker
from .oauth2 import OAuth2Client, OAuth2Error
from .utils import decode_opaque_id, serialize_identity

logger = logging.getLogger("gateway.auth.routes")


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(
    tags=["authentication"],
)


# =============================================================================
# Dependencies
# =============================================================================

def get_oauth2_client(request: Request) -> OAuth2Client:
    """
    Dependency to get the OAuth2 client from app state.

    Raises:
        HTTPException: If the application factory did not configure a client
    """
    client = getattr(request.app.state, "oauth2_client", None)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="OAuth2 client not initialized",
        )
    return client


def get_logout_invoker(request: Request) -> RemoteLogoutInvoker:
    """Dependency to get the remote logout invoker from app state."""
    invoker = getattr(request.app.state, "logout_invoker", None)
    if invoker is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Logout invoker not initialized",
        )
    return invoker


# =============================================================================
# Login Endpoints
# =============================================================================

def _initiate(request: Request, client: OAuth2Client, login_action: LoginAction) -> RedirectResponse:
    """
    Remember where the user came from, then redirect to the identity provider.
    """
    referer = request.headers.get("referer")
    if referer:
        request.session["redirectTo"] = referer
    else:
        request.session.pop("redirectTo", None)

    authorization_url = client.authorize(request.session, login_action)
    logger.info("Redirecting to identity provider", extra={"login_action": login_action.value})
    return RedirectResponse(url=authorization_url, status_code=status.HTTP_302_FOUND)


@auth_router.get("/signin", response_class=RedirectResponse)
async def signin(request: Request, client: OAuth2Client = Depends(get_oauth2_client)):
    """Begin the signin flow."""
    return _initiate(request, client, LoginAction.SIGNIN)


@auth_router.get("/signup", response_class=RedirectResponse)
async def signup(request: Request, client: OAuth2Client = Depends(get_oauth2_client)):
    """Begin the signup flow."""
    return _initiate(request, client, LoginAction.SIGNUP)


# =============================================================================
# Callback Endpoint
# =============================================================================

@auth_router.get("/callback")
async def callback(request: Request, client: OAuth2Client = Depends(get_oauth2_client)):
    """
    Handle the OAuth2 redirect back from the identity provider.

    This endpoint:
    1. Verifies the state parameter against the session
    2. Exchanges the authorization code for tokens
    3. Stores the serialized identity in the session
    4. Redirects to the page the login started from (or "/")

    Any protocol failure renders an error page; it never redirects.
    """
    try:
        identity = await client.complete(request.session, request.query_params)
    except OAuth2Error as e:
        logger.warning(
            f"Authentication failed: {e.message}",
            extra={"error_type": type(e).__name__, "status_code": e.status_code},
        )
        return render_error_page(
            title=e.title,
            message=e.message,
            show_retry=True,
            status_code=e.status_code,
        )

    request.session["user"] = serialize_identity(identity)
    redirect_to = request.session.pop("redirectTo", None) or "/"
    return RedirectResponse(url=redirect_to, status_code=status.HTTP_302_FOUND)


# =============================================================================
# Logout Endpoint
# =============================================================================

@auth_router.get("/logout/{user_id:path}")
async def logout(
    request: Request,
    user_id: str,
    invoker: RemoteLogoutInvoker = Depends(get_logout_invoker),
):
    """
    Log the user out at the identity provider, then locally.

    The local identity is only cleared after the provider call went through;
    on failure the session is left as it was.
    """
    decoded = decode_opaque_id(user_id)
    if decoded is None or not decoded.id:
        logger.warning("Logout requested with an unresolvable user identifier")
        return render_error_page(
            title="Invalid Request",
            message="Unrecognized user identifier.",
            show_retry=False,
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    try:
        await invoker.logout(decoded.id)
    except RemoteLogoutError as e:
        return render_error_page(
            title="Logout Failed",
            message=e.message,
            show_retry=False,
            status_code=e.status_code,
        )

    request.session.pop("user", None)
    logger.info("User logged out", extra={"namespace": decoded.namespace})
    return RedirectResponse(
        url=request.headers.get("referer") or "/",
        status_code=status.HTTP_302_FOUND,
    )


# =============================================================================
# HTML Response Templates
# =============================================================================

def render_error_page(
    title: str,
    message: str,
    show_retry: bool = True,
    status_code: int = 400,
) -> HTMLResponse:
    """
    Render error page for authentication failures.

    Args:
        title: Error title
        message: Error message (escaped; may contain provider text)
        show_retry: Whether to show a link back to /signin
        status_code: HTTP status code

    Returns:
        HTMLResponse with error information
    """
    title = html.escape(title)
    message = html.escape(message)

    retry_button = """
        <a href="/signin" class="button">Try Again</a>
    """ if show_retry else ""

    html_content = f"""
    <!DOCTYPE html>
    <html lang="en">
    <head>
        <meta charset="UTF-8">
        <meta name="viewport" content="width=device-width, initial-scale=1.0">
        <title>{title}</title>
        <style>
            body {{
                font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Helvetica, Arial, sans-serif;
                display: flex;
                align-items: center;
                justify-content: center;
                min-height: 100vh;
                margin: 0;
                background: #f3f4f6;
            }}
            .container {{
                background: white;
                border-radius: 12px;
                padding: 40px;
                max-width: 500px;
                text-align: center;
                box-shadow: 0 10px 40px rgba(0,0,0,0.1);
            }}
            h1 {{ color: #1f2937; font-size: 24px; margin-bottom: 16px; }}
            .message {{ color: #6b7280; font-size: 16px; line-height: 1.6; margin-bottom: 32px; }}
            .button {{
                display: inline-block;
                background: #1f2937;
                color: white;
                padding: 14px 32px;
                border-radius: 8px;
                text-decoration: none;
                font-weight: 600;
            }}
        </style>
    </head>
    <body>
        <div class="container">
            <h1>{title}</h1>
            <p class="message">{message}</p>
            {retry_button}
        </div>
    </body>
    </html>
    """

    return HTMLResponse(content=html_content, status_code=status_code)
