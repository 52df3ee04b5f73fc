"""
FastAPI Gateway Application Factory
===================================

Main entry point for the session gateway that sits in front of the
storefront and delegates authentication to the OAuth2 identity provider.

Architecture:
    Browser → Gateway (this service) → Storefront rendering server
                  ↘ Identity provider (authorize / token / logout)

Request pipeline (outermost first):
    1. SessionMiddleware   : verify the signed session cookie → request.session
    2. IdentityMiddleware  : deserialize session["user"]      → request.state.user
    3. Routing             : /signin, /signup, /callback, /logout/{user_id}
    4. Downstream          : every other request, forwarded unchanged

Running the Service:
    storefront-gateway

    or, with uvicorn directly:
        uvicorn storefront_gateway.main:create_app --factory --host 0.0.0.0 --port 4000
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.types import ASGIApp

from .auth.logout import RemoteLogoutInvoker
from .auth.oauth2 import OAuth2Client, OAuth2ClientConfig
from .auth.routes import auth_router
from .auth.session import IdentityMiddleware, SessionCodec, SessionMiddleware
from .config import Settings, get_settings
from .models import ErrorResponse
from .proxy import DownstreamProxy, not_found_app


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Log startup and shutdown. The gateway owns no long-lived resources."""
    logger = logging.getLogger("gateway.main")
    settings: Settings = app.state.settings

    logger.info(
        "Starting storefront gateway",
        extra={
            "authorization_url": settings.OAUTH2_AUTH_URL,
            "callback_url": settings.OAUTH2_REDIRECT_URL,
            "downstream_url": settings.DOWNSTREAM_URL,
            "session_keys": len(settings.session_keys),
        }
    )

    yield

    logger.info("Storefront gateway shutdown complete")


def create_app(
    settings: Optional[Settings] = None,
    downstream: Optional[ASGIApp] = None,
    *,
    oauth2_client: Optional[OAuth2Client] = None,
    logout_invoker: Optional[RemoteLogoutInvoker] = None,
) -> FastAPI:
    """
    Application factory function.

    Args:
        settings: Settings to use (defaults to the process-wide singleton)
        downstream: ASGI app receiving every non-auth request. Defaults to a
            DownstreamProxy when DOWNSTREAM_URL is set, else a 404 app.
        oauth2_client: Pre-built OAuth2 client (defaults to one built from settings)
        logout_invoker: Pre-built logout invoker (defaults to one built from settings)

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()

    if downstream is None:
        if settings.DOWNSTREAM_URL:
            downstream = DownstreamProxy(
                settings.DOWNSTREAM_URL,
                timeout=settings.DOWNSTREAM_TIMEOUT_SECONDS,
            )
        else:
            downstream = not_found_app

    app = FastAPI(
        title="Storefront Session Gateway",
        description="OAuth2 session gateway in front of the storefront",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    app.state.settings = settings
    app.state.oauth2_client = oauth2_client or OAuth2Client(OAuth2ClientConfig.from_settings(settings))
    app.state.logout_invoker = logout_invoker or RemoteLogoutInvoker.from_settings(settings)

    # Added innermost first: the session must be attached before the identity
    app.add_middleware(IdentityMiddleware)
    app.add_middleware(
        SessionMiddleware,
        codec=SessionCodec(settings.session_keys, settings.session_max_age_seconds),
        session_cookie=settings.SESSION_COOKIE_NAME,
        https_only=settings.SESSION_HTTPS_ONLY,
    )

    app.include_router(auth_router)

    # Everything the auth routes do not match goes to the storefront
    app.mount("/", downstream, name="downstream")

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a standardized error response.
        """
        logger = logging.getLogger("gateway.main")
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )

        error = ErrorResponse(
            error="internal_server_error",
            message="An unexpected error occurred",
        )
        return JSONResponse(status_code=500, content=error.model_dump(mode="json"))

    return app


def main() -> None:
    """
    Console entry point.

    Configuration errors and a failing application setup are fatal: they are
    logged and the process exits with status 1.
    """
    try:
        settings = get_settings()
    except ValidationError as e:
        setup_logging()
        logging.getLogger("gateway.main").critical(f"Invalid configuration: {e}")
        sys.exit(1)

    setup_logging(settings.LOG_LEVEL)
    logger = logging.getLogger("gateway.main")

    try:
        app = create_app(settings)
    except Exception as e:
        logger.critical(f"Failed to initialize gateway: {e}", exc_info=True)
        sys.exit(1)

    uvicorn.run(
        app,
        host=settings.GATEWAY_HOST,
        port=settings.GATEWAY_PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
