"""
Authentication Package

Main Components:
----------------
- oauth2.py: OAuth2 authorization-code client (authorize, callback, refresh)
- session.py: Signed cookie sessions and identity attachment middleware
- logout.py: Remote logout against the identity provider
- routes.py: /signin, /signup, /callback and /logout/{user_id}
- utils.py: Opaque identifier and identity codecs

Usage:
------
    from storefront_gateway.auth import auth_router
    app.include_router(auth_router)
"""

from .routes import auth_router

__all__ = ["auth_router"]
