"""
Proxy Package
=============

Forwards requests not handled by the authentication routes to the
downstream storefront rendering server.

Main Components:
----------------
- routes.py: DownstreamProxy ASGI app and header helpers

Usage:
------
    from storefront_gateway.proxy import DownstreamProxy
    app.mount("/", DownstreamProxy("http://storefront:3000"))
"""

from .routes import DownstreamProxy, not_found_app

__all__ = ["DownstreamProxy", "not_found_app"]
