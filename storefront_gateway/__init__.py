"""
Storefront Session Gateway
==========================

Fronts the storefront application and delegates authentication to an
external OAuth2/OpenID identity provider.

Packages:
    - auth   : OAuth2 authorization-code flow, signed cookie sessions, remote logout
    - proxy  : forwarding of non-auth requests to the storefront
"""

__version__ = "1.0.0"
