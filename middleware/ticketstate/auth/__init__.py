"""
Authentication Package

This package handles the OIDC sign-in flow for every configured
authentication scheme.

Modules:
- routes: /auth/{scheme}/login, /auth/{scheme}/callback, /auth/me
- schemes: OIDC scheme options and scheme registry wiring
- utils: JWKS fetching, caching, ID token verification, PKCE/nonce helpers
- session: Session JWT issuance and validation

The authentication flow:
1. Client opens /auth/{scheme}/login
2. Middleware caches the sign-in state and sends only an encrypted ticket
   to the identity provider as the OAuth `state`
3. The identity provider redirects back to /auth/{scheme}/callback
4. Middleware resolves the ticket, verifies the ID token, issues a session JWT
"""

from .routes import auth_router

__all__ = [
    "auth_router",
]
