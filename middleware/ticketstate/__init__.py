"""
Ticket State Middleware

FastAPI authentication middleware that runs OIDC sign-in flows for named
schemes while keeping sign-in state server-side: the browser only carries
an encrypted ticket that references AuthenticationProperties stored in a
shared cache.

Packages:
- state: ticketed/protected state formats, named binding, cache, protection
- auth: OIDC routes, scheme options, ID token and session JWT handling
"""

__version__ = "1.0.0"
