"""
JWT Session Management Module
==============================

Handles creation and verification of the session JWTs the middleware issues
after a successful OIDC callback.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

from ticketstate.config import Settings

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================

class JWTSessionError(Exception):
    """Base exception for JWT session errors"""
    pass


# =============================================================================
# Token Creation
# =============================================================================

def create_session_jwt(claims: Dict[str, Any], settings: Settings) -> str:
    """
    Create a session JWT with the provided claims.

    Args:
        claims: Claims to include. 'sub' and 'email' are required.
        settings: Application settings (secret, algorithm, expiry, issuer)

    Returns:
        Encoded JWT string

    Raises:
        JWTSessionError: If required claims are missing
    """
    payload = claims.copy()

    if not payload.get("sub"):
        raise JWTSessionError("Missing required claim: 'sub' (subject/user ID)")
    if not payload.get("email"):
        raise JWTSessionError("Missing required claim: 'email'")

    now = datetime.now(timezone.utc)
    payload.update({
        "iat": now,
        "exp": now + timedelta(minutes=settings.SESSION_JWT_EXPIRY_MINUTES),
        "iss": settings.JWT_ISSUER,
    })

    token = jwt.encode(payload, settings.SESSION_JWT_SECRET, algorithm=settings.SESSION_JWT_ALGORITHM)

    logger.debug(
        "Created session JWT",
        extra={
            "user_id": payload.get("sub"),
            "expires_in_minutes": settings.SESSION_JWT_EXPIRY_MINUTES
        }
    )
    return token


def create_session_jwt_from_id_token(
    id_token_claims: Dict[str, Any],
    email: str,
    settings: Settings,
    additional_claims: Optional[Dict[str, Any]] = None
) -> str:
    """
    Create session JWT from verified OIDC ID token claims.
    """
    session_claims = {
        "sub": id_token_claims.get("sub") or id_token_claims.get("oid"),
        "email": email,
        "name": id_token_claims.get("name", ""),
    }
    if additional_claims:
        session_claims.update(additional_claims)

    return create_session_jwt(session_claims, settings)


# =============================================================================
# Token Verification
# =============================================================================

def verify_session_jwt(token: str, settings: Settings) -> Dict[str, Any]:
    """
    Verify and decode a session JWT.

    Raises:
        JWTSessionError: If the token is missing, expired, or invalid
    """
    if not token:
        raise JWTSessionError("No authentication token provided")

    try:
        return jwt.decode(
            token,
            settings.SESSION_JWT_SECRET,
            algorithms=[settings.SESSION_JWT_ALGORITHM],
            issuer=settings.JWT_ISSUER,
            options={"require": ["exp", "iat", "sub", "email"]},
        )
    except ExpiredSignatureError as e:
        logger.warning("Session JWT expired")
        raise JWTSessionError("Token has expired") from e
    except InvalidTokenError as e:
        logger.warning(f"Invalid session JWT: {e}")
        raise JWTSessionError(f"Invalid token: {e}") from e


def extract_token_from_header(authorization: Optional[str]) -> str:
    """
    Extract Bearer token from Authorization header.

    Raises:
        JWTSessionError: If header is missing or malformed
    """
    if not authorization:
        raise JWTSessionError("Missing Authorization header")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise JWTSessionError("Invalid Authorization header format. Expected: 'Bearer <token>'")

    return parts[1]


__all__ = [
    "JWTSessionError",
    "create_session_jwt",
    "create_session_jwt_from_id_token",
    "verify_session_jwt",
    "extract_token_from_header",
]
