"""
Authentication utilities for OIDC token verification and JWKS management.

This module handles:
- Fetching and caching identity provider JWKS (JSON Web Key Set) per scheme
- Verifying ID tokens issued to an OIDC scheme
- PKCE, nonce, email-domain and return URL helpers
"""

import base64
import hashlib
import logging
import secrets
import time
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import httpx
from jose import JWTError, jwk, jwt

from ticketstate.auth.schemes import OIDCSchemeOptions

logger = logging.getLogger(__name__)


# =============================================================================
# JWKS Cache
# =============================================================================

# jwks_uri -> (jwks document, fetched at)
_jwks_cache: Dict[str, Tuple[Dict[str, Any], float]] = {}


async def fetch_jwks(jwks_uri: str, cache_seconds: int = 3600, force_refresh: bool = False) -> Dict[str, Any]:
    """
    Fetch a JWKS document with caching.

    Args:
        jwks_uri: JWKS endpoint of the scheme's authority
        cache_seconds: How long a fetched document is reused
        force_refresh: If True, bypass cache and fetch fresh JWKS

    Returns:
        JWKS document containing keys

    Raises:
        httpx.HTTPError: If JWKS endpoint is unreachable
        ValueError: If response is invalid
    """
    now = time.time()
    cached = _jwks_cache.get(jwks_uri)
    if not force_refresh and cached and (now - cached[1]) < cache_seconds:
        return cached[0]

    async with httpx.AsyncClient() as client:
        response = await client.get(jwks_uri, timeout=10.0)
        response.raise_for_status()
        jwks_data = response.json()

    if "keys" not in jwks_data:
        raise ValueError("Invalid JWKS response: missing 'keys' field")

    _jwks_cache[jwks_uri] = (jwks_data, now)
    logger.debug(f"Fetched JWKS from {jwks_uri}", extra={"key_count": len(jwks_data["keys"])})
    return jwks_data


def clear_jwks_cache() -> None:
    _jwks_cache.clear()


def get_signing_key(token: str, jwks: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Find the key in a JWKS that matches the token's `kid` header.

    Raises:
        JWTError: If token header is malformed or has no kid
    """
    try:
        unverified_header = jwt.get_unverified_header(token)
    except JWTError as e:
        raise JWTError(f"Failed to decode token header: {e}")

    kid = unverified_header.get("kid")
    if not kid:
        raise JWTError("Token header missing 'kid' (Key ID)")

    for key in jwks.get("keys", []):
        if key.get("kid") == kid:
            return key

    return None


async def verify_id_token(id_token: str, options: OIDCSchemeOptions, jwks_cache_seconds: int = 3600) -> Dict[str, Any]:
    """
    Verify and decode an ID token issued to an OIDC scheme.

    Checks signature (via the scheme's JWKS, refreshing once on unknown kid),
    audience (client_id), issuer, and expiry.

    Returns:
        Dictionary of verified token claims

    Raises:
        JWTError: If token is invalid, expired, or signature doesn't match
        httpx.HTTPError: If JWKS endpoint is unreachable
    """
    jwks = await fetch_jwks(options.jwks_uri, jwks_cache_seconds)
    signing_key = get_signing_key(id_token, jwks)
    if not signing_key:
        # Keys may have rotated
        jwks = await fetch_jwks(options.jwks_uri, jwks_cache_seconds, force_refresh=True)
        signing_key = get_signing_key(id_token, jwks)
        if not signing_key:
            raise JWTError("Unable to find matching signing key in JWKS")

    try:
        public_key = jwk.construct(signing_key, algorithm=signing_key.get("alg", "RS256"))
    except Exception as e:
        raise JWTError(f"Failed to construct public key from JWK: {e}")

    try:
        return jwt.decode(
            id_token,
            public_key.to_pem().decode("utf-8"),
            algorithms=["RS256"],
            audience=options.client_id,
            issuer=options.issuer,
            options={
                "verify_at_hash": False,
                "leeway": 10,
            }
        )
    except jwt.ExpiredSignatureError:
        raise JWTError("ID token has expired")
    except jwt.JWTClaimsError as e:
        raise JWTError(f"Invalid token claims: {e}")


# =============================================================================
# PKCE / Nonce Helpers
# =============================================================================

def generate_code_verifier() -> str:
    """Cryptographically random PKCE code verifier (43 characters)."""
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("utf-8").rstrip("=")


def generate_code_challenge(verifier: str) -> str:
    """S256 code challenge for a PKCE verifier."""
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8").rstrip("=")


def validate_nonce(claims: Dict[str, Any], expected_nonce: Optional[str]) -> bool:
    """
    Nonce must match when one was issued; absent on both sides is accepted.
    """
    token_nonce = claims.get("nonce")
    if not token_nonce and not expected_nonce:
        return True
    if token_nonce and expected_nonce:
        return secrets.compare_digest(token_nonce, expected_nonce)
    return False


# =============================================================================
# Claim Helpers
# =============================================================================

def extract_email_from_claims(claims: Dict[str, Any]) -> Optional[str]:
    """
    Extract email address from ID token claims.

    Tries preferred_username, upn, email and unique_name in that order.
    """
    for claim_name in ["preferred_username", "upn", "email", "unique_name"]:
        email = claims.get(claim_name)
        if email and "@" in email:
            return email.lower().strip()

    return None


def validate_email_domain(email: Optional[str], allowed_domains: List[str]) -> bool:
    """
    Check if email domain is in the allowed list. An empty list allows any domain.
    """
    if not email or "@" not in email:
        return False
    if not allowed_domains:
        return True

    domain = email.split("@")[-1].lower().strip()
    return domain in [d.lower() for d in allowed_domains]


def is_safe_return_url(return_url: Optional[str], allowed_origins: List[str]) -> bool:
    """
    Check a post-login redirect target.

    Accepts a local path ("/dashboard") or an absolute http(s) URL whose
    origin is in allowed_origins. Scheme-relative ("//host") and
    backslash forms are rejected.
    """
    if not return_url or "\\" in return_url:
        return False

    parts = urlsplit(return_url)
    if not parts.scheme and not parts.netloc:
        return return_url.startswith("/")

    if parts.scheme not in ("http", "https") or not parts.netloc:
        return False

    origin = f"{parts.scheme}://{parts.netloc}".lower()
    return origin in [o.rstrip("/").lower() for o in allowed_origins]
