"""
Authentication routes for OIDC login and callback handling.

This module implements the OAuth 2.0 / OIDC authorization code flow for
every scheme in the scheme registry. The OAuth `state` parameter carries
the scheme's protected state: with cache-backed state it is only an
encrypted ticket referencing the server-side AuthenticationProperties.
"""

import logging
import secrets
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from jose import JWTError
from starlette.concurrency import run_in_threadpool

from ticketstate.auth.schemes import OIDCSchemeOptions
from ticketstate.auth.session import (
    JWTSessionError,
    create_session_jwt_from_id_token,
    extract_token_from_header,
    verify_session_jwt,
)
from ticketstate.auth.utils import (
    extract_email_from_claims,
    generate_code_challenge,
    is_safe_return_url,
    generate_code_verifier,
    validate_email_domain,
    validate_nonce,
    verify_id_token,
)
from ticketstate.config import Settings
from ticketstate.models import AuthenticationProperties, ErrorResponse, TokenResponse, UserProfile
from ticketstate.state.exceptions import InvalidTicketError
from ticketstate.state.options import OptionsRegistry

logger = logging.getLogger(__name__)


STATE_PURPOSE = "oidc.state"
NONCE_KEY = "nonce"
CODE_VERIFIER_KEY = "code_verifier"
SCHEME_KEY = ".scheme"


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(
    prefix="/auth",
    tags=["authentication"],
)


# =============================================================================
# Dependencies
# =============================================================================

def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_scheme_registry(request: Request) -> OptionsRegistry:
    return request.app.state.schemes


def get_scheme_options(
    scheme: str,
    registry: OptionsRegistry = Depends(get_scheme_registry),
) -> OIDCSchemeOptions:
    """Resolve the options for a scheme named in the path; 404 if unknown."""
    if scheme not in registry:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown authentication scheme: {scheme}",
        )
    return registry.get(scheme)


def _error(error: str, message: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, message=message).model_dump(),
    )


# =============================================================================
# Login Endpoint
# =============================================================================

@auth_router.get("/{scheme}/login", response_class=RedirectResponse)
async def login(
    scheme: str,
    return_url: str = Query("/", description="Where to send the user after sign-in"),
    options: OIDCSchemeOptions = Depends(get_scheme_options),
    settings: Settings = Depends(get_app_settings),
):
    """
    Initiate the OIDC login flow for a scheme.

    1. Generates nonce and PKCE verifier
    2. Protects them (with the return URL) through the scheme's state format
    3. Redirects to the authorization endpoint with state=<protected state>

    return_url must be a local path or sit under one of ALLOWED_ORIGINS.
    """
    if not is_safe_return_url(return_url, settings.allowed_origins_list):
        return _error("invalid_request", "return_url must be a relative path or an allowed origin")

    nonce = secrets.token_urlsafe(32)
    items: Dict[str, Optional[str]] = {NONCE_KEY: nonce, SCHEME_KEY: scheme}

    params = {
        "client_id": options.client_id,
        "response_type": "code",
        "redirect_uri": options.redirect_uri,
        "response_mode": "query",
        "scope": options.scope,
        "nonce": nonce,
    }

    if options.use_pkce:
        code_verifier = generate_code_verifier()
        items[CODE_VERIFIER_KEY] = code_verifier
        params["code_challenge"] = generate_code_challenge(code_verifier)
        params["code_challenge_method"] = "S256"

    properties = AuthenticationProperties.for_redirect(return_url, **items)
    params["state"] = await run_in_threadpool(options.formatter.protect, properties, STATE_PURPOSE)

    logger.info(f"Starting login for scheme {scheme}", extra={"scheme": scheme})

    return RedirectResponse(url=f"{options.authorization_endpoint}?{urlencode(params)}", status_code=302)


# =============================================================================
# Callback Endpoint
# =============================================================================

@auth_router.get("/{scheme}/callback", response_model=TokenResponse)
async def callback(
    scheme: str,
    code: Optional[str] = Query(None, description="Authorization code from the identity provider"),
    state: Optional[str] = Query(None, description="Protected state issued at login"),
    error: Optional[str] = Query(None, description="Error code if authentication failed"),
    error_description: Optional[str] = Query(None, description="Error description"),
    options: OIDCSchemeOptions = Depends(get_scheme_options),
    settings: Settings = Depends(get_app_settings),
):
    """
    Handle the OAuth callback for a scheme.

    1. Resolves the state (invalid ticket and expired state are reported separately)
    2. Exchanges the authorization code for tokens
    3. Verifies the ID token and its nonce
    4. Validates the email domain and issues a session JWT
    """
    if error:
        return _error("authentication_failed", error_description or error)

    if not code or not state:
        return _error("invalid_request", "Missing required parameters (code or state)")

    try:
        properties = await run_in_threadpool(options.formatter.unprotect, state, STATE_PURPOSE)
    except InvalidTicketError:
        return _error("invalid_state", "Invalid state parameter. This may be a CSRF attack.")

    if properties is None:
        return _error("state_expired", "Sign-in state has expired. Please start the login again.")

    if properties.items.get(SCHEME_KEY) != scheme:
        return _error("invalid_state", "State was issued for a different scheme.")

    try:
        token_response = await _exchange_code_for_tokens(
            options,
            code=code,
            code_verifier=properties.items.get(CODE_VERIFIER_KEY),
        )
    except (httpx.HTTPError, ValueError) as e:
        logger.warning(f"Token exchange failed for scheme {scheme}: {e}")
        return _error("token_exchange_failed", f"Unable to redeem authorization code: {e}", 502)

    try:
        claims = await verify_id_token(token_response["id_token"], options, settings.JWKS_CACHE_SECONDS)
    except (JWTError, httpx.HTTPError, ValueError) as e:
        logger.warning(f"ID token verification failed for scheme {scheme}: {e}")
        return _error("invalid_id_token", f"Unable to verify identity token: {e}", 401)

    if not validate_nonce(claims, properties.items.get(NONCE_KEY)):
        return _error("nonce_mismatch", "Nonce mismatch. Please try again.", 401)

    email = extract_email_from_claims(claims)
    if not email:
        return _error("email_not_found", "Unable to retrieve email address from your account.", 400)

    if not validate_email_domain(email, settings.allowed_domains_list):
        return _error("access_denied", "Your email domain is not authorized.", 403)

    session_token = create_session_jwt_from_id_token(
        id_token_claims=claims,
        email=email,
        settings=settings,
        additional_claims={"scheme": scheme, "authenticated_at": claims.get("iat")},
    )

    logger.info(f"Login completed for scheme {scheme}", extra={"scheme": scheme, "user_id": claims.get("sub")})

    return TokenResponse(
        access_token=session_token,
        expires_in=settings.SESSION_JWT_EXPIRY_MINUTES * 60,
        redirect_uri=properties.redirect_uri,
    )


# =============================================================================
# Current User Endpoint
# =============================================================================

@auth_router.get("/me", response_model=UserProfile)
async def me(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_app_settings),
):
    """Return the profile carried by the caller's session JWT."""
    try:
        claims = verify_session_jwt(extract_token_from_header(authorization), settings)
    except JWTSessionError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )

    return UserProfile(
        user_id=claims["sub"],
        email=claims["email"],
        name=claims.get("name"),
        scheme=claims.get("scheme"),
    )


# =============================================================================
# Token Exchange Helper
# =============================================================================

async def _exchange_code_for_tokens(
    options: OIDCSchemeOptions,
    code: str,
    code_verifier: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Exchange authorization code for access and ID tokens.

    Raises:
        httpx.HTTPError: If token exchange fails
        ValueError: If response is invalid
    """
    payload = {
        "client_id": options.client_id,
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": options.redirect_uri,
        "scope": options.scope,
    }
    if options.client_secret:
        payload["client_secret"] = options.client_secret
    if code_verifier:
        payload["code_verifier"] = code_verifier

    async with httpx.AsyncClient() as client:
        response = await client.post(
            options.token_endpoint,
            data=payload,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=10.0
        )

        if not response.is_success:
            error_data = response.json() if response.headers.get("content-type", "").startswith("application/json") else {}
            if not isinstance(error_data, dict):
                error_data = {}
            error_msg = error_data.get("error_description") or error_data.get("error") or "Token exchange failed"
            raise ValueError(f"Token exchange failed: {error_msg}")

        token_data = response.json()

    if not isinstance(token_data, dict) or "id_token" not in token_data:
        raise ValueError("Token response missing id_token")

    return token_data
