"""
Authentication Tests for the Middleware

Tests the OIDC login/callback flow through the scheme registry, the state
outcomes surfaced by the callback, session JWTs, and JWKS signature
verification of ID tokens.
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlparse

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jose import JWTError
from jwt.algorithms import RSAAlgorithm

from ticketstate.auth.schemes import OIDCSchemeOptions
from ticketstate.auth.session import (
    JWTSessionError,
    create_session_jwt,
    extract_token_from_header,
    verify_session_jwt,
)
from ticketstate.auth.utils import (
    extract_email_from_claims,
    generate_code_challenge,
    is_safe_return_url,
    validate_email_domain,
    validate_nonce,
    verify_id_token,
)
from ticketstate.main import create_app
from ticketstate.state.exceptions import CacheUnavailableError

from conftest import TEST_AUTHORITY, TEST_CLIENT_ID


TEST_PRIVATE_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)
TEST_KID = "test-key-id-2026"


def create_mock_id_token(email: str, kid: str = TEST_KID, nonce: str = "n", exp_delta_minutes: int = 60) -> str:
    """Create an ID token signed with the test private key."""
    now = datetime.now(timezone.utc)
    payload = {
        "iss": f"{TEST_AUTHORITY}/v2.0",
        "sub": "test-user-sub-123",
        "aud": TEST_CLIENT_ID,
        "exp": now + timedelta(minutes=exp_delta_minutes),
        "iat": now,
        "nonce": nonce,
        "name": "Test User",
        "preferred_username": email,
    }
    return jwt.encode(payload, TEST_PRIVATE_KEY, algorithm="RS256", headers={"kid": kid})


def create_mock_jwks(kid: str = TEST_KID) -> dict:
    key = RSAAlgorithm.to_jwk(TEST_PRIVATE_KEY.public_key(), as_dict=True)
    key.update({"kid": kid, "use": "sig", "alg": "RS256"})
    return {"keys": [key]}


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    return TestClient(app)


def _login(client, return_url="/dashboard"):
    response = client.get("/auth/oidc/login", params={"return_url": return_url}, follow_redirects=False)
    assert response.status_code == 302
    location = urlparse(response.headers["location"])
    return location, {k: v[0] for k, v in parse_qs(location.query).items()}


def _id_claims(email="user@lithan.com", nonce="n"):
    return {
        "sub": "test-user-sub-123",
        "name": "Test User",
        "preferred_username": email,
        "nonce": nonce,
        "iat": 1760000000,
    }


# =============================================================================
# Login
# =============================================================================

class TestLogin:
    def test_redirects_to_authorization_endpoint(self, client):
        location, params = _login(client)

        assert f"{location.scheme}://{location.netloc}{location.path}" == f"{TEST_AUTHORITY}/oauth2/v2.0/authorize"
        assert params["client_id"] == TEST_CLIENT_ID
        assert params["response_type"] == "code"
        assert params["code_challenge_method"] == "S256"
        assert params["nonce"]

    def test_state_is_a_ticket_not_the_payload(self, app, client):
        _, params = _login(client, return_url="/very/secret/return/path")

        assert "secret" not in params["state"]
        assert params["nonce"] not in params["state"]
        assert len(app.state.cache) == 1

    def test_state_resolves_to_login_properties(self, app, client):
        _, params = _login(client)
        properties = app.state.schemes.get("oidc").formatter.unprotect(params["state"], "oidc.state")

        assert properties.redirect_uri == "/dashboard"
        assert properties.items["nonce"] == params["nonce"]
        assert generate_code_challenge(properties.items["code_verifier"]) == params["code_challenge"]

    def test_unknown_scheme_is_404(self, client):
        response = client.get("/auth/partner/login", follow_redirects=False)
        assert response.status_code == 404

    def test_cache_outage_is_503(self, app, client):
        with patch.object(app.state.cache, "set_string", side_effect=CacheUnavailableError("down")):
            response = client.get("/auth/oidc/login", follow_redirects=False)

        assert response.status_code == 503
        assert response.json()["error"] == "state_cache_unavailable"

    @pytest.mark.parametrize("return_url", [
        "https://evil.com/phish",
        "//evil.com/phish",
        "/\\evil.com",
        "javascript:alert(1)",
        "dashboard",
    ])
    def test_unsafe_return_url_rejected(self, app, client, return_url):
        response = client.get("/auth/oidc/login", params={"return_url": return_url}, follow_redirects=False)

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"
        assert len(app.state.cache) == 0

    def test_return_url_on_allowed_origin_accepted(self, settings):
        app = create_app(settings.model_copy(update={"ALLOWED_ORIGINS": "https://app.lithan.com"}))
        _, params = _login(TestClient(app), return_url="https://app.lithan.com/home")

        properties = app.state.schemes.get("oidc").formatter.unprotect(params["state"], "oidc.state")
        assert properties.redirect_uri == "https://app.lithan.com/home"


class SlowCache:
    """Cache wrapper that blocks the calling thread on every round trip."""

    def __init__(self, inner, delay):
        self.inner = inner
        self.delay = delay

    def get_string(self, key):
        time.sleep(self.delay)
        return self.inner.get_string(key)

    def set_string(self, key, value):
        time.sleep(self.delay)
        self.inner.set_string(key, value)

    def remove(self, key):
        self.inner.remove(key)


class TestEventLoop:
    @pytest.mark.asyncio
    async def test_slow_cache_does_not_serialize_requests(self, app):
        formatter = app.state.schemes.get("oidc").formatter
        formatter._cache = SlowCache(formatter._cache, delay=0.3)

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            started = time.perf_counter()
            responses = await asyncio.gather(
                *[client.get("/auth/oidc/login") for _ in range(4)],
                client.get("/health"),
            )
            elapsed = time.perf_counter() - started

        assert [r.status_code for r in responses] == [302, 302, 302, 302, 200]
        # Four blocking 0.3s writes back to back would take 1.2s
        assert elapsed < 0.9


# =============================================================================
# Callback
# =============================================================================

class TestCallback:
    def _callback(self, client, state, claims):
        with patch("ticketstate.auth.routes._exchange_code_for_tokens",
                   AsyncMock(return_value={"id_token": "id-token"})) as exchange, \
             patch("ticketstate.auth.routes.verify_id_token", AsyncMock(return_value=claims)):
            response = client.get("/auth/oidc/callback", params={"code": "auth-code", "state": state})
        return response, exchange

    def test_successful_callback_issues_session(self, client, settings):
        _, params = _login(client)
        response, exchange = self._callback(client, params["state"], _id_claims(nonce=params["nonce"]))

        assert response.status_code == 200
        body = response.json()
        assert body["token_type"] == "Bearer"
        assert body["expires_in"] == settings.SESSION_JWT_EXPIRY_MINUTES * 60
        assert body["redirect_uri"] == "/dashboard"
        assert exchange.call_args.kwargs["code_verifier"]

        claims = verify_session_jwt(body["access_token"], settings)
        assert claims["email"] == "user@lithan.com"
        assert claims["scheme"] == "oidc"

    def test_tampered_state_is_invalid(self, client):
        _, params = _login(client)
        state = params["state"]
        tampered = state[:-1] + ("A" if state[-1] != "A" else "B")

        response, exchange = self._callback(client, tampered, _id_claims(nonce=params["nonce"]))

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_state"
        exchange.assert_not_called()

    def test_expired_state_is_reported_separately(self, app, client):
        _, params = _login(client)
        app.state.cache._entries.clear()

        response, exchange = self._callback(client, params["state"], _id_claims(nonce=params["nonce"]))

        assert response.status_code == 400
        assert response.json()["error"] == "state_expired"
        exchange.assert_not_called()

    def test_nonce_mismatch_is_401(self, client):
        _, params = _login(client)
        response, _ = self._callback(client, params["state"], _id_claims(nonce="other"))

        assert response.status_code == 401
        assert response.json()["error"] == "nonce_mismatch"

    def test_disallowed_domain_is_403(self, client):
        _, params = _login(client)
        response, _ = self._callback(client, params["state"], _id_claims(email="hacker@evil.com", nonce=params["nonce"]))

        assert response.status_code == 403
        assert response.json()["error"] == "access_denied"

    def test_missing_parameters(self, client):
        response = client.get("/auth/oidc/callback", params={"code": "auth-code"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_provider_error(self, client):
        response = client.get(
            "/auth/oidc/callback",
            params={"error": "access_denied", "error_description": "User cancelled"},
        )
        assert response.status_code == 400
        assert response.json()["message"] == "User cancelled"

    def test_token_exchange_failure_is_502(self, client):
        _, params = _login(client)
        with patch("ticketstate.auth.routes._exchange_code_for_tokens",
                   AsyncMock(side_effect=ValueError("invalid_grant"))):
            response = client.get("/auth/oidc/callback", params={"code": "auth-code", "state": params["state"]})

        assert response.status_code == 502
        assert response.json()["error"] == "token_exchange_failed"

    @pytest.mark.parametrize("body", [["invalid_grant"], "invalid_grant", 42])
    def test_non_object_error_body_is_502(self, client, body):
        _, params = _login(client)

        token_client = AsyncMock()
        token_client.__aenter__.return_value = token_client
        token_client.post.return_value = httpx.Response(400, json=body)

        with patch("ticketstate.auth.routes.httpx.AsyncClient", return_value=token_client):
            response = client.get("/auth/oidc/callback", params={"code": "auth-code", "state": params["state"]})

        assert response.status_code == 502
        assert response.json()["error"] == "token_exchange_failed"


# =============================================================================
# Session profile and health
# =============================================================================

class TestMe:
    def test_returns_profile(self, client, settings):
        token = create_session_jwt({"sub": "u1", "email": "user@lithan.com", "name": "U", "scheme": "oidc"}, settings)
        response = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200
        assert response.json() == {"user_id": "u1", "email": "user@lithan.com", "name": "U", "scheme": "oidc"}

    def test_missing_token_is_401(self, client):
        assert client.get("/auth/me").status_code == 401


def test_health_lists_schemes(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["schemes"] == ["oidc"]


# =============================================================================
# Session JWT
# =============================================================================

class TestSessionJWT:
    def test_roundtrip(self, settings):
        token = create_session_jwt({"sub": "u1", "email": "a@lithan.com"}, settings)
        claims = verify_session_jwt(token, settings)

        assert claims["iss"] == settings.JWT_ISSUER
        assert claims["exp"] - claims["iat"] == settings.SESSION_JWT_EXPIRY_MINUTES * 60

    def test_required_claims(self, settings):
        with pytest.raises(JWTSessionError):
            create_session_jwt({"sub": "u1"}, settings)

    def test_wrong_secret_rejected(self, settings):
        other = settings.model_copy(update={"SESSION_JWT_SECRET": "another-secret-0123456789abcdefgh"})
        token = create_session_jwt({"sub": "u1", "email": "a@lithan.com"}, other)

        with pytest.raises(JWTSessionError):
            verify_session_jwt(token, settings)

    def test_expired_rejected(self, settings):
        past = datetime.now(timezone.utc) - timedelta(hours=2)
        token = jwt.encode(
            {"sub": "u1", "email": "a@lithan.com", "iat": past, "exp": past + timedelta(minutes=5), "iss": settings.JWT_ISSUER},
            settings.SESSION_JWT_SECRET,
            algorithm="HS256",
        )
        with pytest.raises(JWTSessionError, match="expired"):
            verify_session_jwt(token, settings)

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer", "Bearer a b"])
    def test_malformed_header(self, header):
        with pytest.raises(JWTSessionError):
            extract_token_from_header(header)


# =============================================================================
# ID token verification
# =============================================================================

@pytest.fixture
def scheme_options():
    return OIDCSchemeOptions(authority=TEST_AUTHORITY, client_id=TEST_CLIENT_ID, redirect_uri="http://localhost/cb")


class TestVerifyIdToken:
    @pytest.mark.asyncio
    async def test_valid_token(self, scheme_options):
        token = create_mock_id_token("user@lithan.com")
        with patch("ticketstate.auth.utils.fetch_jwks", AsyncMock(return_value=create_mock_jwks())):
            claims = await verify_id_token(token, scheme_options)

        assert claims["sub"] == "test-user-sub-123"
        assert extract_email_from_claims(claims) == "user@lithan.com"

    @pytest.mark.asyncio
    async def test_rotated_keys_refetched_once(self, scheme_options):
        token = create_mock_id_token("user@lithan.com")
        fetch = AsyncMock(side_effect=[create_mock_jwks(kid="old-key"), create_mock_jwks()])
        with patch("ticketstate.auth.utils.fetch_jwks", fetch):
            await verify_id_token(token, scheme_options)

        assert fetch.call_count == 2
        assert fetch.call_args.kwargs["force_refresh"] is True

    @pytest.mark.asyncio
    async def test_unknown_kid_rejected(self, scheme_options):
        token = create_mock_id_token("user@lithan.com", kid="key-abc-123")
        with patch("ticketstate.auth.utils.fetch_jwks", AsyncMock(return_value=create_mock_jwks(kid="different-key"))):
            with pytest.raises(JWTError):
                await verify_id_token(token, scheme_options)

    @pytest.mark.asyncio
    async def test_wrong_audience_rejected(self, scheme_options):
        scheme_options.client_id = "someone-else"
        token = create_mock_id_token("user@lithan.com")
        with patch("ticketstate.auth.utils.fetch_jwks", AsyncMock(return_value=create_mock_jwks())):
            with pytest.raises(JWTError):
                await verify_id_token(token, scheme_options)

    @pytest.mark.asyncio
    async def test_expired_token_rejected(self, scheme_options):
        token = create_mock_id_token("user@lithan.com", exp_delta_minutes=-5)
        with patch("ticketstate.auth.utils.fetch_jwks", AsyncMock(return_value=create_mock_jwks())):
            with pytest.raises(JWTError):
                await verify_id_token(token, scheme_options)


# =============================================================================
# Claim helpers
# =============================================================================

class TestClaimHelpers:
    def test_email_claim_order(self):
        assert extract_email_from_claims({"upn": "A@Lithan.com", "email": "b@lithan.com"}) == "a@lithan.com"
        assert extract_email_from_claims({"preferred_username": "no-at-sign"}) is None

    def test_email_domain(self):
        assert validate_email_domain("a@LITHAN.com", ["lithan.com"])
        assert not validate_email_domain("a@evil.com", ["lithan.com"])
        assert validate_email_domain("a@anything.org", [])
        assert not validate_email_domain(None, [])

    def test_return_url(self):
        origins = ["https://app.lithan.com/"]

        assert is_safe_return_url("/", origins)
        assert is_safe_return_url("/courses?id=1", origins)
        assert is_safe_return_url("https://APP.lithan.com/home", origins)
        assert not is_safe_return_url("https://app.lithan.com.evil.com/", origins)
        assert not is_safe_return_url("http://app.lithan.com/home", origins)
        assert not is_safe_return_url("//app.lithan.com/home", origins)
        assert not is_safe_return_url("/\t/evil.com", origins)
        assert not is_safe_return_url("", origins)

    def test_nonce(self):
        assert validate_nonce({"nonce": "x"}, "x")
        assert not validate_nonce({"nonce": "x"}, "y")
        assert not validate_nonce({}, "x")
        assert validate_nonce({}, None)
