"""
Shared fixtures for the ticket state tests.
"""

import pytest

from ticketstate.config import Settings
from ticketstate.state.cache import MemoryDistributedCache
from ticketstate.state.formatter import DistributedCacheStateDataFormatter
from ticketstate.state.protection import DataProtectionProvider


TEST_PROTECTION_KEY = "test-protection-key-0123456789abcdef"
TEST_SESSION_SECRET = "test-jwt-secret-1234567890123456"
TEST_TENANT = "11111111-2222-3333-4444-555555555555"
TEST_AUTHORITY = f"https://login.microsoftonline.com/{TEST_TENANT}"
TEST_CLIENT_ID = "test-client-id"


class FakeClock:
    def __init__(self, t: float = 0.0) -> None:
        self.t = t

    def __call__(self) -> float:  # acts like time.monotonic
        return self.t

    def advance(self, dt: float) -> None:
        self.t += dt


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryDistributedCache(default_ttl_seconds=900, clock=clock)


@pytest.fixture
def protection_provider():
    return DataProtectionProvider(TEST_PROTECTION_KEY)


@pytest.fixture
def formatter(cache, protection_provider):
    return DistributedCacheStateDataFormatter(cache, protection_provider, "scheme1")


@pytest.fixture
def settings():
    return Settings(
        STATE_PROTECTION_KEY=TEST_PROTECTION_KEY,
        SESSION_JWT_SECRET=TEST_SESSION_SECRET,
        OIDC_AUTHORITY=TEST_AUTHORITY,
        OIDC_CLIENT_ID=TEST_CLIENT_ID,
        OIDC_CLIENT_SECRET="test-client-secret",
        OIDC_REDIRECT_URI="http://localhost:8080/auth/oidc/callback",
        ALLOWED_DOMAINS="lithan.com,educlaas.com",
    )
