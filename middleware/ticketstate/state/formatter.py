"""
State Data Formatters
=====================

Secure formats for the authentication state that round-trips through the
browser during a remote (OIDC) sign-in.

DistributedCacheStateDataFormatter
    Rather than encrypting the full AuthenticationProperties, caches the
    serialized properties under a fresh random reference and hands out only
    the encrypted reference (the "ticket"). Tickets stay small regardless of
    how much state is carried, and stop resolving once the cache entry expires.

ProtectedPropertiesFormat
    Encrypts the full serialized properties into the token. No server-side
    storage. Used for schemes that do not opt in to cache-backed state.

Both formats scope their protector to the scheme name and the caller's
purpose. A token issued for one scheme or purpose is rejected as invalid by
any other scheme or purpose.
"""

import logging
import uuid
from typing import Optional, Protocol

from ticketstate.models import AuthenticationProperties
from ticketstate.state.cache import DistributedCache
from ticketstate.state.exceptions import CryptographicError, InvalidTicketError
from ticketstate.state.protection import DataProtectionProvider, DataProtector
from ticketstate.state.serializer import PropertiesSerializer

logger = logging.getLogger(__name__)


CACHE_KEY_PREFIX = "DistributedCacheStateDataFormatter"
PROPERTIES_FORMAT_PURPOSE = "ProtectedPropertiesFormat"


class SecureDataFormat(Protocol):
    """Contract shared by every state format a scheme can be bound to."""

    def protect(self, data: AuthenticationProperties, purpose: Optional[str] = None) -> str:
        ...

    def unprotect(self, protected_text: str, purpose: Optional[str] = None) -> Optional[AuthenticationProperties]:
        ...


def _canonical_purpose(purpose: Optional[str]) -> str:
    return purpose or ""


def _require_name(name: str) -> str:
    if not name or not name.strip():
        raise ValueError("Formatter name must be a non-empty string")
    return name


# =============================================================================
# Ticketed state (distributed cache)
# =============================================================================

class DistributedCacheStateDataFormatter:
    """
    Stores state in the distributed cache and protects only a reference to it.

    Args:
        cache: Shared string cache
        protection_provider: Shared data protection provider
        name: Authentication scheme name this formatter serves
        serializer: Payload serializer (defaults to AuthenticationProperties JSON)
    """

    def __init__(
        self,
        cache: DistributedCache,
        protection_provider: DataProtectionProvider,
        name: str,
        serializer: Optional[PropertiesSerializer] = None,
    ):
        if cache is None:
            raise ValueError("cache is required")
        if protection_provider is None:
            raise ValueError("protection_provider is required")
        self._cache = cache
        self._protection_provider = protection_provider
        self._name = _require_name(name)
        self._serializer = serializer or PropertiesSerializer()

    @property
    def name(self) -> str:
        return self._name

    def _protector(self, purpose: str) -> DataProtector:
        return self._protection_provider.create_protector(CACHE_KEY_PREFIX, self._name, purpose)

    @staticmethod
    def cache_key(purpose: Optional[str], key: str) -> str:
        """Namespaced cache key for a reference under a purpose."""
        return f"{CACHE_KEY_PREFIX}-{_canonical_purpose(purpose)}-{key}"

    def protect(self, data: AuthenticationProperties, purpose: Optional[str] = None) -> str:
        """
        Cache the serialized properties and return an encrypted ticket.

        Raises:
            StateSerializationError: If the properties cannot be serialized
            CacheUnavailableError: If the cache write fails
        """
        purpose = _canonical_purpose(purpose)
        key = str(uuid.uuid4())
        cache_key = self.cache_key(purpose, key)
        json_text = self._serializer.to_string(data)

        # If encryption fails after this write the entry is left to expire
        self._cache.set_string(cache_key, json_text)

        logger.debug(
            f"Cached state for scheme {self._name}",
            extra={"scheme": self._name, "reference_prefix": key[:8]}
        )

        return self._protector(purpose).protect(key)

    def unprotect(self, protected_text: str, purpose: Optional[str] = None) -> Optional[AuthenticationProperties]:
        """
        Decrypt a ticket and load the properties it references.

        Returns:
            The stored properties, or None if the cache entry is gone
            (expired or evicted)

        Raises:
            InvalidTicketError: If the ticket is empty, tampered with, or was
                issued under a different scheme name or purpose
            StateSerializationError: If the cached value cannot be deserialized
            CacheUnavailableError: If the cache read fails
        """
        if not protected_text:
            raise InvalidTicketError("No state ticket provided")

        purpose = _canonical_purpose(purpose)
        try:
            key = self._protector(purpose).unprotect(protected_text)
        except CryptographicError as e:
            logger.warning(f"Rejected state ticket for scheme {self._name}: {e}")
            raise InvalidTicketError("State ticket is invalid") from e

        try:
            reference = uuid.UUID(key)
        except ValueError as e:
            raise InvalidTicketError("State ticket does not contain a valid reference") from e
        if str(reference) != key:
            raise InvalidTicketError("State ticket does not contain a valid reference")

        json_text = self._cache.get_string(self.cache_key(purpose, key))
        if json_text is None:
            logger.info(
                f"State not found for scheme {self._name}",
                extra={"scheme": self._name, "reference_prefix": key[:8]}
            )
            return None

        return self._serializer.from_string(json_text)


# =============================================================================
# Protected state (whole payload encrypted)
# =============================================================================

class ProtectedPropertiesFormat:
    """
    Encrypts the full serialized properties into the token.

    Args:
        protection_provider: Shared data protection provider
        name: Authentication scheme name this format serves
        serializer: Payload serializer (defaults to AuthenticationProperties JSON)
    """

    def __init__(
        self,
        protection_provider: DataProtectionProvider,
        name: str,
        serializer: Optional[PropertiesSerializer] = None,
    ):
        if protection_provider is None:
            raise ValueError("protection_provider is required")
        self._protection_provider = protection_provider
        self._name = _require_name(name)
        self._serializer = serializer or PropertiesSerializer()

    @property
    def name(self) -> str:
        return self._name

    def _protector(self, purpose: Optional[str]) -> DataProtector:
        return self._protection_provider.create_protector(
            PROPERTIES_FORMAT_PURPOSE, self._name, _canonical_purpose(purpose)
        )

    def protect(self, data: AuthenticationProperties, purpose: Optional[str] = None) -> str:
        return self._protector(purpose).protect(self._serializer.to_string(data))

    def unprotect(self, protected_text: str, purpose: Optional[str] = None) -> Optional[AuthenticationProperties]:
        if not protected_text:
            raise InvalidTicketError("No protected state provided")
        try:
            json_text = self._protector(purpose).unprotect(protected_text)
        except CryptographicError as e:
            logger.warning(f"Rejected protected state for scheme {self._name}: {e}")
            raise InvalidTicketError("Protected state is invalid") from e
        return self._serializer.from_string(json_text)


__all__ = [
    "CACHE_KEY_PREFIX",
    "PROPERTIES_FORMAT_PURPOSE",
    "SecureDataFormat",
    "DistributedCacheStateDataFormatter",
    "ProtectedPropertiesFormat",
]
