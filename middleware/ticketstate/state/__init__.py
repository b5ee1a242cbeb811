"""
Authentication State Package

Keeps remote-authentication state (OIDC redirect target, nonce, PKCE
verifier) out of the browser: the properties live in a shared cache and the
client only ever sees an encrypted reference to them.

Modules:
- formatter: ticketed (cache-backed) and protected (whole-payload) state formats
- options: typed state format slot and named binding of formatters to schemes
- cache: in-memory and Redis string caches
- protection: purpose-scoped data protection (HKDF + Fernet)
- serializer: AuthenticationProperties JSON serializer
- exceptions: error taxonomy
"""

from .cache import DistributedCache, MemoryDistributedCache, RedisDistributedCache, create_cache
from .exceptions import (
    CacheUnavailableError,
    CryptographicError,
    InvalidTicketError,
    StateFormatConfigurationError,
    StateFormatError,
    StateSerializationError,
)
from .formatter import DistributedCacheStateDataFormatter, ProtectedPropertiesFormat, SecureDataFormat
from .options import (
    BoundFormatter,
    OptionsRegistry,
    PendingBinding,
    RemoteAuthenticationOptions,
    Unconfigured,
    use_distributed_cache_state,
)
from .protection import DataProtectionProvider, DataProtector
from .serializer import PropertiesSerializer

__all__ = [
    # Formats
    "SecureDataFormat",
    "DistributedCacheStateDataFormatter",
    "ProtectedPropertiesFormat",

    # Binding
    "OptionsRegistry",
    "RemoteAuthenticationOptions",
    "Unconfigured",
    "PendingBinding",
    "BoundFormatter",
    "use_distributed_cache_state",

    # Collaborators
    "DistributedCache",
    "MemoryDistributedCache",
    "RedisDistributedCache",
    "create_cache",
    "DataProtectionProvider",
    "DataProtector",
    "PropertiesSerializer",

    # Exceptions
    "StateFormatError",
    "InvalidTicketError",
    "StateSerializationError",
    "CacheUnavailableError",
    "CryptographicError",
    "StateFormatConfigurationError",
]
