"""
State Format Exceptions
=======================

Error taxonomy shared by the state formatters and their collaborators.

- InvalidTicketError: the ticket could not be decrypted under the given
  purpose (tampered, malformed, or issued for another scheme/purpose).
  Callers treat the request as unauthenticated.
- StateSerializationError: a payload could not be encoded, or a stored
  value could not be decoded. Indicates a format/version bug.
- CacheUnavailableError: the cache backend failed or is unreachable.
- CryptographicError: raised by the data protector; formatters translate
  it to InvalidTicketError.
- StateFormatConfigurationError: a scheme's state format slot is unbound
  or a collaborator is missing.

A missing cache entry is NOT an exception: resolvers return None.
"""


class StateFormatError(Exception):
    """Base exception for state format errors"""
    pass


class InvalidTicketError(StateFormatError):
    """Raised when a ticket fails to decrypt or decodes to a malformed reference"""
    pass


class StateSerializationError(StateFormatError):
    """Raised when authentication properties cannot be serialized or deserialized"""
    pass


class CacheUnavailableError(StateFormatError):
    """Raised when the distributed cache backend cannot be reached"""
    pass


class CryptographicError(StateFormatError):
    """Raised by a data protector when a payload cannot be unprotected"""
    pass


class StateFormatConfigurationError(StateFormatError):
    """Raised when a state format is used before it has been bound"""
    pass


__all__ = [
    "StateFormatError",
    "InvalidTicketError",
    "StateSerializationError",
    "CacheUnavailableError",
    "CryptographicError",
    "StateFormatConfigurationError",
]
