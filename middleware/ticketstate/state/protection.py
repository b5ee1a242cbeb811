"""
Data Protection Module
======================

Purpose-scoped authenticated encryption for short strings (tickets and
protected state).

A `DataProtectionProvider` holds the master key. Each call to
`create_protector(*purposes)` derives an independent Fernet key with
HKDF-SHA256, using the purpose chain as the HKDF `info`. A token produced
under one purpose chain therefore fails to unprotect under any other chain,
rather than decrypting to something unexpected.

Tokens are unpadded URL-safe base64 so they can travel in query strings.
Only the canonical encoding of a token is accepted.
"""

import base64
import binascii
import logging
from typing import Tuple, Union

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ticketstate.state.exceptions import CryptographicError

logger = logging.getLogger(__name__)


MIN_MASTER_KEY_LENGTH = 32
_HKDF_SALT = b"ticketstate.data-protection.v1"


def _encode_purposes(purposes: Tuple[str, ...]) -> bytes:
    # Length-prefixed so ("ab", "c") and ("a", "bc") derive different keys
    parts = []
    for purpose in purposes:
        encoded = purpose.encode("utf-8")
        parts.append(len(encoded).to_bytes(4, "big"))
        parts.append(encoded)
    return b"".join(parts)


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


class DataProtector:
    """
    Encrypts and decrypts strings under one purpose chain.

    Obtain instances from `DataProtectionProvider.create_protector`.
    """

    def __init__(self, master_key: bytes, purposes: Tuple[str, ...]):
        self._master_key = master_key
        self._purposes = purposes
        derived = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=_HKDF_SALT,
            info=_encode_purposes(purposes),
        ).derive(master_key)
        self._fernet = Fernet(base64.urlsafe_b64encode(derived))

    @property
    def purposes(self) -> Tuple[str, ...]:
        return self._purposes

    def create_protector(self, *purposes: str) -> "DataProtector":
        """Create a child protector whose purpose chain extends this one."""
        return DataProtector(self._master_key, self._purposes + tuple(purposes))

    def protect(self, plaintext: str) -> str:
        token = self._fernet.encrypt(plaintext.encode("utf-8"))
        return _b64encode(base64.urlsafe_b64decode(token))

    def unprotect(self, protected_text: str) -> str:
        """
        Decrypt a token produced by `protect` under the same purpose chain.

        Raises:
            CryptographicError: If the token is malformed, non-canonical,
                tampered with, or was produced under another purpose chain
        """
        try:
            raw = _b64decode(protected_text)
        except (UnicodeEncodeError, binascii.Error, ValueError) as e:
            raise CryptographicError("Protected payload is not valid base64") from e

        # urlsafe_b64decode silently skips stray characters; reject anything
        # that is not the exact encoding we would have produced
        if _b64encode(raw) != protected_text:
            raise CryptographicError("Protected payload is not canonically encoded")

        try:
            plaintext = self._fernet.decrypt(base64.urlsafe_b64encode(raw))
        except InvalidToken as e:
            raise CryptographicError("Protected payload failed authentication") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CryptographicError("Protected payload is not valid UTF-8") from e


class DataProtectionProvider:
    """
    Root of the protection hierarchy; holds the master key.

    Args:
        master_key: Secret of at least 32 characters/bytes (e.g. from
            STATE_PROTECTION_KEY). Every replica sharing a cache must use
            the same key.
    """

    def __init__(self, master_key: Union[str, bytes]):
        if isinstance(master_key, str):
            key_bytes = master_key.encode("utf-8")
        else:
            key_bytes = master_key
        if len(key_bytes) < MIN_MASTER_KEY_LENGTH:
            raise ValueError(
                f"Data protection master key must be at least {MIN_MASTER_KEY_LENGTH} bytes"
            )
        self._master_key = key_bytes

    def create_protector(self, *purposes: str) -> DataProtector:
        if not purposes:
            raise ValueError("At least one purpose is required")
        return DataProtector(self._master_key, tuple(purposes))
