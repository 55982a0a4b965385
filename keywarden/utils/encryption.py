"""Envelope encryption for values stored at rest.

Encrypts resource fields and TOTP secrets with AES-256-GCM from the
cryptography library:
- 32-byte key supplied externally as a 64-character hex string
- Fresh 12-byte random nonce on every encrypt call
- 16-byte authentication tag (tampering is detected)
- Versioned wire format so algorithms and keys can evolve

Wire formats:
    v1:<base64 nonce>:<base64 tag>:<base64 ciphertext>    (current)
    <base64 iv>:<base64 tag>:<base64 ciphertext>           (legacy, decrypt only)
"""

import base64
import binascii
import logging
import os
import re
from enum import Enum
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from keywarden.exceptions import ConfigurationError, DecryptionError

logger = logging.getLogger(__name__)

V1_PREFIX = "v1:"
KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16
HEX_KEY_REGEX = re.compile(r"^[0-9a-fA-F]{64}$")
OTPAUTH_PREFIX = "otpauth://"


class StoredValueKind(str, Enum):
    """Classification of a stored column value, used by key rotation."""

    EMPTY = "empty"
    CURRENT = "current"  # v1 envelope
    LEGACY = "legacy"  # pre-versioning envelope
    MALFORMED = "malformed"  # v1 prefix that does not parse
    PLAINTEXT = "plaintext"


def parse_key(key: Union[str, bytes]) -> bytes:
    """Validate key material and return the raw 32-byte key.

    Args:
        key: 64-character hex string, or raw 32 bytes

    Returns:
        Raw key bytes

    Raises:
        ConfigurationError: If the key is not exactly 32 bytes / 64 hex chars.
            Keys are never truncated or padded.
    """
    if isinstance(key, bytes):
        if len(key) != KEY_LENGTH:
            raise ConfigurationError(
                f"Invalid encryption key length: expected {KEY_LENGTH} bytes, got {len(key)}"
            )
        return key

    if not isinstance(key, str) or not HEX_KEY_REGEX.match(key):
        raise ConfigurationError(
            "Encryption key must be a valid 32-byte hex string (64 hexadecimal characters)"
        )
    return bytes.fromhex(key)


def _b64decode(part: str) -> bytes:
    return base64.b64decode(part.encode("ascii"), validate=True)


def _split_envelope(value: str) -> Optional[tuple[bytes, bytes, bytes]]:
    """Split an envelope into (nonce, tag, ciphertext), or None if it does not parse."""
    body = value[len(V1_PREFIX):] if value.startswith(V1_PREFIX) else value
    parts = body.split(":")
    if len(parts) != 3:
        return None
    try:
        nonce, tag, data = (_b64decode(p) for p in parts)
    except (binascii.Error, ValueError, UnicodeEncodeError):
        return None
    if len(nonce) != NONCE_LENGTH or len(tag) != TAG_LENGTH:
        return None
    return nonce, tag, data


def classify_stored_value(value: Optional[str]) -> StoredValueKind:
    """Classify a stored value as ciphertext or legacy plaintext.

    Precedence (first match wins):
        1. None or empty string          -> EMPTY
        2. starts with "otpauth://"      -> PLAINTEXT
        3. "v1:" + three valid parts     -> CURRENT
        4. "v1:" prefix otherwise        -> MALFORMED
        5. three valid base64 parts with a 12-byte IV and 16-byte tag -> LEGACY
        6. anything else                 -> PLAINTEXT

    "Valid parts" means strict base64 with the exact nonce and tag lengths,
    so colon-delimited plaintext only lands in LEGACY when it happens to be
    shaped exactly like an envelope.
    """
    if not value:
        return StoredValueKind.EMPTY
    if value.startswith(OTPAUTH_PREFIX):
        return StoredValueKind.PLAINTEXT
    if value.startswith(V1_PREFIX):
        if _split_envelope(value) is not None:
            return StoredValueKind.CURRENT
        return StoredValueKind.MALFORMED
    if _split_envelope(value) is not None:
        return StoredValueKind.LEGACY
    return StoredValueKind.PLAINTEXT


class EnvelopeCipher:
    """Encrypt and decrypt single values with a fixed key.

    The key is supplied by the caller and validated up front; the cipher
    never generates or looks up keys itself.

    Example:
        >>> cipher = EnvelopeCipher(secrets.token_hex(32))
        >>> token = cipher.encrypt("hunter2")
        >>> token.startswith("v1:")
        True
        >>> cipher.decrypt(token)
        'hunter2'
    """

    def __init__(self, key: Union[str, bytes]) -> None:
        """Initialize the cipher.

        Args:
            key: 64-character hex string or raw 32-byte key

        Raises:
            ConfigurationError: If the key is malformed
        """
        self._key = parse_key(key)
        self._aead = AESGCM(self._key)

    @property
    def key(self) -> bytes:
        return self._key

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string into the current (v1) envelope format.

        Raises:
            ValueError: If plaintext is None
        """
        if plaintext is None:
            raise ValueError("Cannot encrypt None value")

        nonce = os.urandom(NONCE_LENGTH)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag to the ciphertext
        data, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return V1_PREFIX + ":".join(
            base64.b64encode(part).decode("ascii") for part in (nonce, tag, data)
        )

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a v1 or legacy envelope.

        Raises:
            DecryptionError: For any input that does not parse or fails
                authentication. The reason is never exposed.
        """
        if not isinstance(ciphertext, str):
            raise DecryptionError()

        parsed = _split_envelope(ciphertext)
        if parsed is None:
            raise DecryptionError()

        nonce, tag, data = parsed
        try:
            plaintext = self._aead.decrypt(nonce, data + tag, None)
            return plaintext.decode("utf-8")
        except (InvalidTag, UnicodeDecodeError, ValueError):
            raise DecryptionError() from None

    def is_current_format(self, value: Optional[str]) -> bool:
        """Return True if value is a v1 envelope (regardless of key)."""
        return classify_stored_value(value) is StoredValueKind.CURRENT


def encrypt_value(plaintext: str, key: Union[str, bytes]) -> str:
    """Convenience function to encrypt with an explicit key."""
    return EnvelopeCipher(key).encrypt(plaintext)


def decrypt_value(ciphertext: str, key: Union[str, bytes]) -> str:
    """Convenience function to decrypt with an explicit key."""
    return EnvelopeCipher(key).decrypt(ciphertext)


def validate_encryption_config(key_hex: str) -> EnvelopeCipher:
    """Validate key material and run a round-trip check.

    Called once at startup; the returned cipher is shared for the process.

    Raises:
        ConfigurationError: If the key is malformed or the round trip fails
    """
    cipher = EnvelopeCipher(key_hex)
    sample = "keywarden-startup-check"
    try:
        round_trip = cipher.decrypt(cipher.encrypt(sample))
    except DecryptionError as e:
        raise ConfigurationError(f"Encryption round-trip failed: {e}") from e
    if round_trip != sample:
        raise ConfigurationError("Encryption round-trip failed: decrypted value does not match")
    logger.debug("Encryption configuration validated")
    return cipher
