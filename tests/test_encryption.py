"""Tests for envelope encryption (keywarden/utils/encryption.py).

Covers:
- v1 round trips and nonce freshness
- Tamper detection and wrong-key failures
- Legacy (unprefixed) envelopes
- Key validation (no truncation, no padding)
- Stored value classification used by key rotation
"""

import base64
import os

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from keywarden.exceptions import ConfigurationError, DecryptionError
from keywarden.utils.encryption import (
    EnvelopeCipher,
    StoredValueKind,
    classify_stored_value,
    decrypt_value,
    encrypt_value,
    parse_key,
    validate_encryption_config,
)

TEST_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
OTHER_KEY = "ffeeddccbbaa99887766554433221100ffeeddccbbaa99887766554433221100"


def legacy_envelope(key_hex: str, plaintext: str) -> str:
    """Build a pre-versioning ``iv:tag:ciphertext`` envelope."""
    iv = os.urandom(12)
    sealed = AESGCM(bytes.fromhex(key_hex)).encrypt(iv, plaintext.encode("utf-8"), None)
    data, tag = sealed[:-16], sealed[-16:]
    return ":".join(base64.b64encode(p).decode("ascii") for p in (iv, tag, data))


class TestEnvelopeCipher:
    """Test suite for EnvelopeCipher."""

    @pytest.fixture
    def cipher(self):
        return EnvelopeCipher(TEST_KEY)

    def test_encrypt_decrypt_roundtrip(self, cipher):
        """Decrypting an encrypted value returns the original."""
        for plaintext in ["hunter2", "", "пароль", "emoji \U0001f510", "a:b:c", "x" * 10000]:
            assert cipher.decrypt(cipher.encrypt(plaintext)) == plaintext

    def test_encrypt_produces_v1_envelope(self, cipher):
        """Ciphertext is v1-prefixed with three base64 parts."""
        token = cipher.encrypt("secret")
        assert token.startswith("v1:")
        nonce, tag, _ = token[3:].split(":")
        assert len(base64.b64decode(nonce)) == 12
        assert len(base64.b64decode(tag)) == 16

    def test_encrypt_uses_fresh_nonce(self, cipher):
        """Same plaintext encrypts differently every time."""
        assert cipher.encrypt("same") != cipher.encrypt("same")

    def test_encrypt_none_raises(self, cipher):
        with pytest.raises(ValueError):
            cipher.encrypt(None)

    def test_tampered_ciphertext_rejected(self, cipher):
        """Flipping a ciphertext byte fails authentication."""
        prefix, nonce, tag, data = cipher.encrypt("do not touch").split(":")
        raw = bytearray(base64.b64decode(data))
        raw[0] ^= 0x01
        tampered = ":".join([prefix, nonce, tag, base64.b64encode(bytes(raw)).decode()])

        with pytest.raises(DecryptionError):
            cipher.decrypt(tampered)

    def test_tampered_tag_rejected(self, cipher):
        prefix, nonce, tag, data = cipher.encrypt("do not touch").split(":")
        raw = bytearray(base64.b64decode(tag))
        raw[-1] ^= 0xFF
        tampered = ":".join([prefix, nonce, base64.b64encode(bytes(raw)).decode(), data])

        with pytest.raises(DecryptionError):
            cipher.decrypt(tampered)

    def test_wrong_key_rejected(self, cipher):
        token = cipher.encrypt("secret")
        with pytest.raises(DecryptionError):
            EnvelopeCipher(OTHER_KEY).decrypt(token)

    @pytest.mark.parametrize(
        "garbage",
        ["", "not encrypted", "v1:", "v1:a:b", "v1:!!!:???:***", "a:b:c:d", None, 42],
    )
    def test_malformed_input_raises_decryption_error(self, cipher, garbage):
        """Malformed input never leaks a different exception type."""
        with pytest.raises(DecryptionError):
            cipher.decrypt(garbage)

    def test_decryption_error_message_is_generic(self, cipher):
        with pytest.raises(DecryptionError) as exc_info:
            cipher.decrypt("v1:AAAA:BBBB:CCCC")
        assert str(exc_info.value) == "Decryption failed: invalid data or wrong key"

    def test_legacy_envelope_decrypts(self, cipher):
        """Unprefixed iv:tag:ciphertext values from older deployments still decrypt."""
        assert cipher.decrypt(legacy_envelope(TEST_KEY, "old secret")) == "old secret"

    def test_is_current_format(self, cipher):
        assert cipher.is_current_format(cipher.encrypt("x")) is True
        assert cipher.is_current_format(legacy_envelope(TEST_KEY, "x")) is False
        assert cipher.is_current_format("plain") is False

    def test_convenience_functions(self):
        assert decrypt_value(encrypt_value("abc", TEST_KEY), TEST_KEY) == "abc"


class TestKeyValidation:
    """Test suite for key parsing and startup validation."""

    def test_hex_key_parsed(self):
        assert parse_key(TEST_KEY) == bytes.fromhex(TEST_KEY)

    def test_raw_bytes_key_accepted(self):
        raw = os.urandom(32)
        assert parse_key(raw) == raw

    @pytest.mark.parametrize(
        "bad_key",
        [
            "",
            "abc",
            TEST_KEY[:-2],  # 31 bytes: never padded
            TEST_KEY + "00",  # 33 bytes: never truncated
            "zz" * 32,
            b"short",
        ],
    )
    def test_invalid_keys_rejected(self, bad_key):
        with pytest.raises(ConfigurationError):
            EnvelopeCipher(bad_key)

    def test_validate_encryption_config_returns_working_cipher(self):
        cipher = validate_encryption_config(TEST_KEY)
        assert cipher.decrypt(cipher.encrypt("ok")) == "ok"

    def test_validate_encryption_config_rejects_bad_key(self):
        with pytest.raises(ConfigurationError):
            validate_encryption_config("not-a-key")

    def test_get_encryption_key_missing(self, monkeypatch):
        """A missing key is a configuration error naming the variable."""
        from keywarden.config import get_encryption_key

        monkeypatch.delenv("KEYWARDEN_ENCRYPTION_KEY", raising=False)
        with pytest.raises(ConfigurationError) as exc_info:
            get_encryption_key()
        assert "KEYWARDEN_ENCRYPTION_KEY" in str(exc_info.value)


class TestClassifyStoredValue:
    """Test suite for classify_stored_value precedence."""

    def test_empty(self):
        assert classify_stored_value(None) is StoredValueKind.EMPTY
        assert classify_stored_value("") is StoredValueKind.EMPTY

    def test_otpauth_uri_is_plaintext(self):
        uri = "otpauth://totp/Example:alice?secret=JBSWY3DPEHPK3PXP&issuer=Example"
        assert classify_stored_value(uri) is StoredValueKind.PLAINTEXT

    def test_v1_envelope_is_current(self):
        token = EnvelopeCipher(TEST_KEY).encrypt("x")
        assert classify_stored_value(token) is StoredValueKind.CURRENT

    def test_broken_v1_is_malformed(self):
        assert classify_stored_value("v1:nope") is StoredValueKind.MALFORMED
        assert classify_stored_value("v1:a:b:c") is StoredValueKind.MALFORMED

    def test_legacy_envelope(self):
        assert classify_stored_value(legacy_envelope(TEST_KEY, "x")) is StoredValueKind.LEGACY

    def test_plain_strings(self):
        """Colon-delimited text only counts as ciphertext when shaped exactly like one."""
        for value in ["hunter2", "user:pass", "a:b:c", "JBSWY3DPEHPK3PXP"]:
            assert classify_stored_value(value) is StoredValueKind.PLAINTEXT
