"""Tests for security utilities (keywarden/utils/security.py, validators.py)."""

import pytest

from keywarden.utils.security import (
    constant_time_equals,
    generate_api_key,
    hash_token,
    mask_sensitive,
    sanitize_log_message,
)
from keywarden.utils.validators import (
    ValidationError,
    sanitize_base32_secret,
    validate_user_id,
)


class TestSanitizeLogMessage:
    def test_strips_newlines_and_control_chars(self):
        assert sanitize_log_message("user\nFAKE ENTRY\r\x00") == "userFAKE ENTRY"

    def test_non_strings(self):
        assert sanitize_log_message(None) == ""
        assert sanitize_log_message(42) == "42"


class TestMaskSensitive:
    def test_shows_last_chars(self):
        assert mask_sensitive("kw_1234567890abcdef") == "***cdef"

    def test_short_values_fully_masked(self):
        assert mask_sensitive("abc") == "***"
        assert mask_sensitive(None) == "***"


class TestCredentials:
    def test_api_keys_are_random_hex(self):
        first, second = generate_api_key(), generate_api_key()
        assert len(first) == 64
        int(first, 16)
        assert first != second

    def test_hash_token_is_stable_sha256(self):
        assert hash_token("kw_abc") == hash_token("kw_abc")
        assert len(hash_token("kw_abc")) == 64
        assert hash_token("kw_abc") != hash_token("kw_abd")

    def test_constant_time_equals(self):
        assert constant_time_equals("abc", "abc") is True
        assert constant_time_equals("abc", "abd") is False
        assert constant_time_equals("abc", "abcd") is False


class TestValidators:
    def test_base32_secret_normalized(self):
        assert sanitize_base32_secret(" jbsw y3dp\tehpk 3pxp ") == "JBSWY3DPEHPK3PXP"

    def test_base32_padding_allowed_at_end(self):
        assert sanitize_base32_secret("MZXW6===") == "MZXW6==="

    @pytest.mark.parametrize("secret", ["", "   ", "ABC1", "MZ=XW", "not-base32"])
    def test_invalid_base32(self, secret):
        with pytest.raises(ValidationError):
            sanitize_base32_secret(secret)

    def test_user_id_trimmed(self):
        assert validate_user_id(" 123456789012345678 ") == "123456789012345678"

    @pytest.mark.parametrize("user_id", ["", "  ", "x" * 65, "bad\x00id", "tab\tid"])
    def test_invalid_user_ids(self, user_id):
        with pytest.raises(ValidationError):
            validate_user_id(user_id)
