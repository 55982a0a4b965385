"""Tests for TOTP helpers (keywarden/services/totp.py)."""

import pyotp
import pytest

from keywarden.services.totp import (
    ValidationError,
    generate_code,
    parse_otpauth_uri,
    verify_code,
)

SECRET = "JBSWY3DPEHPK3PXP"


class TestParseOtpauthUri:
    """Test suite for parse_otpauth_uri."""

    def test_parses_label_secret_and_issuer(self):
        parsed = parse_otpauth_uri(
            "otpauth://totp/GitHub:octocat?secret=jbswy3dpehpk3pxp&issuer=GitHub"
        )
        assert parsed.account_name == "octocat"
        assert parsed.secret == SECRET
        assert parsed.issuer == "GitHub"

    def test_issuer_optional(self):
        parsed = parse_otpauth_uri(f"otpauth://totp/octocat?secret={SECRET}")
        assert parsed.issuer is None

    @pytest.mark.parametrize(
        "uri",
        [
            "",
            "https://example.com",
            f"otpauth://hotp/octocat?secret={SECRET}&counter=1",
            "otpauth://totp/octocat",
        ],
    )
    def test_rejects_invalid_uris(self, uri):
        with pytest.raises(ValidationError):
            parse_otpauth_uri(uri)


class TestCodes:
    """Test suite for code generation and verification."""

    def test_generate_code_matches_rfc_6238_shape(self):
        code = generate_code(SECRET)
        assert len(code) == 6
        assert code.isdigit()

    def test_generate_code_for_fixed_time(self):
        assert generate_code(SECRET, for_time=59) == pyotp.TOTP(SECRET).at(59)

    def test_verify_code(self):
        assert verify_code(SECRET, generate_code(SECRET)) is True
        assert verify_code(SECRET, "abcdef") is False
