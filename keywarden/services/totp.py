"""TOTP helpers: otpauth URI parsing, secret validation and code generation."""

from dataclasses import dataclass
from typing import Optional

import pyotp

from keywarden.utils.validators import ValidationError, sanitize_base32_secret

TOTP_DIGITS = 6
TOTP_INTERVAL = 30


@dataclass
class ParsedOtpauthUri:
    account_name: str
    secret: str
    issuer: Optional[str] = None


def parse_otpauth_uri(uri: str) -> ParsedOtpauthUri:
    """Parse an ``otpauth://totp/...`` URI.

    Raises:
        ValidationError: If the URI is malformed, not TOTP, or lacks a label
            or secret
    """
    if not uri or not uri.startswith("otpauth://"):
        raise ValidationError("Invalid URI format")

    try:
        otp = pyotp.parse_uri(uri)
    except ValueError as e:
        raise ValidationError(f"Invalid TOTP URI: {e}") from e

    if not isinstance(otp, pyotp.TOTP):
        raise ValidationError("Only TOTP URIs are supported")
    if not otp.name:
        raise ValidationError("Missing label in TOTP URI")

    return ParsedOtpauthUri(
        account_name=otp.name,
        secret=sanitize_base32_secret(otp.secret),
        issuer=otp.issuer or None,
    )


def generate_code(secret: str, for_time: Optional[float] = None) -> str:
    """Current (or ``for_time``) 6-digit code for a base32 secret."""
    totp = pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL)
    if for_time is None:
        return totp.now()
    return totp.at(for_time)


def verify_code(secret: str, code: str) -> bool:
    """Check a code, allowing one step of clock drift."""
    totp = pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL)
    return totp.verify(code, valid_window=1)


__all__ = [
    "ParsedOtpauthUri",
    "ValidationError",
    "generate_code",
    "parse_otpauth_uri",
    "sanitize_base32_secret",
    "verify_code",
]
