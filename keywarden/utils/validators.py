"""Input validation for KeyWarden identifiers and secrets."""

import re


class ValidationError(Exception):
    """Raised when validation fails."""
    pass


_BASE32_RE = re.compile(r'^[A-Z2-7]+=*$')
_WHITESPACE_RE = re.compile(r'\s+')


def sanitize_base32_secret(secret: str) -> str:
    """Normalize and validate a TOTP shared secret.

    Authenticator apps display secrets in space-separated groups, so all
    whitespace is removed. The result is upper-cased and must be RFC 4648
    base32 with padding only at the end.

    Raises:
        ValidationError: If the secret is empty or not base32
    """
    if not secret or not secret.strip():
        raise ValidationError("Secret cannot be empty")

    sanitized = _WHITESPACE_RE.sub('', secret).upper()
    if not _BASE32_RE.match(sanitized):
        raise ValidationError("Invalid TOTP secret format (Base32 expected)")
    return sanitized


def validate_user_id(user_id: str) -> str:
    """Validate an external identity (chat user ID or CLI principal).

    Raises:
        ValidationError: If empty, too long or containing control characters
    """
    if not user_id or not user_id.strip():
        raise ValidationError("User ID cannot be empty")
    if len(user_id) > 64:
        raise ValidationError("User ID too long (max 64 characters)")
    if any(ord(c) < 32 or ord(c) == 127 for c in user_id):
        raise ValidationError("User ID contains forbidden characters")
    return user_id.strip()
