"""Security helpers for log hygiene and bearer credentials.

- Log injection: strip control characters from user input before logging
- Secret exposure: mask API keys and tokens before they reach logs
- Bearer credentials: generate, hash and compare without timing leaks
"""

import hashlib
import hmac
import re
import secrets
from typing import Union

_CONTROL_CHARS = re.compile(r'[\n\r\t\x00-\x1f\x7f-\x9f]')


def sanitize_log_message(msg: Union[str, bytes, int, float, None]) -> str:
    """Remove newlines and control characters from log messages.

    Identities and resource names come from chat users and CLI callers, so
    they are untrusted when interpolated into log lines.

    Examples:
        >>> sanitize_log_message("user\\nFAKE ENTRY")
        'userFAKE ENTRY'
    """
    if msg is None:
        return ""
    return _CONTROL_CHARS.sub('', str(msg))


def mask_sensitive(value: Union[str, None], visible_chars: int = 4, mask_char: str = "*") -> str:
    """Mask a secret, showing only the last ``visible_chars`` characters.

    Examples:
        >>> mask_sensitive("kw_1234567890abcdef")
        '***cdef'
        >>> mask_sensitive("abc")
        '***'
    """
    if not value or len(value) <= visible_chars:
        return mask_char * 3
    return f"{mask_char * 3}{value[-visible_chars:]}"


def generate_api_key() -> str:
    """Random resource API key (64 hex chars)."""
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    """SHA-256 hex digest used to store bearer tokens."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def constant_time_equals(a: str, b: str) -> bool:
    """Compare two secrets without leaking where they differ."""
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
