"""Environment-backed configuration for KeyWarden.

Values are read once at import time. The encryption key is the exception:
it is resolved through ``get_encryption_key()`` so that the application
lifespan (and the rotation script) can fail fast with a clear error instead
of crashing on import.
"""

import os

from keywarden.exceptions import ConfigurationError

# Database URL from environment or default (relative ./data directory)
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./data/keywarden.db")

ENCRYPTION_KEY_ENV = "KEYWARDEN_ENCRYPTION_KEY"
ENCRYPTION_KEY_OLD_ENV = "KEYWARDEN_ENCRYPTION_KEY_OLD"
ENCRYPTION_KEY_NEW_ENV = "KEYWARDEN_ENCRYPTION_KEY_NEW"

# Rate limiting (fixed window token bucket)
RATE_LIMIT_CAPACITY = int(os.getenv("RATE_LIMIT_CAPACITY", "10"))
RATE_LIMIT_WINDOW_SECONDS = float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))

# Approval requests
APPROVAL_EXPIRY_MINUTES = int(os.getenv("APPROVAL_EXPIRY_MINUTES", "15"))
APPROVAL_GRANT_MINUTES = int(os.getenv("APPROVAL_GRANT_MINUTES", "15"))

# Device authorization flow
DEVICE_CODE_EXPIRES_SECONDS = int(os.getenv("DEVICE_CODE_EXPIRES_SECONDS", "1800"))
DEVICE_POLL_INTERVAL_SECONDS = int(os.getenv("DEVICE_POLL_INTERVAL_SECONDS", "5"))
DEVICE_VERIFICATION_URI = os.getenv("DEVICE_VERIFICATION_URI", "/keywarden cli-login")
API_TOKEN_TTL_DAYS = int(os.getenv("API_TOKEN_TTL_DAYS", "90"))

# Notifications
DISCORD_WEBHOOK_URL = os.getenv("DISCORD_WEBHOOK_URL", "")

# Backups taken before key rotation
BACKUP_DIRECTORY = os.getenv("BACKUP_DIRECTORY", "./backups")


def get_encryption_key(env_var: str = ENCRYPTION_KEY_ENV) -> str:
    """Return the hex encryption key from the environment.

    Raises:
        ConfigurationError: If the variable is unset or empty
    """
    key_hex = os.getenv(env_var, "").strip()
    if not key_hex:
        raise ConfigurationError(
            f"Encryption key not configured. Set the {env_var} environment variable "
            "to a 64-character hex string. Generate one with: "
            "python -c \"import secrets; print(secrets.token_hex(32))\""
        )
    return key_hex
