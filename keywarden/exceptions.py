"""Custom exceptions for KeyWarden."""

from typing import Optional


class ConfigurationError(Exception):
    """Raised when required configuration is missing or malformed.

    Configuration errors are fatal at startup: the application must not serve
    traffic with a missing or invalid encryption key.
    """
    pass


class DecryptionError(Exception):
    """Raised when a ciphertext cannot be decrypted.

    The message is intentionally generic. Wrong key, tampered data and
    malformed input are indistinguishable to the caller.
    """

    def __init__(self) -> None:
        super().__init__("Decryption failed: invalid data or wrong key")


class DomainError(Exception):
    """Base class for errors raised by domain services."""
    pass


class SSRFProtectionError(DomainError):
    """Raised when an outbound URL points at an internal destination.

    Callback URLs come from API callers; KeyWarden must not be usable to
    reach loopback, private networks or cloud metadata endpoints.
    """
    pass


class DuplicateError(DomainError):
    """Raised when creating something that already exists."""
    pass


class ResourceNotFoundError(DomainError):
    """Raised when a resource, field or linked credential does not exist."""
    pass


class PermissionDeniedError(DomainError):
    """Raised when an authenticated caller is not entitled to an operation."""

    def __init__(self, message: str = "Access denied") -> None:
        super().__init__(message)


class RateLimitedError(DomainError):
    """Raised when a caller exhausts its rate limit bucket."""

    def __init__(self, retry_after: Optional[float] = None) -> None:
        self.retry_after = retry_after
        super().__init__("Rate limit exceeded. Please try again later.")


class NoGuardiansError(DomainError):
    """Raised when an approval request targets a resource with no guardians."""
    pass


class RequestNotFoundError(DomainError):
    """Raised when an approval request ID is unknown."""
    pass


class AlreadyResolvedError(DomainError):
    """Raised when a decision arrives for a request that is no longer pending.

    Distinct from other failures so the notifier can tell a late guardian
    their vote was moot.
    """

    def __init__(self, request_id: str, status: str) -> None:
        self.request_id = request_id
        self.status = status
        super().__init__(f"Request {request_id} is already resolved (status: {status})")


class RequestExpiredError(DomainError):
    """Raised when a decision arrives for a request past its expiry."""
    pass


class NotGuardianError(DomainError):
    """Raised when a non-guardian attempts to resolve an approval request."""

    def __init__(self) -> None:
        super().__init__("Access denied")


# ============================================================================
# Device authorization flow (OAuth2 device grant error codes)
# ============================================================================


class DeviceFlowError(DomainError):
    """Base class for device grant errors; ``error_code`` is the wire value."""

    error_code = "invalid_request"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.error_code)


class AuthorizationPendingError(DeviceFlowError):
    error_code = "authorization_pending"


class SlowDownError(DeviceFlowError):
    error_code = "slow_down"


class AccessDeniedError(DeviceFlowError):
    error_code = "access_denied"


class ExpiredTokenError(DeviceFlowError):
    error_code = "expired_token"


class InvalidGrantError(DeviceFlowError):
    error_code = "invalid_grant"


class UnsupportedGrantTypeError(DeviceFlowError):
    error_code = "unsupported_grant_type"
