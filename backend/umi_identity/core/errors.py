"""Error taxonomy for the authentication core.

Expected failures (bad credentials, stale refresh tokens, locked accounts)
are reported through result objects carrying an :class:`AuthErrorCode`.
Exceptions are reserved for configuration faults and for token parsing,
where the caller converts them into a result at the service boundary.
"""

from enum import Enum


class AuthErrorCode(str, Enum):
    """Stable failure codes returned to the HTTP layer."""

    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_CURRENT_PASSWORD = "invalid_current_password"
    ACCOUNT_LOCKED = "account_locked"
    INVALID_REFRESH_TOKEN = "invalid_refresh_token"
    TOKEN_BLACKLISTED = "token_blacklisted"
    INVALID_TOKEN = "invalid_token"
    USER_NOT_FOUND = "user_not_found"
    USER_INACTIVE = "user_inactive"
    WEAK_PASSWORD = "weak_password"
    DUPLICATE_USER = "duplicate_user"
    INVALID_TENANT = "invalid_tenant"
    SERVICE_UNAVAILABLE = "service_unavailable"


class ConfigurationError(RuntimeError):
    """Raised at startup when signing keys or connection settings are unusable."""


class InvalidTokenError(Exception):
    """Raised when an access token fails signature, algorithm or claim checks."""

    def __init__(self, message: str = "Invalid token"):
        super().__init__(message)
        self.message = message
