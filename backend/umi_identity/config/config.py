"""Application settings loaded from environment for the Umi Health identity backend.

This module defines the :class:`Settings` model (based on Pydantic's
``BaseSettings``) and instantiates ``settings`` which is imported across
the application to access configuration values.

Signing key material is never hardcoded: it is supplied either inline via
``JWT_PRIVATE_KEY`` (PEM text) or through ``JWT_PRIVATE_KEY_FILE``.
"""

from pathlib import Path

from core.errors import ConfigurationError
from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings

BACKEND_DIR = Path(__file__).resolve().parent.parent.parent
ENV_FILE = BACKEND_DIR / ".env"


class Settings(BaseSettings):
    """Environment-backed application settings.

    Attributes:
        DATABASE_URL_ASYNC: Async database URL for SQLAlchemy.
        DB_ECHO: Echo SQL statements to the log.

        JWT_PRIVATE_KEY: PEM encoded RSA private key used to sign access tokens.
        JWT_PRIVATE_KEY_FILE: Path to a PEM file, used when JWT_PRIVATE_KEY is empty.
        JWT_KEY_ID: ``kid`` header value for tokens signed with the current key.
        JWT_RETIRED_PUBLIC_KEYS: ``kid=path`` entries of retired public keys
            still accepted for verification.
        JWT_ISSUER: Issuer claim written to and required on access tokens.
        JWT_AUDIENCE: Audience claim written to and required on access tokens.
        ACCESS_TOKEN_EXPIRE_MINUTES: Access token lifetime in minutes.
        REFRESH_TOKEN_EXPIRE_HOURS: Refresh token lifetime in hours.
        REFRESH_TOKEN_RETENTION_DAYS: How long expired refresh token rows are
            kept for audit before cleanup deletes them.
        REFRESH_TOKEN_CACHE_SECONDS: TTL of the in-process refresh token lookup cache.

        PASSWORD_RESET_EXPIRE_MINUTES: Lifetime of a password reset token.
        PBKDF2_ITERATIONS: Iteration count for newly hashed passwords.
        LOCKOUT_THRESHOLD: Failed logins before the account is locked.
        LOCKOUT_MINUTES: Length of the lockout window.

        BLACKLIST_CLEANUP_INTERVAL_SECONDS: Cadence of the background cleanup task.
        CORS_ORIGINS: Allowed browser origins for the portals.
    """

    DATABASE_URL_ASYNC: str
    DB_ECHO: bool = False

    JWT_PRIVATE_KEY: str = ""
    JWT_PRIVATE_KEY_FILE: str = ""
    JWT_KEY_ID: str = "umi-primary"
    JWT_RETIRED_PUBLIC_KEYS: list[str] = []
    JWT_ISSUER: str = "UmiHealth"
    JWT_AUDIENCE: str = "UmiHealthUsers"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_HOURS: int = 168
    REFRESH_TOKEN_RETENTION_DAYS: int = 30
    REFRESH_TOKEN_CACHE_SECONDS: int = 60

    PASSWORD_RESET_EXPIRE_MINUTES: int = 60
    PBKDF2_ITERATIONS: int = 10000
    LOCKOUT_THRESHOLD: int = 5
    LOCKOUT_MINUTES: int = 15

    BLACKLIST_CLEANUP_INTERVAL_SECONDS: int = 3600
    CORS_ORIGINS: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
    ]

    @field_validator("PBKDF2_ITERATIONS")
    @classmethod
    def _min_iterations(cls, value: int) -> int:
        if value < 10000:
            raise ValueError("PBKDF2_ITERATIONS must be at least 10000")
        return value

    @field_validator("ACCESS_TOKEN_EXPIRE_MINUTES", "REFRESH_TOKEN_EXPIRE_HOURS")
    @classmethod
    def _positive_lifetime(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token lifetimes must be positive")
        return value

    class Config:
        env_file = str(ENV_FILE)
        env_file_encoding = "utf-8"
        extra = "ignore"


def load_settings() -> Settings:
    """Build settings from the environment, failing fast on bad configuration."""
    try:
        return Settings()
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid application configuration: {exc}") from exc


settings = load_settings()
