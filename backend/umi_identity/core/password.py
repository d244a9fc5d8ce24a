"""Password hashing and password policy.

Stored hashes use the ``iterations.salt.key`` layout (PBKDF2-HMAC-SHA256,
base64 salt and key) shared with the rest of the platform. The scheme is
registered with ``pwdlib`` as the primary hasher; Argon2 stays registered
as a secondary hasher so hashes written by earlier deployments keep
verifying and can be flagged for rehash.
"""

import base64
import binascii
import hashlib
import hmac
import re
import secrets

from config.config import settings
from core.logging import logger
from pwdlib import PasswordHash
from pwdlib.exceptions import UnknownHashError
from pwdlib.hashers.argon2 import Argon2Hasher

SALT_SIZE = 16
KEY_SIZE = 32
MIN_PASSWORD_LENGTH = 8

_PBKDF2_PATTERN = re.compile(r"^\d+\.[A-Za-z0-9+/]+={0,2}\.[A-Za-z0-9+/]+={0,2}$")


def _as_bytes(value: str | bytes) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def _as_str(value: str | bytes) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


class Pbkdf2Hasher:
    """PBKDF2-HMAC-SHA256 hasher implementing pwdlib's hasher protocol."""

    def __init__(self, iterations: int = 10000):
        self.iterations = iterations

    @classmethod
    def identify(cls, hash: str | bytes) -> bool:
        try:
            return bool(_PBKDF2_PATTERN.match(_as_str(hash)))
        except UnicodeDecodeError:
            return False

    def hash(self, password: str | bytes, *, salt: bytes | None = None) -> str:
        salt = salt or secrets.token_bytes(SALT_SIZE)
        key = hashlib.pbkdf2_hmac(
            "sha256", _as_bytes(password), salt, self.iterations, dklen=KEY_SIZE
        )
        return "{}.{}.{}".format(
            self.iterations,
            base64.b64encode(salt).decode("ascii"),
            base64.b64encode(key).decode("ascii"),
        )

    def verify(self, password: str | bytes, hash: str | bytes) -> bool:
        try:
            iterations, salt, key = _as_str(hash).split(".", 2)
            rounds = int(iterations)
            salt_bytes = base64.b64decode(salt, validate=True)
            expected = base64.b64decode(key, validate=True)
        except (ValueError, binascii.Error, UnicodeDecodeError):
            return False
        if rounds <= 0 or not expected:
            return False
        candidate = hashlib.pbkdf2_hmac(
            "sha256", _as_bytes(password), salt_bytes, rounds, dklen=len(expected)
        )
        return hmac.compare_digest(candidate, expected)

    def check_needs_rehash(self, hash: str | bytes) -> bool:
        try:
            return int(_as_str(hash).split(".", 1)[0]) < self.iterations
        except ValueError:
            return True


class PasswordHasher:
    """One-way salted password hashing with fail-closed verification."""

    def __init__(self, iterations: int | None = None):
        self._pbkdf2 = Pbkdf2Hasher(iterations or settings.PBKDF2_ITERATIONS)
        self._password_hash = PasswordHash((self._pbkdf2, Argon2Hasher()))

    def hash(self, password: str) -> str:
        return self._password_hash.hash(password)

    def verify(self, password: str, hashed_password: str | None) -> bool:
        """Check ``password`` against a stored hash.

        A wrong password and a corrupt or unrecognised hash both return
        False so callers cannot tell the two apart.
        """
        if not password or not hashed_password:
            return False
        try:
            return self._password_hash.verify(password, hashed_password)
        except (UnknownHashError, ValueError):
            logger.warning("Password hash in unrecognised format, failing closed")
            return False

    def needs_rehash(self, hashed_password: str) -> bool:
        """Return True when the hash is not current-iteration PBKDF2."""
        if not Pbkdf2Hasher.identify(hashed_password):
            return True
        return self._pbkdf2.check_needs_rehash(hashed_password)


def is_valid_password(password: str | None) -> bool:
    """Policy gate for new passwords (registration, change and reset only).

    Requires at least 8 characters with an uppercase letter, a lowercase
    letter, a digit and a non-alphanumeric symbol.
    """
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        return False
    return (
        any(c.isupper() for c in password)
        and any(c.islower() for c in password)
        and any(c.isdigit() for c in password)
        and any(not c.isalnum() for c in password)
    )


password_hasher = PasswordHasher()
