"""RSA signing key management.

The private key is loaded once at process start from configuration (inline
PEM or a PEM file) and never generated on the fly. Verification accepts the
current public key plus a short list of retired public keys, addressed by
``kid``, so tokens issued just before a rotation stay valid until they
expire.
"""

from dataclasses import dataclass, field
from pathlib import Path

from config.config import Settings, settings
from core.errors import ConfigurationError
from core.logging import logger
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

MIN_KEY_BITS = 2048


def _load_private_key(pem: bytes) -> rsa.RSAPrivateKey:
    try:
        key = serialization.load_pem_private_key(pem, password=None)
    except (ValueError, TypeError) as exc:
        raise ConfigurationError("JWT private key is not a valid PEM key") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ConfigurationError("JWT private key must be an RSA key")
    if key.key_size < MIN_KEY_BITS:
        raise ConfigurationError(
            f"JWT private key is {key.key_size} bits, at least {MIN_KEY_BITS} required"
        )
    return key


def _load_public_key(pem: bytes) -> rsa.RSAPublicKey:
    try:
        key = serialization.load_pem_public_key(pem)
    except (ValueError, TypeError) as exc:
        raise ConfigurationError("Retired JWT public key is not a valid PEM key") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise ConfigurationError("Retired JWT public keys must be RSA keys")
    return key


@dataclass
class SigningKeyRing:
    """Current signing key plus verification-only retired keys."""

    key_id: str
    private_key: rsa.RSAPrivateKey
    retired: dict[str, rsa.RSAPublicKey] = field(default_factory=dict)

    @property
    def public_key(self) -> rsa.RSAPublicKey:
        return self.private_key.public_key()

    def verification_key(self, kid: str | None) -> rsa.RSAPublicKey | None:
        """Return the public key for ``kid``; tokens without a kid use the current key."""
        if kid is None or kid == self.key_id:
            return self.public_key
        return self.retired.get(kid)

    def public_pem(self) -> str:
        return self.public_key.public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "SigningKeyRing":
        """Build the key ring from settings, failing fast when key material is absent."""
        if config.JWT_PRIVATE_KEY:
            # NOTE: single-line env values carry the PEM with escaped newlines.
            pem = config.JWT_PRIVATE_KEY.replace("\\n", "\n").encode("utf-8")
        elif config.JWT_PRIVATE_KEY_FILE:
            path = Path(config.JWT_PRIVATE_KEY_FILE)
            if not path.is_file():
                raise ConfigurationError(f"JWT private key file not found: {path}")
            pem = path.read_bytes()
        else:
            raise ConfigurationError(
                "No signing key configured; set JWT_PRIVATE_KEY or JWT_PRIVATE_KEY_FILE"
            )

        retired: dict[str, rsa.RSAPublicKey] = {}
        for entry in config.JWT_RETIRED_PUBLIC_KEYS:
            kid, sep, location = entry.partition("=")
            if not sep or not kid or not location:
                raise ConfigurationError(
                    f"Retired key entry must look like kid=/path/to/key.pem, got {entry!r}"
                )
            path = Path(location)
            if not path.is_file():
                raise ConfigurationError(f"Retired public key file not found: {path}")
            retired[kid] = _load_public_key(path.read_bytes())

        ring = cls(
            key_id=config.JWT_KEY_ID,
            private_key=_load_private_key(pem),
            retired=retired,
        )
        logger.info(
            "Loaded signing key kid={} with {} retired verification key(s)",
            ring.key_id,
            len(retired),
        )
        return ring
