"""Access token signing and verification.

Access tokens are RS256 JWTs signed with the key ring's current private
key. Any instance holding the public keys can verify them, which matters
because verification runs on every authenticated request while issuance
only happens at login and refresh.

Refresh tokens are not JWTs: they are opaque random strings whose state
lives in the refresh token store.
"""

import base64
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Iterable

import jwt
from config.config import Settings, settings
from core.clock import Clock, utcnow
from core.errors import InvalidTokenError
from core.keys import SigningKeyRing
from core.logging import logger
from core.permissions import flatten_role_claims
from pydantic import ValidationError
from schemas.auth import IssuedAccessToken, RoleRecord, TokenClaims, UserRecord

ALGORITHM = "RS256"
REFRESH_TOKEN_BYTES = 32


class TokenSigner:
    """Issue and verify access tokens, and mint opaque refresh tokens."""

    def __init__(
        self,
        key_ring: SigningKeyRing,
        config: Settings = settings,
        clock: Clock = utcnow,
    ):
        self.key_ring = key_ring
        self.issuer = config.JWT_ISSUER
        self.audience = config.JWT_AUDIENCE
        self.access_lifetime = timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)
        self.clock = clock

    def issue_access_token(
        self,
        user: UserRecord,
        roles: Iterable[RoleRecord],
        permissions: Iterable[str] | None = None,
        branch_id: str | None = None,
    ) -> IssuedAccessToken:
        """Sign an access token for ``user``.

        Args:
            user: Identity the token is issued to; supplies subject and tenant.
            roles: Roles held by the user.
            permissions: Flattened ``type:value`` permission strings. When
                omitted they are derived from the roles' claims.
            branch_id: Branch the session is bound to; falls back to the
                user's home branch. Omitted from the token when absent.

        Returns:
            IssuedAccessToken: The encoded token with its ``jti`` and lifetime.
        """
        roles = list(roles)
        if permissions is None:
            permissions = flatten_role_claims(
                claim for role in roles for claim in role.claims
            )
        else:
            permissions = sorted(set(permissions))

        issued_at = self.clock().replace(microsecond=0)
        expires_at = issued_at + self.access_lifetime
        jti = uuid.uuid4().hex

        payload = {
            "sub": user.id,
            "email": user.email,
            "name": user.display_name,
            "given_name": user.first_name,
            "family_name": user.last_name,
            "user_name": user.username,
            "tenant_id": user.tenant_id,
            "roles": [role.name for role in roles],
            "role_ids": [role.id for role in roles],
            "permissions": permissions,
            "token_type": "access",
            "iss": self.issuer,
            "aud": self.audience,
            "iat": issued_at,
            "nbf": issued_at,
            "exp": expires_at,
            "jti": jti,
        }
        branch = branch_id or user.branch_id
        if branch:
            payload["branch_id"] = branch

        token = jwt.encode(
            payload,
            self.key_ring.private_key,
            algorithm=ALGORITHM,
            headers={"kid": self.key_ring.key_id},
        )
        logger.info(
            "Issued access token jti={} for user_id={} tenant_id={}",
            jti,
            user.id,
            user.tenant_id,
        )
        return IssuedAccessToken(
            token=token, jti=jti, issued_at=issued_at, expires_at=expires_at
        )

    @staticmethod
    def issue_refresh_token() -> str:
        """Return 256 bits of CSPRNG output, base64 encoded."""
        return base64.b64encode(secrets.token_bytes(REFRESH_TOKEN_BYTES)).decode("ascii")

    def validate_access_token(self, token: str) -> TokenClaims:
        """Fully verify an access token, including its expiry."""
        return self._decode(token, verify_lifetime=True)

    def parse_expired_token(self, token: str) -> TokenClaims:
        """Verify signature, algorithm, issuer and audience but not expiry.

        Only the refresh flow uses this, to recover the subject of an access
        token that has already expired.
        """
        return self._decode(token, verify_lifetime=False)

    def _decode(self, token: str, verify_lifetime: bool) -> TokenClaims:
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as exc:
            raise InvalidTokenError("Malformed token") from exc

        if header.get("alg") != ALGORITHM:
            raise InvalidTokenError("Unexpected signing algorithm")

        key = self.key_ring.verification_key(header.get("kid"))
        if key is None:
            raise InvalidTokenError("Unknown signing key")

        try:
            payload = jwt.decode(
                token,
                key,
                algorithms=[ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                options={
                    "require": ["sub", "jti", "exp", "iat", "tenant_id"],
                    "verify_exp": verify_lifetime,
                    "verify_nbf": verify_lifetime,
                    "verify_iat": verify_lifetime,
                },
            )
        except jwt.ExpiredSignatureError as exc:
            raise InvalidTokenError("Token has expired") from exc
        except jwt.InvalidTokenError as exc:
            raise InvalidTokenError(str(exc) or "Invalid token") from exc

        if payload.get("token_type") != "access":
            raise InvalidTokenError("Not an access token")

        try:
            return TokenClaims.model_validate(payload)
        except ValidationError as exc:
            raise InvalidTokenError("Token claims are malformed") from exc

    @staticmethod
    def read_jti(token: str) -> tuple[str, datetime] | None:
        """Read ``jti`` and ``exp`` without verifying the signature.

        Returns:
            tuple[str, datetime] | None: The identifier and natural expiry,
                or None if the string is not a readable JWT.
        """
        try:
            payload = jwt.decode(token, options={"verify_signature": False})
        except jwt.InvalidTokenError:
            return None
        jti, exp = payload.get("jti"), payload.get("exp")
        if not isinstance(jti, str) or not isinstance(exp, (int, float)):
            return None
        return jti, datetime.fromtimestamp(exp, tz=timezone.utc)


@lru_cache(maxsize=1)
def get_token_signer() -> TokenSigner:
    """Process-wide signer; loading it fails fast if key material is missing."""
    return TokenSigner(SigningKeyRing.from_settings(settings))
