"""Deny-list of revoked access tokens, keyed by ``jti``.

``is_blacklisted`` sits on the path of every authenticated request and is a
single indexed lookup. Entries only live until the underlying access token
would have expired on its own; ``cleanup_expired`` removes them afterwards.
"""

from datetime import datetime, timedelta
from functools import lru_cache

from config.config import Settings, settings
from core.clock import Clock, as_utc, utcnow
from core.logging import logger
from core.tokens import TokenSigner
from db.session import AsyncSessionLocal
from models.auth import BlacklistedToken, RefreshToken
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


def _looks_like_jwt(value: str) -> bool:
    return value.count(".") == 2


class TokenBlacklist:
    """Persisted jti deny-list with expiry-bounded retention."""

    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        config: Settings = settings,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.default_ttl = timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)

    def _resolve(self, token_or_jti: str) -> tuple[str, datetime | None] | None:
        if not _looks_like_jwt(token_or_jti):
            return token_or_jti, None
        return TokenSigner.read_jti(token_or_jti)

    async def is_blacklisted(self, token_or_jti: str) -> bool:
        """Return True if a non-expired blacklist row exists for the token's jti.

        An unreadable token is reported as not blacklisted; signature
        validation rejects it on its own.
        """
        resolved = self._resolve(token_or_jti)
        if resolved is None:
            return False
        jti, _ = resolved
        async with self.session_factory() as db:
            result = await db.execute(
                select(BlacklistedToken.id)
                .where(
                    BlacklistedToken.token_id == jti,
                    BlacklistedToken.expires_at > self.clock(),
                )
                .limit(1)
            )
            return result.first() is not None

    async def blacklist(
        self,
        token_or_jti: str,
        reason: str,
        expires_at: datetime | None = None,
        tenant_id: str | None = None,
        user_id: str | None = None,
    ) -> bool:
        """Blacklist a token by its jti.

        Args:
            token_or_jti: An encoded access token or a bare jti.
            reason: Why the token is revoked (logout, rotation, compromise...).
            expires_at: Natural expiry of the token. Defaults to the token's
                own ``exp`` claim, or to one access token lifetime from now
                for a bare jti.
            tenant_id: Owning tenant, when known.
            user_id: Owning user, when known.

        Returns:
            bool: False if the token could not be read, True otherwise.
        """
        resolved = self._resolve(token_or_jti)
        if resolved is None:
            logger.warning("Refusing to blacklist unreadable token (reason={})", reason)
            return False
        jti, token_exp = resolved
        async with self.session_factory() as db, db.begin():
            await self.add(
                db,
                jti,
                reason,
                expires_at or token_exp,
                tenant_id=tenant_id,
                user_id=user_id,
            )
        return True

    async def add(
        self,
        db: AsyncSession,
        jti: str,
        reason: str,
        expires_at: datetime | None = None,
        tenant_id: str | None = None,
        user_id: str | None = None,
    ) -> None:
        """Insert a blacklist row inside the caller's transaction.

        Already blacklisted jtis are left untouched.
        """
        now = self.clock()
        existing = await db.execute(
            select(BlacklistedToken.id)
            .where(BlacklistedToken.token_id == jti, BlacklistedToken.expires_at > now)
            .limit(1)
        )
        if existing.first() is not None:
            return
        db.add(
            BlacklistedToken(
                token_id=jti,
                reason=reason,
                tenant_id=tenant_id,
                user_id=user_id,
                blacklisted_at=now,
                expires_at=as_utc(expires_at) or now + self.default_ttl,
            )
        )
        logger.info("Blacklisted token jti={} reason={}", jti, reason)

    async def blacklist_all_for_user(self, user_id: str, reason: str) -> int:
        """Blacklist the access token of every unexpired refresh token of a user.

        Returns:
            int: Number of jtis blacklisted.
        """
        now = self.clock()
        count = 0
        async with self.session_factory() as db, db.begin():
            result = await db.execute(
                select(RefreshToken).where(
                    RefreshToken.user_id == user_id,
                    RefreshToken.expires_at > now,
                    RefreshToken.jwt_token_id.is_not(None),
                )
            )
            for token in result.scalars().all():
                access_exp = as_utc(token.access_token_expires_at)
                if access_exp is not None and access_exp <= now:
                    continue
                await self.add(
                    db,
                    token.jwt_token_id,
                    reason,
                    access_exp,
                    tenant_id=token.tenant_id,
                    user_id=user_id,
                )
                count += 1
        logger.info(
            "Blacklisted {} access token(s) for user_id={} reason={}",
            count,
            user_id,
            reason,
        )
        return count

    async def cleanup_expired(self) -> int:
        """Delete blacklist rows whose token could no longer be accepted anyway."""
        async with self.session_factory() as db, db.begin():
            result = await db.execute(
                delete(BlacklistedToken)
                .where(BlacklistedToken.expires_at <= self.clock())
                .execution_options(synchronize_session=False)
            )
        removed = result.rowcount or 0
        if removed:
            logger.info("Cleaned up {} expired blacklisted token(s)", removed)
        return removed


@lru_cache(maxsize=1)
def get_token_blacklist() -> TokenBlacklist:
    return TokenBlacklist()
