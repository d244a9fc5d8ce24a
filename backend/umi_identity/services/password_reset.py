"""Single-use password reset tokens."""

import secrets
from datetime import timedelta
from functools import lru_cache

from config.config import Settings, settings
from core.clock import Clock, utcnow
from core.logging import logger
from db.session import AsyncSessionLocal
from models.auth import PasswordResetToken, User
from schemas.auth import UserRecord
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker


class PasswordResetStore:
    """Issues and consumes single-use password reset tokens.

    A user holds at most one outstanding token. Consuming it replaces the
    password hash and clears the lockout in the same transaction.

    Args:
        session_factory: Async session factory, `AsyncSessionLocal` by default.
        config: Settings supplying the token lifetime.
        clock: Time source.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        config: Settings = settings,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.lifetime = timedelta(minutes=config.PASSWORD_RESET_EXPIRE_MINUTES)

    async def issue(self, user: UserRecord) -> str:
        """Create a reset token for ``user``, replacing any outstanding one.

        Args:
            user: Account the token is for.

        Returns:
            str: URL-safe token to deliver to the user.
        """
        token = secrets.token_urlsafe(32)
        now = self.clock()
        async with self.session_factory() as db, db.begin():
            await db.execute(
                delete(PasswordResetToken)
                .where(PasswordResetToken.user_id == user.id)
                .execution_options(synchronize_session=False)
            )
            db.add(
                PasswordResetToken(
                    tenant_id=user.tenant_id,
                    user_id=user.id,
                    token=token,
                    created_at=now,
                    expires_at=now + self.lifetime,
                )
            )
        logger.info("Password reset token generated for user_id={}", user.id)
        return token

    async def consume(self, token: str, new_password_hash: str) -> str | None:
        """Apply ``new_password_hash`` and delete the token in one transaction.

        The account's failure counter and lockout are cleared as well.

        Returns:
            str | None: The id of the user whose password changed, or None if
                the token is unknown or expired.
        """
        now = self.clock()
        async with self.session_factory() as db, db.begin():
            reset = (
                await db.execute(
                    select(PasswordResetToken)
                    .where(
                        PasswordResetToken.token == token,
                        PasswordResetToken.expires_at > now,
                    )
                    .with_for_update()
                )
            ).scalars().first()
            if reset is None:
                return None
            await db.execute(
                update(User)
                .where(User.id == reset.user_id)
                .values(
                    password_hash=new_password_hash,
                    failed_login_attempts=0,
                    lockout_end=None,
                )
                .execution_options(synchronize_session=False)
            )
            await db.delete(reset)
            user_id = reset.user_id
        logger.info("Password reset completed for user_id={}", user_id)
        return user_id

    async def has_pending(self, user_id: str) -> bool:
        """True if ``user_id`` has an unexpired reset token waiting."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(PasswordResetToken.id).where(
                    PasswordResetToken.user_id == user_id,
                    PasswordResetToken.expires_at > self.clock(),
                )
            )
            return result.first() is not None

    async def cleanup_expired(self) -> int:
        """Delete expired tokens.

        Returns:
            int: Number of rows removed.
        """
        async with self.session_factory() as db, db.begin():
            result = await db.execute(
                delete(PasswordResetToken)
                .where(PasswordResetToken.expires_at <= self.clock())
                .execution_options(synchronize_session=False)
            )
        return result.rowcount or 0


@lru_cache(maxsize=1)
def get_password_reset_store() -> PasswordResetStore:
    return PasswordResetStore()
