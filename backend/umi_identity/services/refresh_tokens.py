"""Persisted refresh tokens with single-active-chain rotation.

A user holds at most one active refresh token. Creating a new one revokes
every earlier active token of that user (and blacklists the access tokens
issued alongside them) in the same transaction as the insert.

Exchanging a token during refresh is a compare-and-set on the row: only a
caller whose ``UPDATE ... WHERE NOT is_used AND NOT is_revoked`` actually
changes the row may mint the replacement. Two concurrent refresh calls with
the same token therefore cannot both succeed.
"""

import time
from datetime import datetime, timedelta
from functools import lru_cache

from config.config import Settings, settings
from core.clock import Clock, as_utc, utcnow
from core.logging import logger
from core.tokens import TokenSigner
from db.session import AsyncSessionLocal
from models.auth import RefreshToken
from schemas.auth import RefreshTokenRecord
from services.blacklist import TokenBlacklist, get_token_blacklist
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


def _to_record(row: RefreshToken) -> RefreshTokenRecord:
    record = RefreshTokenRecord.model_validate(row)
    return record.model_copy(
        update={
            "issued_at": as_utc(record.issued_at),
            "expires_at": as_utc(record.expires_at),
            "access_token_expires_at": as_utc(record.access_token_expires_at),
            "revoked_at": as_utc(record.revoked_at),
        }
    )


class RefreshTokenStore:
    """Durable refresh token store with a short-lived lookup cache in front."""

    def __init__(
        self,
        blacklist: TokenBlacklist,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        config: Settings = settings,
        clock: Clock = utcnow,
    ):
        self.blacklist = blacklist
        self.session_factory = session_factory
        self.clock = clock
        self.lifetime = timedelta(hours=config.REFRESH_TOKEN_EXPIRE_HOURS)
        self.retention = timedelta(days=config.REFRESH_TOKEN_RETENTION_DAYS)
        self.cache_ttl = config.REFRESH_TOKEN_CACHE_SECONDS
        self._cache: dict[str, tuple[RefreshTokenRecord, float]] = {}

    # cache

    def _cache_get(self, token: str) -> RefreshTokenRecord | None:
        entry = self._cache.get(token)
        if entry is None:
            return None
        record, stored_at = entry
        if time.monotonic() - stored_at > self.cache_ttl:
            self._cache.pop(token, None)
            return None
        return record

    def _cache_put(self, record: RefreshTokenRecord) -> None:
        if self.cache_ttl <= 0:
            return
        stored_at = time.monotonic()
        self._prune_cache(stored_at)
        self._cache[record.token] = (record, stored_at)

    def _prune_cache(self, now_monotonic: float) -> None:
        # NOTE: drops entries past the cache TTL or past the token's own expiry.
        now = self.clock()
        stale = [
            token
            for token, (record, stored_at) in self._cache.items()
            if now_monotonic - stored_at > self.cache_ttl or record.expires_at <= now
        ]
        for token in stale:
            del self._cache[token]

    def _cache_drop(self, token: str) -> None:
        self._cache.pop(token, None)

    # reads

    async def get(self, token: str) -> RefreshTokenRecord | None:
        """Look up a refresh token by its opaque value.

        Only active records are cached; the database stays authoritative for
        every state change.
        """
        if not token:
            return None
        cached = self._cache_get(token)
        if cached is not None:
            return cached
        async with self.session_factory() as db:
            result = await db.execute(select(RefreshToken).where(RefreshToken.token == token))
            row = result.scalars().first()
            if row is None:
                return None
            record = _to_record(row)
        if record.is_active(self.clock()):
            self._cache_put(record)
        return record

    def is_usable(self, record: RefreshTokenRecord | None) -> bool:
        return record is not None and record.is_active(self.clock())

    async def validate(self, token: str) -> bool:
        """True if the token exists, is unused, unrevoked and not expired."""
        return self.is_usable(await self.get(token))

    async def list_active_for_user(self, user_id: str) -> list[RefreshTokenRecord]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(RefreshToken)
                .where(
                    RefreshToken.user_id == user_id,
                    RefreshToken.is_used == False,  # noqa: E712
                    RefreshToken.is_revoked == False,  # noqa: E712
                    RefreshToken.expires_at > self.clock(),
                )
                .order_by(RefreshToken.issued_at.desc())
            )
            return [_to_record(row) for row in result.scalars().all()]

    # writes

    async def create(
        self,
        user_id: str,
        tenant_id: str,
        access_token_jti: str,
        access_token_expires_at: datetime | None = None,
        device_info: str | None = None,
        ip_address: str | None = None,
    ) -> RefreshTokenRecord:
        """Issue and persist a refresh token, superseding the user's active chain."""
        async with self.session_factory() as db, db.begin():
            record = await self.create_in(
                db,
                user_id,
                tenant_id,
                access_token_jti,
                access_token_expires_at,
                device_info=device_info,
                ip_address=ip_address,
            )
        self._cache_put(record)
        return record

    async def create_in(
        self,
        db: AsyncSession,
        user_id: str,
        tenant_id: str,
        access_token_jti: str,
        access_token_expires_at: datetime | None = None,
        device_info: str | None = None,
        ip_address: str | None = None,
    ) -> RefreshTokenRecord:
        """Create a refresh token inside the caller's transaction.

        Existing active tokens of the user are revoked before the insert.
        """
        await self._revoke_active_in(db, user_id, reason="superseded_by_new_session")

        now = self.clock()
        row = RefreshToken(
            tenant_id=tenant_id,
            user_id=user_id,
            token=TokenSigner.issue_refresh_token(),
            jwt_token_id=access_token_jti,
            access_token_expires_at=access_token_expires_at,
            is_used=False,
            is_revoked=False,
            issued_at=now,
            expires_at=now + self.lifetime,
            revoked_at=None,
            device_info=device_info[:255] if device_info else None,
            ip_address=ip_address,
        )
        db.add(row)
        await db.flush()
        logger.info(
            "Stored refresh token id={} for user_id={} tenant_id={}",
            row.id,
            user_id,
            tenant_id,
        )
        return _to_record(row)

    async def rotate(
        self,
        token: str,
        user_id: str,
        tenant_id: str,
        access_token_jti: str,
        access_token_expires_at: datetime | None = None,
        device_info: str | None = None,
        ip_address: str | None = None,
    ) -> RefreshTokenRecord | None:
        """Exchange ``token`` for a new refresh token as one unit of work.

        Returns:
            RefreshTokenRecord | None: The replacement, or None when the
                presented token was no longer exchangeable (already used,
                revoked, expired, owned by someone else, or lost a race).
        """
        self._cache_drop(token)
        async with self.session_factory() as db, db.begin():
            now = self.clock()
            result = await db.execute(
                update(RefreshToken)
                .where(
                    RefreshToken.token == token,
                    RefreshToken.user_id == user_id,
                    RefreshToken.is_used == False,  # noqa: E712
                    RefreshToken.is_revoked == False,  # noqa: E712
                    RefreshToken.expires_at > now,
                )
                .values(is_used=True, revoked_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.warning("Refresh token exchange rejected for user_id={}", user_id)
                return None

            old = (
                await db.execute(select(RefreshToken).where(RefreshToken.token == token))
            ).scalars().one()
            await self._blacklist_row(db, old, reason="refresh_token_rotated")

            record = await self.create_in(
                db,
                user_id,
                tenant_id,
                access_token_jti,
                access_token_expires_at,
                device_info=device_info,
                ip_address=ip_address,
            )
        self._cache_put(record)
        return record

    async def revoke(self, token: str, reason: str = "refresh_token_revoked") -> bool:
        """Revoke one refresh token and blacklist its access token.

        Returns:
            bool: False if no such token exists. Revoking an already revoked
                or used token is a no-op that still returns True.
        """
        self._cache_drop(token)
        async with self.session_factory() as db, db.begin():
            result = await db.execute(
                select(RefreshToken).where(RefreshToken.token == token).with_for_update()
            )
            row = result.scalars().first()
            if row is None:
                return False
            if row.is_revoked:
                return True
            row.is_revoked = True
            row.revoked_at = self.clock()
            await self._blacklist_row(db, row, reason=reason)
        logger.info("Revoked refresh token id={} for user_id={}", row.id, row.user_id)
        return True

    async def revoke_all_for_user(
        self, user_id: str, reason: str = "user_sessions_revoked"
    ) -> bool:
        """Revoke and blacklist every active refresh token of a user."""
        async with self.session_factory() as db, db.begin():
            count = await self._revoke_active_in(db, user_id, reason=reason)
        logger.info(
            "Revoked all refresh tokens for user_id={} (count={})", user_id, count
        )
        return True

    async def cleanup_expired(self) -> int:
        """Delete rows that expired longer ago than the audit retention window."""
        cutoff = self.clock() - self.retention
        async with self.session_factory() as db, db.begin():
            result = await db.execute(
                delete(RefreshToken)
                .where(RefreshToken.expires_at <= cutoff)
                .execution_options(synchronize_session=False)
            )
        removed = result.rowcount or 0
        if removed:
            logger.info("Deleted {} refresh token(s) past retention", removed)
        return removed

    async def _revoke_active_in(self, db: AsyncSession, user_id: str, reason: str) -> int:
        result = await db.execute(
            select(RefreshToken)
            .where(
                RefreshToken.user_id == user_id,
                RefreshToken.is_used == False,  # noqa: E712
                RefreshToken.is_revoked == False,  # noqa: E712
            )
            .with_for_update()
        )
        rows = result.scalars().all()
        now = self.clock()
        for row in rows:
            row.is_revoked = True
            row.revoked_at = now
            self._cache_drop(row.token)
            await self._blacklist_row(db, row, reason=reason)
        return len(rows)

    async def _blacklist_row(self, db: AsyncSession, row: RefreshToken, reason: str) -> None:
        if not row.jwt_token_id:
            return
        await self.blacklist.add(
            db,
            row.jwt_token_id,
            reason,
            row.access_token_expires_at,
            tenant_id=row.tenant_id,
            user_id=row.user_id,
        )


@lru_cache(maxsize=1)
def get_refresh_token_store() -> RefreshTokenStore:
    return RefreshTokenStore(get_token_blacklist())
