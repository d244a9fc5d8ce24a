"""Tests for refresh token persistence, rotation and revocation."""

import asyncio
from datetime import timedelta

from db.session import AsyncSessionLocal
from models.auth import RefreshToken
from services.refresh_tokens import RefreshTokenStore
from sqlalchemy import func, select


async def _row(token: str) -> RefreshToken:
    async with AsyncSessionLocal() as db:
        return (
            await db.execute(select(RefreshToken).where(RefreshToken.token == token))
        ).scalars().one()


class TestCreate:
    async def test_new_token_is_valid(self, refresh_store, clock):
        record = await refresh_store.create(
            "user-1",
            "tenant-1",
            "jti-1",
            clock() + timedelta(minutes=15),
            device_info="Firefox",
            ip_address="10.0.0.1",
        )

        assert await refresh_store.validate(record.token)
        assert record.expires_at == clock() + timedelta(hours=168)
        assert record.jwt_token_id == "jti-1"
        assert record.device_info == "Firefox"
        assert record.ip_address == "10.0.0.1"

    async def test_new_token_supersedes_earlier_chain(self, refresh_store, blacklist):
        first = await refresh_store.create("user-1", "tenant-1", "jti-1")
        second = await refresh_store.create("user-1", "tenant-1", "jti-2")

        assert not await refresh_store.validate(first.token)
        assert await refresh_store.validate(second.token)
        assert await blacklist.is_blacklisted("jti-1")
        assert not await blacklist.is_blacklisted("jti-2")
        assert [s.token for s in await refresh_store.list_active_for_user("user-1")] == [
            second.token
        ]

    async def test_other_users_are_untouched(self, refresh_store):
        mine = await refresh_store.create("user-1", "tenant-1", "jti-1")
        await refresh_store.create("user-2", "tenant-1", "jti-2")
        assert await refresh_store.validate(mine.token)


class TestValidate:
    async def test_unknown_token(self, refresh_store):
        assert not await refresh_store.validate("does-not-exist")
        assert not await refresh_store.validate("")

    async def test_expiry_wins_over_flags(self, refresh_store, clock):
        record = await refresh_store.create("user-1", "tenant-1", "jti-1")

        clock.advance(hours=168, seconds=1)

        row = await _row(record.token)
        assert row.is_used is False
        assert row.is_revoked is False
        assert not await refresh_store.validate(record.token)

    async def test_cached_record_is_rechecked_for_expiry(self, blacklist, clock):
        store = RefreshTokenStore(blacklist, AsyncSessionLocal, clock=clock)
        record = await store.create("user-1", "tenant-1", "jti-1")
        assert await store.validate(record.token)

        clock.advance(days=8)
        assert not await store.validate(record.token)


class TestRevoke:
    async def test_revoke_blacklists_access_token(self, refresh_store, blacklist):
        record = await refresh_store.create("user-1", "tenant-1", "jti-1")

        assert await refresh_store.revoke(record.token)
        assert not await refresh_store.validate(record.token)
        assert await blacklist.is_blacklisted("jti-1")

        row = await _row(record.token)
        assert row.is_revoked is True
        assert row.revoked_at is not None

    async def test_revoke_is_idempotent(self, refresh_store):
        record = await refresh_store.create("user-1", "tenant-1", "jti-1")
        assert await refresh_store.revoke(record.token)
        assert await refresh_store.revoke(record.token)

    async def test_revoke_unknown_token(self, refresh_store):
        assert await refresh_store.revoke("does-not-exist") is False

    async def test_revoke_all_for_user(self, refresh_store, blacklist):
        record = await refresh_store.create("user-1", "tenant-1", "jti-1")

        assert await refresh_store.revoke_all_for_user("user-1")
        assert not await refresh_store.validate(record.token)
        assert await blacklist.is_blacklisted("jti-1")
        assert await refresh_store.list_active_for_user("user-1") == []
        # NOTE: nothing left to revoke is still a success.
        assert await refresh_store.revoke_all_for_user("user-1")


class TestRotate:
    async def test_rotation_spends_old_token(self, refresh_store, blacklist):
        old = await refresh_store.create("user-1", "tenant-1", "jti-1")

        new = await refresh_store.rotate(old.token, "user-1", "tenant-1", "jti-2")

        assert new is not None
        assert new.token != old.token
        assert await refresh_store.validate(new.token)
        assert not await refresh_store.validate(old.token)
        assert (await _row(old.token)).is_used is True
        assert await blacklist.is_blacklisted("jti-1")

    async def test_token_rotates_only_once(self, refresh_store):
        old = await refresh_store.create("user-1", "tenant-1", "jti-1")

        assert await refresh_store.rotate(old.token, "user-1", "tenant-1", "jti-2")
        assert await refresh_store.rotate(old.token, "user-1", "tenant-1", "jti-3") is None

    async def test_rotation_requires_owner(self, refresh_store):
        old = await refresh_store.create("user-1", "tenant-1", "jti-1")
        assert await refresh_store.rotate(old.token, "user-2", "tenant-1", "jti-2") is None
        assert await refresh_store.validate(old.token)

    async def test_concurrent_rotation_has_single_winner(self, refresh_store):
        old = await refresh_store.create("user-1", "tenant-1", "jti-1")

        results = await asyncio.gather(
            refresh_store.rotate(old.token, "user-1", "tenant-1", "jti-a"),
            refresh_store.rotate(old.token, "user-1", "tenant-1", "jti-b"),
            return_exceptions=True,
        )

        winners = [r for r in results if r is not None and not isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(await refresh_store.list_active_for_user("user-1")) == 1


class TestCleanup:
    async def test_rows_kept_for_retention_window(self, refresh_store, clock):
        await refresh_store.create("user-1", "tenant-1", "jti-1")

        clock.advance(hours=168 + 24)
        assert await refresh_store.cleanup_expired() == 0

        clock.advance(days=30)
        assert await refresh_store.cleanup_expired() == 1
        async with AsyncSessionLocal() as db:
            remaining = await db.scalar(select(func.count()).select_from(RefreshToken))
        assert remaining == 0


class TestCache:
    async def test_expired_entries_are_pruned_on_insert(self, refresh_store, clock):
        abandoned = await refresh_store.create("user-1", "tenant-1", "jti-1")
        assert abandoned.token in refresh_store._cache

        clock.advance(hours=168, seconds=1)
        fresh = await refresh_store.create("user-2", "tenant-1", "jti-2")

        assert abandoned.token not in refresh_store._cache
        assert fresh.token in refresh_store._cache

    async def test_entries_past_the_ttl_are_pruned_on_insert(self, refresh_store):
        abandoned = await refresh_store.create("user-1", "tenant-1", "jti-1")
        record, stored_at = refresh_store._cache[abandoned.token]
        refresh_store._cache[abandoned.token] = (record, stored_at - refresh_store.cache_ttl - 1)

        await refresh_store.create("user-2", "tenant-1", "jti-2")

        assert abandoned.token not in refresh_store._cache
        assert await refresh_store.validate(abandoned.token)
