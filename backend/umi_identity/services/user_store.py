"""User, tenant and role persistence used by the authentication service.

Lookups return plain :class:`UserRecord`/:class:`RoleRecord` snapshots
built from explicit queries; nothing outside this module touches the ORM
rows of these tables.
"""

from datetime import datetime
from functools import lru_cache

from core.clock import as_utc
from core.logging import logger
from db.session import AsyncSessionLocal
from models.auth import Role, RoleClaim, Tenant, User, UserRole
from schemas.auth import RegisterRequest, RoleRecord, UserRecord
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

def _to_record(row: User) -> UserRecord:
    record = UserRecord.model_validate(row)
    return record.model_copy(
        update={
            "lockout_end": as_utc(record.lockout_end),
            "last_login_at": as_utc(record.last_login_at),
        }
    )


class UserStore:
    """Reads and targeted writes against the user, role and tenant tables.

    Writes are narrow UPDATE statements on the columns each operation owns.
    The authentication core never writes `is_active`.

    Args:
        session_factory: Async session factory, `AsyncSessionLocal` by default.
    """

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self.session_factory = session_factory

    async def find_user_by_email(
        self, email: str, tenant_id: str | None = None, active_only: bool = True
    ) -> UserRecord | None:
        """Case-insensitive lookup by email, optionally within one tenant.

        Args:
            email: Address as typed by the user.
            tenant_id: Restrict the lookup to this tenant.
            active_only: Skip deactivated accounts.

        Returns:
            UserRecord | None: Snapshot of the user, or None if not found.
        """
        stmt = select(User).where(User.normalized_email == email.strip().lower())
        if tenant_id is not None:
            stmt = stmt.where(User.tenant_id == tenant_id)
        if active_only:
            stmt = stmt.where(User.is_active == True)  # noqa: E712
        async with self.session_factory() as db:
            row = (await db.execute(stmt)).scalars().first()
            if row is None:
                return None
            logger.debug("Loaded user from DB id={}", row.id)
            return _to_record(row)

    async def find_user_by_id(
        self, user_id: str, active_only: bool = True
    ) -> UserRecord | None:
        """Load a user by id.

        Args:
            user_id: Primary key of the user.
            active_only: Skip deactivated accounts.

        Returns:
            UserRecord | None: Snapshot of the user, or None if not found.
        """
        stmt = select(User).where(User.id == user_id)
        if active_only:
            stmt = stmt.where(User.is_active == True)  # noqa: E712
        async with self.session_factory() as db:
            row = (await db.execute(stmt)).scalars().first()
            return _to_record(row) if row else None

    async def clear_expired_lockout(self, user_id: str, now: datetime) -> bool:
        """Reset the failure counter of an account whose lockout has elapsed.

        Args:
            user_id: Account to unlock.
            now: Current time; only a lockout ending at or before it is cleared.

        Returns:
            bool: True if a lockout was cleared.
        """
        async with self.session_factory() as db, db.begin():
            result = await db.execute(
                update(User)
                .where(
                    User.id == user_id,
                    User.lockout_end.is_not(None),
                    User.lockout_end <= now,
                )
                .values(failed_login_attempts=0, lockout_end=None)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    async def record_successful_login(
        self,
        user_id: str,
        now: datetime,
        ip_address: str | None,
        password_hash: str | None = None,
    ) -> bool:
        """Stamp a successful login and reset the failure counter.

        The update only applies to an account that is still active and not
        locked at ``now``, so an admin deactivation or a lockout committed
        while the password was being checked wins over the login.

        Args:
            user_id: Account that signed in.
            now: Login time.
            ip_address: Client address of the login.
            password_hash: Upgraded hash to store alongside, if any.

        Returns:
            bool: False if the account was deactivated or locked meanwhile.
        """
        values = {
            "failed_login_attempts": 0,
            "lockout_end": None,
            "last_login_at": now,
            "last_login_ip": ip_address,
        }
        if password_hash is not None:
            values["password_hash"] = password_hash
        async with self.session_factory() as db, db.begin():
            result = await db.execute(
                update(User)
                .where(
                    User.id == user_id,
                    User.is_active == True,  # noqa: E712
                    or_(User.lockout_end.is_(None), User.lockout_end <= now),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    async def set_password_hash(self, user_id: str, password_hash: str) -> bool:
        """Replace the stored hash of an active account, leaving lockout state alone."""
        async with self.session_factory() as db, db.begin():
            result = await db.execute(
                update(User)
                .where(User.id == user_id, User.is_active == True)  # noqa: E712
                .values(password_hash=password_hash)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    async def record_failed_login(
        self, user_id: str, threshold: int, lockout_until: datetime
    ) -> UserRecord | None:
        """Atomically bump the failure counter and lock the account at ``threshold``."""
        async with self.session_factory() as db, db.begin():
            await db.execute(
                update(User)
                .where(User.id == user_id)
                .values(failed_login_attempts=User.failed_login_attempts + 1)
                .execution_options(synchronize_session=False)
            )
            row = (
                await db.execute(select(User).where(User.id == user_id))
            ).scalars().first()
            if row is None:
                return None
            if row.failed_login_attempts >= threshold:
                row.lockout_end = lockout_until
                logger.warning(
                    "Account locked due to failed attempts user_id={} attempts={}",
                    user_id,
                    row.failed_login_attempts,
                )
            await db.flush()
            return _to_record(row)

    async def roles_for_user(self, user_id: str) -> list[RoleRecord]:
        """Return the user's roles, each with its claim pairs."""
        async with self.session_factory() as db:
            roles = (
                await db.execute(
                    select(Role)
                    .join(UserRole, UserRole.role_id == Role.id)
                    .where(UserRole.user_id == user_id)
                    .order_by(Role.name)
                )
            ).scalars().all()
            if not roles:
                return []
            claims = (
                await db.execute(
                    select(RoleClaim).where(RoleClaim.role_id.in_([r.id for r in roles]))
                )
            ).scalars().all()

        claims_by_role: dict[str, list[tuple[str, str]]] = {}
        for claim in claims:
            claims_by_role.setdefault(claim.role_id, []).append(
                (claim.claim_type, claim.claim_value)
            )
        return [
            RoleRecord(
                id=role.id,
                tenant_id=role.tenant_id,
                name=role.name,
                claims=claims_by_role.get(role.id, []),
            )
            for role in roles
        ]

    async def is_active_tenant(self, tenant_id: str) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Tenant.id).where(
                    Tenant.id == tenant_id,
                    Tenant.is_active == True,  # noqa: E712
                )
            )
            return result.first() is not None

    async def email_or_username_taken(self, email: str, username: str) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                select(User.id).where(
                    or_(
                        User.normalized_email == email.strip().lower(),
                        User.normalized_username == username.strip().lower(),
                    )
                )
            )
            return result.first() is not None

    async def create_user(self, request: RegisterRequest, password_hash: str) -> UserRecord:
        """Insert a new active user, assigning ``request.role_name`` if it exists in the tenant."""
        async with self.session_factory() as db, db.begin():
            user = User(
                tenant_id=request.tenant_id,
                branch_id=request.branch_id,
                first_name=request.first_name,
                last_name=request.last_name,
                email=request.email.strip(),
                normalized_email=request.email.strip().lower(),
                username=request.username.strip(),
                normalized_username=request.username.strip().lower(),
                phone_number=request.phone_number,
                password_hash=password_hash,
                is_active=True,
                failed_login_attempts=0,
                lockout_end=None,
                last_login_at=None,
                last_login_ip=None,
            )
            db.add(user)
            await db.flush()

            if request.role_name:
                role = (
                    await db.execute(
                        select(Role).where(
                            Role.tenant_id == request.tenant_id,
                            Role.normalized_name == request.role_name.strip().lower(),
                        )
                    )
                ).scalars().first()
                if role is not None:
                    db.add(UserRole(tenant_id=request.tenant_id, user_id=user.id, role_id=role.id))
                else:
                    logger.warning(
                        "Role {} not found in tenant_id={}, user created without it",
                        request.role_name,
                        request.tenant_id,
                    )
            record = _to_record(user)
        logger.info("User registered id={} tenant_id={}", record.id, record.tenant_id)
        return record


@lru_cache(maxsize=1)
def get_user_store() -> UserStore:
    return UserStore()
