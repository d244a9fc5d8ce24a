import asyncio
import inspect
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa


def _pem_pair(bits: int = 2048) -> tuple[str, str]:
    key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    return private_pem, public_pem


# Environment must be in place before any application module builds settings.
_test_tmp_dir = tempfile.mkdtemp(prefix="umi_identity_test_")
TEST_PRIVATE_PEM, TEST_PUBLIC_PEM = _pem_pair()
os.environ["DATABASE_URL_ASYNC"] = f"sqlite+aiosqlite:///{_test_tmp_dir}/identity.db"
os.environ["JWT_PRIVATE_KEY"] = TEST_PRIVATE_PEM
os.environ["JWT_KEY_ID"] = "test-key"
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from config.config import settings  # noqa: E402
from core.clock import utcnow  # noqa: E402
from core.keys import SigningKeyRing  # noqa: E402
from core.password import PasswordHasher  # noqa: E402
from core.tokens import TokenSigner, get_token_signer  # noqa: E402
from db.session import AsyncSessionLocal, Base, engine  # noqa: E402
from models.auth import Role, RoleClaim, Tenant, User, UserRole  # noqa: E402
from schemas.auth import RoleRecord, UserRecord  # noqa: E402
from services.auth_service import AuthenticationService, get_auth_service  # noqa: E402
from services.blacklist import TokenBlacklist, get_token_blacklist  # noqa: E402
from services.password_reset import (  # noqa: E402
    PasswordResetStore,
    get_password_reset_store,
)
from services.refresh_tokens import (  # noqa: E402
    RefreshTokenStore,
    get_refresh_token_store,
)
from services.user_store import UserStore, get_user_store  # noqa: E402
from sqlalchemy import select  # noqa: E402
from sqlalchemy.exc import OperationalError  # noqa: E402


DEFAULT_PASSWORD = "Str0ng!Pass"


class FakeClock:
    """Controllable clock starting at the real current time."""

    def __init__(self, start: datetime | None = None):
        self.now = (start or utcnow()).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@dataclass
class SeededUser:
    id: str
    tenant_id: str
    email: str
    password: str
    role_id: str | None = None
    permissions: list[str] = field(default_factory=list)


def make_user(**overrides) -> UserRecord:
    values = dict(
        id="user-1",
        tenant_id="tenant-1",
        branch_id=None,
        first_name="Alice",
        last_name="Mwale",
        email="alice@example.com",
        username="alice",
        password_hash="x",
    )
    values.update(overrides)
    return UserRecord(**values)


ROLES = [
    RoleRecord(
        id="role-1",
        tenant_id="tenant-1",
        name="Pharmacist",
        claims=[("inventory", "read"), ("sales", "create")],
    ),
    RoleRecord(
        id="role-2",
        tenant_id="tenant-1",
        name="Cashier",
        claims=[("sales", "create"), ("payments", "approve")],
    ),
]


async def _recreate_schema() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


_SINGLETONS = (
    get_token_signer,
    get_token_blacklist,
    get_refresh_token_store,
    get_user_store,
    get_password_reset_store,
    get_auth_service,
)


@pytest.fixture(autouse=True)
def fresh_database():
    """Every test starts from empty tables and fresh service singletons."""
    asyncio.run(_recreate_schema())
    for provider in _SINGLETONS:
        provider.cache_clear()
    yield
    for provider in _SINGLETONS:
        provider.cache_clear()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def hasher():
    return PasswordHasher(iterations=10000)


@pytest.fixture
def key_ring():
    return SigningKeyRing.from_settings(settings)


@pytest.fixture
def signer(key_ring, clock):
    return TokenSigner(key_ring, clock=clock)


@pytest.fixture
def blacklist(clock):
    return TokenBlacklist(AsyncSessionLocal, clock=clock)


@pytest.fixture
def refresh_store(blacklist, clock):
    return RefreshTokenStore(blacklist, AsyncSessionLocal, clock=clock)


@pytest.fixture
def user_store():
    return UserStore(AsyncSessionLocal)


@pytest.fixture
def reset_store(clock):
    return PasswordResetStore(AsyncSessionLocal, clock=clock)


@pytest.fixture
def auth_service(user_store, refresh_store, signer, reset_store, hasher, clock):
    return AuthenticationService(
        users=user_store,
        refresh_tokens=refresh_store,
        signer=signer,
        resets=reset_store,
        hasher=hasher,
        clock=clock,
    )


async def seed_user(
    hasher: PasswordHasher,
    email: str = "pharmacist@example.com",
    password: str = DEFAULT_PASSWORD,
    permissions: tuple[tuple[str, str], ...] = (("inventory", "read"), ("sales", "create")),
    role_name: str = "Pharmacist",
    tenant_id: str | None = None,
    is_active: bool = True,
    password_hash: str | None = None,
) -> SeededUser:
    """Insert a tenant (unless given), a user and one role with ``permissions``."""
    async with AsyncSessionLocal() as db, db.begin():
        if tenant_id is None:
            tenant = Tenant(name="Umi Pharmacy", is_active=True)
            db.add(tenant)
            await db.flush()
            tenant_id = tenant.id
        user = User(
            tenant_id=tenant_id,
            branch_id=None,
            first_name="Ada",
            last_name="Banda",
            email=email,
            normalized_email=email.lower(),
            username=email.split("@")[0],
            normalized_username=email.split("@")[0].lower(),
            phone_number="",
            password_hash=password_hash or hasher.hash(password),
            is_active=is_active,
            failed_login_attempts=0,
            lockout_end=None,
            last_login_at=None,
            last_login_ip=None,
        )
        db.add(user)
        await db.flush()
        role_id = None
        if role_name:
            role = (
                await db.execute(
                    select(Role).where(
                        Role.tenant_id == tenant_id,
                        Role.normalized_name == role_name.lower(),
                    )
                )
            ).scalars().first()
            if role is None:
                new_role = Role(
                    tenant_id=tenant_id,
                    name=role_name,
                    normalized_name=role_name.lower(),
                    description="",
                )
                db.add(new_role)
                await db.flush()
                role_id = new_role.id
                for claim_type, claim_value in permissions:
                    db.add(
                        RoleClaim(
                            tenant_id=tenant_id,
                            role_id=role_id,
                            claim_type=claim_type,
                            claim_value=claim_value,
                        )
                    )
            else:
                role_id = role.id
            db.add(UserRole(tenant_id=tenant_id, user_id=user.id, role_id=role_id))
        user_id = user.id
    return SeededUser(
        id=user_id,
        tenant_id=tenant_id,
        email=email,
        password=password,
        role_id=role_id,
        permissions=sorted(f"{t}:{v}" for t, v in permissions) if role_name else [],
    )


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


class BrokenSession:
    """Session factory stand-in whose connection is always down."""

    async def __aenter__(self):
        raise OperationalError("SELECT 1", {}, ConnectionRefusedError("connection lost"))

    async def __aexit__(self, *exc):
        return False
