"""Authentication models: tenants, users, roles and token tracking.

Every table is tenant-scoped through a ``tenant_id`` column. Rows reference
each other by id only; services load related rows with explicit queries
instead of navigating relationship attributes.
"""

import uuid

from db.session import Base
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.sql import func


def new_id() -> str:
    return str(uuid.uuid4())


class Tenant(Base):
    """A pharmacy or clinic organisation owning users, roles and branches."""

    __tablename__ = "tenants"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(200), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Branch(Base):
    __tablename__ = "branches"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class User(Base):
    """Database model representing a platform user.

    Only ``password_hash``, ``failed_login_attempts``, ``lockout_end`` and
    ``is_active`` matter to the authentication core; the authentication
    service is the only writer of the lockout fields.

    Attributes:
        normalized_email: Lower-cased email used for case-insensitive lookup.
        failed_login_attempts: Consecutive failed logins since the last success.
        lockout_end: Logins are rejected until this instant when set.
    """

    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("normalized_email", name="uq_users_normalized_email"),
        UniqueConstraint("normalized_username", name="uq_users_normalized_username"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    branch_id = Column(String(36), ForeignKey("branches.id"), nullable=True)
    first_name = Column(String(100), nullable=False, default="")
    last_name = Column(String(100), nullable=False, default="")
    email = Column(String(320), nullable=False)
    normalized_email = Column(String(320), nullable=False, index=True)
    username = Column(String(100), nullable=False)
    normalized_username = Column(String(100), nullable=False)
    phone_number = Column(String(40), nullable=False, default="")
    password_hash = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    failed_login_attempts = Column(Integer, nullable=False, default=0)
    lockout_end = Column(DateTime(timezone=True), nullable=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    last_login_ip = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Role(Base):
    __tablename__ = "roles"
    __table_args__ = (
        UniqueConstraint("tenant_id", "normalized_name", name="uq_roles_tenant_name"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    normalized_name = Column(String(100), nullable=False)
    description = Column(String(500), nullable=False, default="")


class UserRole(Base):
    __tablename__ = "user_roles"
    __table_args__ = (UniqueConstraint("user_id", "role_id", name="uq_user_roles"),)

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    role_id = Column(String(36), ForeignKey("roles.id"), nullable=False)


class RoleClaim(Base):
    """A ``claim_type``/``claim_value`` pair granted to every holder of a role."""

    __tablename__ = "role_claims"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False)
    role_id = Column(String(36), ForeignKey("roles.id"), nullable=False, index=True)
    claim_type = Column(String(100), nullable=False)
    claim_value = Column(String(100), nullable=False)


class RefreshToken(Base):
    """Opaque refresh token issued alongside an access token.

    Rows are never deleted by normal use: exchanging a token sets
    ``is_used``, revocation sets ``is_revoked``. Only retention cleanup
    removes rows, long after ``expires_at``.

    Attributes:
        token: The opaque token value handed to the client.
        jwt_token_id: ``jti`` of the access token issued with this token.
        access_token_expires_at: Natural expiry of that access token, used
            to bound the blacklist entry written on revocation.
    """

    __tablename__ = "refresh_tokens"
    __table_args__ = (
        Index("ix_refresh_tokens_user_active", "user_id", "is_used", "is_revoked"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    token = Column(String(128), nullable=False, unique=True, index=True)
    jwt_token_id = Column(String(64), nullable=True)
    access_token_expires_at = Column(DateTime(timezone=True), nullable=True)
    is_used = Column(Boolean, nullable=False, default=False)
    is_revoked = Column(Boolean, nullable=False, default=False)
    issued_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)

    # NOTE: Device/session tracking (optional but useful for audits)
    device_info = Column(String(255), nullable=True)
    ip_address = Column(String(64), nullable=True)


class BlacklistedToken(Base):
    """A revoked access token identified by its ``jti``.

    ``expires_at`` mirrors the natural expiry of the access token so cleanup
    can drop the row once the token could never be accepted again.
    """

    __tablename__ = "blacklisted_tokens"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(36), nullable=True, index=True)
    user_id = Column(String(36), nullable=True)
    token_id = Column(String(64), nullable=False, index=True)
    reason = Column(String(200), nullable=False)
    blacklisted_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)


class PasswordResetToken(Base):
    """Single-use password reset token, consumed together with the password update."""

    __tablename__ = "password_reset_tokens"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    token = Column(String(128), nullable=False, unique=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
