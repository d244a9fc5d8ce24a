"""Pydantic schemas for the authentication core.

Two groups live here: internal records handed between the stores and the
authentication service (plain data loaded by explicit queries, never live
ORM objects), and the request/response bodies of the auth routes, which
the portals exchange in camelCase.
"""

from datetime import datetime

from core.errors import AuthErrorCode
from pydantic import BaseModel
from pydantic.alias_generators import to_camel


class UserRecord(BaseModel):
    """Internal user model including credential and lockout fields."""

    id: str
    tenant_id: str
    branch_id: str | None = None
    first_name: str = ""
    last_name: str = ""
    email: str
    username: str
    phone_number: str = ""
    password_hash: str
    is_active: bool = True
    failed_login_attempts: int = 0
    lockout_end: datetime | None = None
    last_login_at: datetime | None = None
    last_login_ip: str | None = None

    class Config:
        from_attributes = True

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class RoleRecord(BaseModel):
    """A role together with its claim pairs."""

    id: str
    tenant_id: str
    name: str
    claims: list[tuple[str, str]] = []


class RefreshTokenRecord(BaseModel):
    id: str
    tenant_id: str
    user_id: str
    token: str
    jwt_token_id: str | None = None
    access_token_expires_at: datetime | None = None
    is_used: bool = False
    is_revoked: bool = False
    issued_at: datetime
    expires_at: datetime
    revoked_at: datetime | None = None
    device_info: str | None = None
    ip_address: str | None = None

    class Config:
        from_attributes = True

    def is_active(self, now: datetime) -> bool:
        return not self.is_used and not self.is_revoked and self.expires_at > now


class TokenClaims(BaseModel):
    """Claims recovered from a verified access token."""

    sub: str
    tenant_id: str
    jti: str
    exp: datetime
    iat: datetime
    email: str | None = None
    name: str | None = None
    user_name: str | None = None
    branch_id: str | None = None
    roles: list[str] = []
    permissions: list[str] = []


class IssuedAccessToken(BaseModel):
    token: str
    jti: str
    issued_at: datetime
    expires_at: datetime


class ApiModel(BaseModel):
    """Base for HTTP bodies: camelCase on the wire, snake_case accepted too."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class LoginRequest(ApiModel):
    email: str
    password: str


class RefreshRequest(ApiModel):
    access_token: str
    refresh_token: str


class LogoutRequest(ApiModel):
    refresh_token: str


class ChangePasswordRequest(ApiModel):
    current_password: str
    new_password: str


class ForgotPasswordRequest(ApiModel):
    email: str


class ResetPasswordRequest(ApiModel):
    token: str
    new_password: str


class RegisterRequest(ApiModel):
    tenant_id: str
    branch_id: str | None = None
    first_name: str
    last_name: str
    email: str
    username: str
    phone_number: str = ""
    password: str
    role_name: str | None = None


class UserProfile(ApiModel):
    """Public user projection returned after login and by ``/users/me``."""

    id: str
    tenant_id: str
    branch_id: str | None = None
    email: str
    username: str
    first_name: str
    last_name: str
    roles: list[str] = []
    permissions: list[str] = []


class AuthResponse(ApiModel):
    success: bool
    message: str
    error_code: AuthErrorCode | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    token_type: str = "bearer"
    expires_at: datetime | None = None
    user: UserProfile | None = None


class MessageResponse(ApiModel):
    success: bool
    message: str
    error_code: AuthErrorCode | None = None


class SessionInfo(ApiModel):
    id: str
    device_info: str | None = None
    ip_address: str | None = None
    issued_at: datetime
    expires_at: datetime
