"""Authentication service: login, refresh, logout and password management.

Session chain per user::

    Unauthenticated --login--> Active(access, refresh)
    Active --refresh--> Active(access', refresh')   old refresh used, old jti blacklisted
    Active --logout | revoke-all | expiry--> Revoked / Expired

Expected failures come back as :class:`AuthResult` values with an
:class:`AuthErrorCode`; nothing credential- or token-related is raised past
this module. Database errors are logged with the request's correlation id
and reported as a generic "temporarily unavailable" failure.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import lru_cache

from config.config import Settings, settings
from core.clock import Clock, utcnow
from core.errors import AuthErrorCode, InvalidTokenError
from core.logging import logger
from core.password import PasswordHasher, is_valid_password, password_hasher
from core.permissions import flatten_role_claims
from core.tokens import TokenSigner, get_token_signer
from schemas.auth import (
    RefreshTokenRecord,
    RegisterRequest,
    RoleRecord,
    UserProfile,
    UserRecord,
)
from services.password_reset import PasswordResetStore, get_password_reset_store
from services.refresh_tokens import RefreshTokenStore, get_refresh_token_store
from services.user_store import UserStore, get_user_store
from sqlalchemy.exc import SQLAlchemyError

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
ACCOUNT_LOCKED_MESSAGE = "Account is temporarily locked"
INVALID_REFRESH_MESSAGE = "Your session has expired, please sign in again"
INVALID_ACCESS_MESSAGE = "Invalid access token"
USER_NOT_FOUND_MESSAGE = "User not found"
UNAVAILABLE_MESSAGE = "Authentication temporarily unavailable"


@dataclass
class AuthResult:
    success: bool
    message: str
    error_code: AuthErrorCode | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None
    user: UserRecord | None = None
    roles: list[RoleRecord] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)

    @classmethod
    def failed(cls, code: AuthErrorCode, message: str) -> "AuthResult":
        return cls(success=False, message=message, error_code=code)

    def profile(self) -> UserProfile | None:
        if self.user is None:
            return None
        return build_profile(self.user, [r.name for r in self.roles], self.permissions)


@dataclass
class RegistrationResult:
    success: bool
    message: str
    error_code: AuthErrorCode | None = None
    user: UserRecord | None = None


def build_profile(user: UserRecord, roles: list[str], permissions: list[str]) -> UserProfile:
    return UserProfile(
        id=user.id,
        tenant_id=user.tenant_id,
        branch_id=user.branch_id,
        email=user.email,
        username=user.username,
        first_name=user.first_name,
        last_name=user.last_name,
        roles=roles,
        permissions=permissions,
    )


def _unavailable() -> AuthResult:
    return AuthResult.failed(AuthErrorCode.SERVICE_UNAVAILABLE, UNAVAILABLE_MESSAGE)


class AuthenticationService:
    """Login, session refresh, logout and password management for one process.

    Args:
        users: User, role and tenant lookups plus the targeted user writes.
        refresh_tokens: Refresh token store; its blacklist is shared.
        signer: Access token signer.
        resets: Password reset token store.
        hasher: Password hasher.
        config: Settings supplying the lockout policy.
        clock: Time source.
    """

    def __init__(
        self,
        users: UserStore,
        refresh_tokens: RefreshTokenStore,
        signer: TokenSigner,
        resets: PasswordResetStore,
        hasher: PasswordHasher = password_hasher,
        config: Settings = settings,
        clock: Clock = utcnow,
    ):
        self.users = users
        self.refresh_tokens = refresh_tokens
        self.blacklist = refresh_tokens.blacklist
        self.signer = signer
        self.resets = resets
        self.hasher = hasher
        self.clock = clock
        self.lockout_threshold = config.LOCKOUT_THRESHOLD
        self.lockout_window = timedelta(minutes=config.LOCKOUT_MINUTES)

    async def login(
        self,
        email: str,
        password: str,
        ip_address: str | None = None,
        device_info: str | None = None,
    ) -> AuthResult:
        """Verify credentials and open a new session chain.

        Unknown email and wrong password produce the same failure. A locked
        account is rejected before the password is looked at.
        """
        try:
            user = await self.users.find_user_by_email(email)
            if user is None:
                logger.warning("Login failed: no active user for the given email")
                return AuthResult.failed(
                    AuthErrorCode.INVALID_CREDENTIALS, INVALID_CREDENTIALS_MESSAGE
                )

            now = self.clock()
            if user.lockout_end is not None:
                if user.lockout_end > now:
                    logger.warning("Login rejected: account locked user_id={}", user.id)
                    return AuthResult.failed(
                        AuthErrorCode.ACCOUNT_LOCKED, ACCOUNT_LOCKED_MESSAGE
                    )
                # Lockout elapsed: start counting failures afresh.
                await self.users.clear_expired_lockout(user.id, now)

            if not self.hasher.verify(password, user.password_hash):
                await self.users.record_failed_login(
                    user.id, self.lockout_threshold, now + self.lockout_window
                )
                logger.warning("Login failed: invalid password user_id={}", user.id)
                return AuthResult.failed(
                    AuthErrorCode.INVALID_CREDENTIALS, INVALID_CREDENTIALS_MESSAGE
                )

            upgraded_hash = None
            if self.hasher.needs_rehash(user.password_hash):
                upgraded_hash = self.hasher.hash(password)
            if not await self.users.record_successful_login(
                user.id, now, ip_address, password_hash=upgraded_hash
            ):
                return await self._login_superseded(user.id)
            if upgraded_hash is not None:
                logger.info("Upgraded password hash for user_id={}", user.id)
            user = user.model_copy(
                update={
                    "failed_login_attempts": 0,
                    "lockout_end": None,
                    "last_login_at": now,
                    "last_login_ip": ip_address,
                }
            )

            result = await self._open_session(user, ip_address, device_info)
            logger.info("User logged in user_id={} tenant_id={}", user.id, user.tenant_id)
            return result
        except SQLAlchemyError:
            logger.exception("Database error during login")
            return _unavailable()

    async def refresh(
        self,
        access_token: str,
        refresh_token: str,
        ip_address: str | None = None,
        device_info: str | None = None,
    ) -> AuthResult:
        """Exchange a (possibly expired) access token and its refresh token for a new pair."""
        try:
            claims = self.signer.parse_expired_token(access_token)
        except InvalidTokenError as exc:
            logger.warning("Refresh rejected: {}", exc.message)
            return AuthResult.failed(AuthErrorCode.INVALID_TOKEN, INVALID_ACCESS_MESSAGE)

        try:
            record = await self.refresh_tokens.get(refresh_token)
            if not self.refresh_tokens.is_usable(record) or record.user_id != claims.sub:
                logger.warning("Invalid refresh token presented for user_id={}", claims.sub)
                return AuthResult.failed(
                    AuthErrorCode.INVALID_REFRESH_TOKEN, INVALID_REFRESH_MESSAGE
                )

            user = await self.users.find_user_by_id(claims.sub, active_only=False)
            if user is None:
                logger.warning("User not found during token refresh user_id={}", claims.sub)
                return AuthResult.failed(AuthErrorCode.USER_NOT_FOUND, USER_NOT_FOUND_MESSAGE)
            if not user.is_active:
                logger.warning("Inactive user attempted refresh user_id={}", user.id)
                await self.refresh_tokens.revoke_all_for_user(user.id, reason="user_inactive")
                return AuthResult.failed(AuthErrorCode.USER_INACTIVE, USER_NOT_FOUND_MESSAGE)

            roles = await self.users.roles_for_user(user.id)
            permissions = flatten_role_claims(c for role in roles for c in role.claims)
            access = self.signer.issue_access_token(user, roles, permissions)
            replacement = await self.refresh_tokens.rotate(
                refresh_token,
                user.id,
                user.tenant_id,
                access.jti,
                access.expires_at,
                device_info=device_info,
                ip_address=ip_address,
            )
            if replacement is None:
                return AuthResult.failed(
                    AuthErrorCode.INVALID_REFRESH_TOKEN, INVALID_REFRESH_MESSAGE
                )
        except SQLAlchemyError:
            logger.exception("Database error during token refresh")
            return _unavailable()

        logger.info("Token refreshed for user_id={}", user.id)
        return self._success(user, roles, permissions, access.token, replacement, access.expires_at)

    async def logout(self, refresh_token: str) -> bool:
        """Revoke one refresh token. Unknown or already revoked tokens still succeed."""
        try:
            found = await self.refresh_tokens.revoke(refresh_token, reason="logout")
        except SQLAlchemyError:
            logger.exception("Database error during logout")
            return False
        if not found:
            logger.info("Logout for unknown refresh token, nothing to revoke")
        return True

    async def logout_all(self, user_id: str, reason: str = "logout_all") -> bool:
        """Revoke every session of a user (sign out everywhere, compromise response)."""
        try:
            return await self.refresh_tokens.revoke_all_for_user(user_id, reason=reason)
        except SQLAlchemyError:
            logger.exception("Database error revoking sessions for user_id={}", user_id)
            return False

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> bool:
        """Replace the password after re-verifying the current one.

        Existing sessions are left alone; callers wanting a forced re-login
        call :meth:`logout_all` as well.
        """
        try:
            user = await self.users.find_user_by_id(user_id)
            if user is None:
                return False
            if not self.hasher.verify(current_password, user.password_hash):
                logger.warning("Password change rejected: wrong current password user_id={}", user_id)
                return False
            if not is_valid_password(new_password):
                logger.info("Password change rejected: policy not met user_id={}", user_id)
                return False
            if not await self.users.set_password_hash(user_id, self.hasher.hash(new_password)):
                logger.warning("Password change lost to a deactivation user_id={}", user_id)
                return False
        except SQLAlchemyError:
            logger.exception("Database error during password change user_id={}", user_id)
            return False
        logger.info("Password changed for user_id={}", user_id)
        return True

    async def forgot_password(self, email: str) -> bool:
        """Start a password reset. Always True so callers cannot probe for accounts."""
        try:
            user = await self.users.find_user_by_email(email)
            if user is None:
                return True
            token = await self.resets.issue(user)
            await self.deliver_reset_token(user, token)
        except SQLAlchemyError:
            logger.exception("Database error during forgot password")
        return True

    async def deliver_reset_token(self, user: UserRecord, token: str) -> None:
        """Hand the reset token to the notification channel.

        Email delivery belongs to the notifications service; this default
        only records that a token is waiting.
        """
        logger.info("Password reset token ready for delivery user_id={}", user.id)

    async def reset_password(self, token: str, new_password: str) -> bool:
        """Finish a password reset started by :meth:`forgot_password`.

        Args:
            token: Reset token delivered to the user.
            new_password: Replacement password; must meet the policy.

        Returns:
            bool: True if the password was replaced. An unknown, expired or
                already used token, a weak password and a database error all
                give False.
        """
        if not token or not is_valid_password(new_password):
            return False
        try:
            user_id = await self.resets.consume(token, self.hasher.hash(new_password))
        except SQLAlchemyError:
            logger.exception("Database error during password reset")
            return False
        return user_id is not None

    async def register(self, request: RegisterRequest) -> RegistrationResult:
        """Create an active user in an existing tenant.

        Args:
            request: Registration body; ``role_name`` is assigned when the
                tenant has a role of that name.

        Returns:
            RegistrationResult: The new user, or a failure carrying
                `WEAK_PASSWORD`, `DUPLICATE_USER`, `INVALID_TENANT` or
                `SERVICE_UNAVAILABLE`.
        """
        try:
            if not is_valid_password(request.password):
                return RegistrationResult(
                    False,
                    "Password must be at least 8 characters and include upper and "
                    "lower case letters, a digit and a symbol",
                    AuthErrorCode.WEAK_PASSWORD,
                )
            if await self.users.email_or_username_taken(request.email, request.username):
                return RegistrationResult(
                    False,
                    "User with this email or username already exists",
                    AuthErrorCode.DUPLICATE_USER,
                )
            if not await self.users.is_active_tenant(request.tenant_id):
                return RegistrationResult(False, "Invalid tenant", AuthErrorCode.INVALID_TENANT)

            user = await self.users.create_user(request, self.hasher.hash(request.password))
        except SQLAlchemyError:
            logger.exception("Database error during registration")
            return RegistrationResult(
                False, UNAVAILABLE_MESSAGE, AuthErrorCode.SERVICE_UNAVAILABLE
            )
        return RegistrationResult(True, "User registered", user=user)

    async def _login_superseded(self, user_id: str) -> AuthResult:
        # The password matched but the account changed before the login was stamped.
        current = await self.users.find_user_by_id(user_id, active_only=False)
        if current is None or not current.is_active:
            logger.warning("Login rejected: account deactivated meanwhile user_id={}", user_id)
            return AuthResult.failed(
                AuthErrorCode.INVALID_CREDENTIALS, INVALID_CREDENTIALS_MESSAGE
            )
        logger.warning("Login rejected: account locked meanwhile user_id={}", user_id)
        return AuthResult.failed(AuthErrorCode.ACCOUNT_LOCKED, ACCOUNT_LOCKED_MESSAGE)

    async def _open_session(
        self, user: UserRecord, ip_address: str | None, device_info: str | None
    ) -> AuthResult:
        roles = await self.users.roles_for_user(user.id)
        permissions = flatten_role_claims(c for role in roles for c in role.claims)
        access = self.signer.issue_access_token(user, roles, permissions)
        record = await self.refresh_tokens.create(
            user.id,
            user.tenant_id,
            access.jti,
            access.expires_at,
            device_info=device_info,
            ip_address=ip_address,
        )
        return self._success(user, roles, permissions, access.token, record, access.expires_at)

    @staticmethod
    def _success(
        user: UserRecord,
        roles: list[RoleRecord],
        permissions: list[str],
        access_token: str,
        refresh: RefreshTokenRecord,
        expires_at: datetime,
    ) -> AuthResult:
        return AuthResult(
            success=True,
            message="Authenticated",
            access_token=access_token,
            refresh_token=refresh.token,
            expires_at=expires_at,
            user=user,
            roles=roles,
            permissions=permissions,
        )


@lru_cache(maxsize=1)
def get_auth_service() -> AuthenticationService:
    return AuthenticationService(
        users=get_user_store(),
        refresh_tokens=get_refresh_token_store(),
        signer=get_token_signer(),
        resets=get_password_reset_store(),
    )
