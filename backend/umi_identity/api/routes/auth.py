"""Authentication routes.

Endpoints:
    - POST /auth/login: Verify credentials, return access + refresh tokens
    - POST /auth/refresh: Exchange an access/refresh pair for a new pair
    - POST /auth/logout: Revoke a single refresh token
    - POST /auth/logout-all: Revoke every session of the current user
    - POST /auth/register: Create a user in a tenant
    - POST /auth/change-password: Change the current user's password
    - POST /auth/forgot-password: Start a password reset
    - POST /auth/reset-password: Finish a password reset
    - GET /auth/users/me: Current user profile
    - GET /auth/users/me/sessions: Active sessions of the current user
    - POST /auth/users/{user_id}/revoke-sessions: Admin sign-out of another user
"""

from typing import Annotated

from core.auth_helper import (
    failure_body,
    get_client_ip,
    get_current_active_user,
    get_current_claims,
    get_device_info,
    require_permission,
)
from core.errors import AuthErrorCode
from core.logging import logger
from core.password import is_valid_password
from core.permissions import Permission
from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse
from schemas.auth import (
    AuthResponse,
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SessionInfo,
    TokenClaims,
    UserProfile,
    UserRecord,
)
from services.auth_service import (
    AuthenticationService,
    AuthResult,
    build_profile,
    get_auth_service,
)
from services.refresh_tokens import RefreshTokenStore, get_refresh_token_store
from services.user_store import UserStore, get_user_store

router = APIRouter(prefix="/auth", tags=["auth"])

AuthService = Annotated[AuthenticationService, Depends(get_auth_service)]
CurrentUser = Annotated[UserRecord, Depends(get_current_active_user)]
CurrentClaims = Annotated[TokenClaims, Depends(get_current_claims)]

STATUS_BY_CODE = {
    AuthErrorCode.INVALID_CREDENTIALS: status.HTTP_401_UNAUTHORIZED,
    AuthErrorCode.INVALID_REFRESH_TOKEN: status.HTTP_401_UNAUTHORIZED,
    AuthErrorCode.TOKEN_BLACKLISTED: status.HTTP_401_UNAUTHORIZED,
    AuthErrorCode.INVALID_TOKEN: status.HTTP_401_UNAUTHORIZED,
    AuthErrorCode.USER_NOT_FOUND: status.HTTP_401_UNAUTHORIZED,
    AuthErrorCode.USER_INACTIVE: status.HTTP_401_UNAUTHORIZED,
    AuthErrorCode.ACCOUNT_LOCKED: status.HTTP_423_LOCKED,
    AuthErrorCode.INVALID_CURRENT_PASSWORD: status.HTTP_400_BAD_REQUEST,
    AuthErrorCode.WEAK_PASSWORD: status.HTTP_400_BAD_REQUEST,
    AuthErrorCode.DUPLICATE_USER: status.HTTP_400_BAD_REQUEST,
    AuthErrorCode.INVALID_TENANT: status.HTTP_400_BAD_REQUEST,
    AuthErrorCode.SERVICE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}

WEAK_PASSWORD_MESSAGE = (
    "Password must be at least 8 characters and include upper and lower "
    "case letters, a digit and a symbol"
)


def error_response(code: AuthErrorCode, message: str) -> JSONResponse:
    """Render a failure with the status mapped from its error code."""
    headers = None
    status_code = STATUS_BY_CODE.get(code, status.HTTP_400_BAD_REQUEST)
    if status_code == status.HTTP_401_UNAUTHORIZED:
        headers = {"WWW-Authenticate": "Bearer"}
    return JSONResponse(
        status_code=status_code, content=failure_body(code, message), headers=headers
    )


def _auth_response(result: AuthResult) -> AuthResponse | JSONResponse:
    if not result.success:
        return error_response(result.error_code, result.message)
    return AuthResponse(
        success=True,
        message=result.message,
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        expires_at=result.expires_at,
        user=result.profile(),
    )


@router.post("/login", response_model=AuthResponse)
async def login(body: LoginRequest, request: Request, service: AuthService):
    """Authenticate with email and password.

    Returns:
        AuthResponse: Access token, refresh token, expiry and profile; or a
            401/423/503 failure body.
    """
    result = await service.login(
        body.email,
        body.password,
        ip_address=get_client_ip(request),
        device_info=get_device_info(request),
    )
    return _auth_response(result)


@router.post("/refresh", response_model=AuthResponse)
async def refresh(body: RefreshRequest, request: Request, service: AuthService):
    """Rotate the session: the presented refresh token is spent, a new pair is issued.

    The access token may already be expired; only its signature, issuer and
    audience are checked.
    """
    result = await service.refresh(
        body.access_token,
        body.refresh_token,
        ip_address=get_client_ip(request),
        device_info=get_device_info(request),
    )
    return _auth_response(result)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(body: LogoutRequest, service: AuthService):
    """Revoke a refresh token. Unknown or already revoked tokens still return 204."""
    if not await service.logout(body.refresh_token):
        return error_response(
            AuthErrorCode.SERVICE_UNAVAILABLE, "Authentication temporarily unavailable"
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/logout-all", response_model=MessageResponse)
async def logout_all(current_user: CurrentUser, service: AuthService):
    """Revoke every refresh token of the current user and blacklist their access tokens.

    Useful when a user suspects account compromise or wants to force
    re-authentication on all devices.
    """
    if not await service.logout_all(current_user.id):
        return error_response(
            AuthErrorCode.SERVICE_UNAVAILABLE, "Authentication temporarily unavailable"
        )
    return MessageResponse(success=True, message="Successfully logged out from all devices")


@router.post("/register", response_model=UserProfile, status_code=status.HTTP_201_CREATED)
async def register(body: RegisterRequest, service: AuthService):
    result = await service.register(body)
    if not result.success:
        return error_response(result.error_code, result.message)
    roles = [body.role_name] if body.role_name else []
    return build_profile(result.user, roles, [])


@router.post("/change-password", response_model=MessageResponse)
async def change_password(
    body: ChangePasswordRequest, current_user: CurrentUser, service: AuthService
):
    if not is_valid_password(body.new_password):
        return error_response(AuthErrorCode.WEAK_PASSWORD, WEAK_PASSWORD_MESSAGE)
    changed = await service.change_password(
        current_user.id, body.current_password, body.new_password
    )
    if not changed:
        return error_response(
            AuthErrorCode.INVALID_CURRENT_PASSWORD, "Current password is incorrect"
        )
    return MessageResponse(success=True, message="Password changed")


@router.post("/forgot-password", response_model=MessageResponse)
async def forgot_password(body: ForgotPasswordRequest, service: AuthService):
    """Always answers the same way, whether or not the email is registered."""
    await service.forgot_password(body.email)
    return MessageResponse(
        success=True,
        message="If the account exists, password reset instructions have been sent",
    )


@router.post("/reset-password", response_model=MessageResponse)
async def reset_password(body: ResetPasswordRequest, service: AuthService):
    if not is_valid_password(body.new_password):
        return error_response(AuthErrorCode.WEAK_PASSWORD, WEAK_PASSWORD_MESSAGE)
    if not await service.reset_password(body.token, body.new_password):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=failure_body(AuthErrorCode.INVALID_TOKEN, "Invalid or expired reset token"),
        )
    return MessageResponse(success=True, message="Password has been reset")


@router.get("/users/me", response_model=UserProfile)
async def read_users_me(current_user: CurrentUser, claims: CurrentClaims):
    """Return the current user with the roles and permissions carried by the token."""
    return build_profile(current_user, claims.roles, claims.permissions)


@router.get("/users/me/sessions", response_model=list[SessionInfo])
async def get_active_sessions(
    current_user: CurrentUser,
    refresh_tokens: Annotated[RefreshTokenStore, Depends(get_refresh_token_store)],
):
    """Return active (unused, unrevoked, unexpired) sessions with device info, IP and expiry."""
    sessions = await refresh_tokens.list_active_for_user(current_user.id)
    return [
        SessionInfo(
            id=session.id,
            device_info=session.device_info,
            ip_address=session.ip_address,
            issued_at=session.issued_at,
            expires_at=session.expires_at,
        )
        for session in sessions
    ]


@router.post("/users/{user_id}/revoke-sessions", response_model=MessageResponse)
async def revoke_user_sessions(
    user_id: str,
    claims: Annotated[TokenClaims, Depends(require_permission(Permission.USERS_UPDATE))],
    users: Annotated[UserStore, Depends(get_user_store)],
    service: AuthService,
):
    """Sign another user of the same tenant out everywhere."""
    target = await users.find_user_by_id(user_id, active_only=False)
    if target is None or target.tenant_id != claims.tenant_id:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content=failure_body(AuthErrorCode.USER_NOT_FOUND, "User not found"),
        )
    if not await service.logout_all(target.id, reason="admin_revoked"):
        return error_response(
            AuthErrorCode.SERVICE_UNAVAILABLE, "Authentication temporarily unavailable"
        )
    logger.info("Sessions of user_id={} revoked by user_id={}", target.id, claims.sub)
    return MessageResponse(success=True, message="User sessions revoked")
