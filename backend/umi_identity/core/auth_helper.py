"""Request-side authentication dependencies.

REQUEST PIPELINE:

1. The client sends ``Authorization: Bearer <access token>``.
2. The token is verified: RS256 signature by a known ``kid``, issuer,
   audience, lifetime and ``token_type == "access"``.
3. Its ``jti`` is checked against the blacklist, so tokens revoked by
   logout, rotation or "sign out everywhere" stop working immediately
   instead of at their natural expiry.
4. Routes that need more than identity declare
   ``Depends(require_permission(Permission.X))``.

Any failure is a 401 with ``WWW-Authenticate: Bearer``; a missing
permission is a 403.
"""

from typing import Annotated

from core.errors import AuthErrorCode, InvalidTokenError
from core.logging import logger
from core.permissions import AnyPermission, has_permission
from core.tokens import TokenSigner, get_token_signer
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from schemas.auth import TokenClaims, UserRecord
from services.blacklist import TokenBlacklist, get_token_blacklist
from services.user_store import UserStore, get_user_store
from sqlalchemy.exc import SQLAlchemyError

bearer_scheme = HTTPBearer(auto_error=False)


def failure_body(code: AuthErrorCode | None, message: str) -> dict:
    """Body shared by every failed auth response."""
    return {
        "success": False,
        "message": message,
        "errorCode": code.value if code is not None else None,
    }


def _unauthorized(code: AuthErrorCode, detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=failure_body(code, detail),
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_claims(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
    signer: Annotated[TokenSigner, Depends(get_token_signer)],
    blacklist: Annotated[TokenBlacklist, Depends(get_token_blacklist)],
) -> TokenClaims:
    """Validate the bearer access token and return its claims.

    Raises:
        HTTPException: 401 if the token is missing, invalid, expired or
            blacklisted; 503 if the blacklist cannot be consulted.
    """
    if credentials is None or not credentials.credentials:
        raise _unauthorized(AuthErrorCode.INVALID_TOKEN, "Not authenticated")

    try:
        claims = signer.validate_access_token(credentials.credentials)
    except InvalidTokenError as exc:
        logger.warning("Rejected access token: {}", exc.message)
        raise _unauthorized(AuthErrorCode.INVALID_TOKEN, "Could not validate credentials")

    try:
        revoked = await blacklist.is_blacklisted(claims.jti)
    except SQLAlchemyError:
        logger.exception("Blacklist lookup failed for jti={}", claims.jti)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=failure_body(
                AuthErrorCode.SERVICE_UNAVAILABLE,
                "Authentication temporarily unavailable",
            ),
        )
    if revoked:
        logger.warning("Blacklisted access token used jti={} user_id={}", claims.jti, claims.sub)
        raise _unauthorized(AuthErrorCode.TOKEN_BLACKLISTED, "Token has been revoked")
    return claims


async def get_current_active_user(
    claims: Annotated[TokenClaims, Depends(get_current_claims)],
    users: Annotated[UserStore, Depends(get_user_store)],
) -> UserRecord:
    """Return the active user the access token was issued to.

    Raises:
        HTTPException: 401 if the user no longer exists or was deactivated.
    """
    user = await users.find_user_by_id(claims.sub)
    if user is None or user.tenant_id != claims.tenant_id:
        raise _unauthorized(AuthErrorCode.USER_NOT_FOUND, "User not found")
    return user


def require_permission(permission: AnyPermission | str):
    """Build a dependency that admits only tokens granting ``permission``."""

    async def dependency(
        claims: Annotated[TokenClaims, Depends(get_current_claims)],
    ) -> TokenClaims:
        if not has_permission(claims.permissions, permission):
            logger.warning(
                "Permission denied user_id={} required={}",
                claims.sub,
                getattr(permission, "value", permission),
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=failure_body(None, "Insufficient permissions"),
            )
        return claims

    return dependency


def get_device_info(request: Request) -> str:
    """Extract device information (user-agent) from a request.

    Returns:
        str: Truncated user-agent string (max 255 characters).
    """
    user_agent = request.headers.get("user-agent", "Unknown")
    return user_agent[:255]


def get_client_ip(request: Request) -> str:
    """Determine the client's IP address from the request.

    Prefers the first ``X-Forwarded-For`` hop, then ``X-Real-IP``, then the
    address of the direct peer.

    Returns:
        str: Client IP address or "Unknown" if it cannot be determined.
    """
    # NOTE: Proxy headers first, the service runs behind a load balancer.
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "Unknown"
