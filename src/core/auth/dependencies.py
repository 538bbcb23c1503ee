from typing import Annotated

from fastapi import Depends, Header

from src.core.auth.jwt import decode_token
from src.core.auth.models import Identity, UserRole
from src.core.exceptions import AuthenticationError, AuthorizationError


async def get_current_user(
    authorization: Annotated[str | None, Header()] = None,
) -> Identity:
    """
    Dependency to get the authenticated caller from the bearer token.

    Usage:
        @router.get("/me")
        async def get_me(user: Identity = Depends(get_current_user)):
            return user
    """
    if not authorization:
        raise AuthenticationError("Authorization header required")

    if not authorization.startswith("Bearer "):
        raise AuthenticationError("Invalid authorization header format")

    token = authorization.replace("Bearer ", "")

    payload = decode_token(token, token_type="access")
    try:
        user_id = int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise AuthenticationError("Token subject is missing or malformed")

    role = payload.get("role")
    if role not in {r.value for r in UserRole}:
        raise AuthenticationError("Token role is missing or unknown")

    return Identity(id=user_id, role=role)


def require_roles(*roles: UserRole):
    """
    Dependency factory to require specific roles.

    Usage:
        @router.post("/vouchers")
        async def create_voucher(
            user: Identity = Depends(require_roles(UserRole.ADMIN))
        ):
            ...
    """

    async def role_checker(
        current_user: Identity = Depends(get_current_user),
    ) -> Identity:
        if not current_user.has_role(*roles):
            allowed = ", ".join(r.value for r in roles)
            raise AuthorizationError(f"Required role: {allowed}")
        return current_user

    return role_checker


# Convenience dependencies
CurrentUser = Annotated[Identity, Depends(get_current_user)]
AdminUser = Annotated[Identity, Depends(require_roles(UserRole.ADMIN))]
StudentUser = Annotated[Identity, Depends(require_roles(UserRole.STUDENT))]
