from collections.abc import Callable, Mapping
from enum import Enum
from typing import Annotated

from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ticketledger.core.config import Settings, get_settings


class Role(str, Enum):
    """Supported roles."""

    USER = "user"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


_GRANTED_ROLES: dict[Role, frozenset[Role]] = {
    Role.USER: frozenset({Role.USER}),
    Role.ADMIN: frozenset({Role.USER, Role.ADMIN}),
    Role.SUPER_ADMIN: frozenset({Role.USER, Role.ADMIN, Role.SUPER_ADMIN}),
}

_FORBIDDEN_DETAIL: dict[Role, str] = {
    Role.USER: "User privileges required",
    Role.ADMIN: "Admin privileges required",
    Role.SUPER_ADMIN: "Super admin privileges required",
}


class User:
    """Authenticated caller."""

    def __init__(self, user_id: str, role: Role):
        self.user_id = user_id
        self.role = role

    def has_role(self, role: Role) -> bool:
        return role in _GRANTED_ROLES[self.role]


def resolve_user(token: str, tokens: Mapping[str, str]) -> User | None:
    """Look up a bearer token in the configured ``token -> "user_id:role"`` mapping."""

    entry = tokens.get(token)
    if not entry:
        return None
    user_id, sep, role_value = entry.rpartition(":")
    if not sep or not user_id:
        return None
    try:
        role = Role(role_value.strip().lower())
    except ValueError:
        return None
    return User(user_id=user_id, role=role)


bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> User:
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Authorization token required")

    user = resolve_user(credentials.credentials, settings.api_tokens)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid authentication token")
    return user


def role_required(role: Role) -> Callable[[User], User]:
    """Dependency factory ensuring the current user holds ``role`` or a higher one."""

    async def dependency(user: Annotated[User, Depends(get_current_user)]) -> User:
        if not user.has_role(role):
            raise HTTPException(status_code=403, detail=_FORBIDDEN_DETAIL[role])
        return user

    return dependency


require_user = role_required(Role.USER)
require_admin = role_required(Role.ADMIN)

CurrentUser = Annotated[User, Depends(get_current_user)]
AuthenticatedUser = Annotated[User, Depends(require_user)]
AdminUser = Annotated[User, Depends(require_admin)]
