import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from ticketledger.core.config import Settings
from ticketledger.dependencies.auth import Role, User, get_current_user, resolve_user, role_required

TOKENS = {"t-admin": "admin-1:admin", "t-user": "user-1:user", "t-broken": "nobody", "t-role": "u:owner"}


def test_resolve_user_parses_configured_tokens():
    admin = resolve_user("t-admin", TOKENS)

    assert admin is not None
    assert admin.user_id == "admin-1"
    assert admin.role is Role.ADMIN
    assert resolve_user("missing", TOKENS) is None
    assert resolve_user("t-broken", TOKENS) is None
    assert resolve_user("t-role", TOKENS) is None


def test_role_hierarchy():
    assert User("a", Role.SUPER_ADMIN).has_role(Role.ADMIN)
    assert User("a", Role.ADMIN).has_role(Role.USER)
    assert not User("a", Role.USER).has_role(Role.ADMIN)


@pytest.mark.asyncio
async def test_current_user_requires_token():
    settings = Settings(api_tokens=TOKENS)

    with pytest.raises(HTTPException) as missing:
        await get_current_user(None, settings)
    assert missing.value.status_code == 401
    assert missing.value.detail == "Authorization token required"

    with pytest.raises(HTTPException) as invalid:
        await get_current_user(HTTPAuthorizationCredentials(scheme="Bearer", credentials="bogus"), settings)
    assert invalid.value.detail == "Invalid authentication token"

    user = await get_current_user(HTTPAuthorizationCredentials(scheme="Bearer", credentials="t-user"), settings)
    assert user.user_id == "user-1"


@pytest.mark.asyncio
async def test_role_required_rejects_lower_roles():
    dependency = role_required(Role.ADMIN)

    admin = User("admin-1", Role.ADMIN)
    assert await dependency(admin) is admin

    with pytest.raises(HTTPException) as exc_info:
        await dependency(User("user-1", Role.USER))
    assert exc_info.value.status_code == 403
    assert exc_info.value.detail == "Admin privileges required"
