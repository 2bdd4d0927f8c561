"""Identity module — JWT-verified users and anonymous chat customers."""

from src.modules.identity.auth import (
    AuthenticatedUser,
    ChatIdentity,
    JWTIdentityProvider,
    create_access_token,
    get_current_user,
    get_optional_user,
    require_admin,
)

__all__ = [
    "AuthenticatedUser",
    "ChatIdentity",
    "JWTIdentityProvider",
    "create_access_token",
    "get_current_user",
    "get_optional_user",
    "require_admin",
]
