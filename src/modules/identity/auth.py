"""JWT authentication for the HTTP surface and the live transport.

Identity is a black box to the messaging core: a bearer token either yields a
verified user (with a role) or the caller is treated as an anonymous customer.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from src.config import settings
from src.exceptions import ForbiddenException, UnauthorizedException
from src.models.enums import UserRole

logger = logging.getLogger(__name__)

# FastAPI security scheme: extracts Bearer token from Authorization header
_bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthenticatedUser:
    """Represents the authenticated user extracted from a JWT token."""

    id: uuid.UUID
    email: str
    role: str = UserRole.USER.value
    name: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value


@dataclass(frozen=True)
class ChatIdentity:
    """Who is speaking on a conversation: a verified user or an anonymous customer."""

    user_id: uuid.UUID | None = None
    is_admin: bool = False
    email: str | None = None
    name: str | None = None

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None

    @classmethod
    def anonymous(cls, email: str | None = None, name: str | None = None) -> "ChatIdentity":
        return cls(email=email, name=name)

    @classmethod
    def from_user(cls, user: AuthenticatedUser | None) -> "ChatIdentity":
        if user is None:
            return cls.anonymous()
        return cls(user_id=user.id, is_admin=user.is_admin, email=user.email, name=user.name)


def _decode_token(token: str) -> dict:
    """Decode and validate a JWT token. Raises UnauthorizedException on failure."""
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
        return payload
    except JWTError as exc:
        logger.warning("JWT validation failed: %s", exc)
        raise UnauthorizedException("Invalid or expired token") from exc


def user_from_token(token: str) -> AuthenticatedUser:
    payload = _decode_token(token)
    try:
        return AuthenticatedUser(
            id=uuid.UUID(payload["sub"]),
            email=payload["email"],
            role=payload.get("role", UserRole.USER.value),
            name=payload.get("name"),
        )
    except (KeyError, ValueError) as exc:
        raise UnauthorizedException("Token is missing required claims") from exc


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> AuthenticatedUser:
    """FastAPI dependency that extracts and validates the current user from JWT."""
    if credentials is None:
        raise UnauthorizedException("Authentication required")

    user = user_from_token(credentials.credentials)
    request.state.user = user
    return user


async def get_optional_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> AuthenticatedUser | None:
    """Like get_current_user but returns None instead of raising for unauthenticated requests."""
    if credentials is None:
        return None

    try:
        return await get_current_user(request, credentials)
    except UnauthorizedException:
        return None


async def require_admin(
    user: AuthenticatedUser = Depends(get_current_user),
) -> AuthenticatedUser:
    if not user.is_admin:
        raise ForbiddenException("Admin access required")
    return user


class JWTIdentityProvider:
    """Verifies the claims carried by a live ``authenticate`` envelope.

    A bare envelope (no token, no claims) authenticates as an anonymous
    customer. Claiming a user id or admin role requires a token whose
    subject and role back the claim.
    """

    def authenticate(
        self,
        token: str | None,
        claimed_user_id: uuid.UUID | None = None,
        claims_admin: bool = False,
    ) -> ChatIdentity:
        if token is None:
            if claimed_user_id is not None or claims_admin:
                raise UnauthorizedException("A token is required to authenticate as a user")
            return ChatIdentity.anonymous()

        user = user_from_token(token)
        if claimed_user_id is not None and claimed_user_id != user.id:
            raise UnauthorizedException("Token subject does not match the claimed user")
        if claims_admin and not user.is_admin:
            raise UnauthorizedException("Token does not carry the admin role")
        return ChatIdentity.from_user(user)


def create_access_token(user_id: uuid.UUID, email: str, role: str, name: str | None = None) -> str:
    """Issue a signed token; used by operators and tests to mint credentials."""
    payload = {
        "sub": str(user_id),
        "email": email,
        "role": role,
        "exp": datetime.now(UTC) + timedelta(minutes=settings.jwt_expiry_minutes),
    }
    if name:
        payload["name"] = name
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
