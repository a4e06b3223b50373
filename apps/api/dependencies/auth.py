from collections.abc import Callable
from enum import Enum
from typing import Annotated

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer


class Role(str, Enum):
    """Supported roles."""

    ADMIN = "admin"
    AGENT = "agent"
    CUSTOMER = "customer"


class User:
    """Authenticated caller; ``id`` is the opaque owner/actor identity used by the core."""

    def __init__(self, user_id: str, username: str, roles: tuple[Role, ...]):
        self.id = user_id
        self.username = username
        self.roles = roles

    def has_role(self, role: Role) -> bool:
        return role in self.roles


TOKEN_USER_MAP: dict[str, tuple[str, str, tuple[Role, ...]]] = {
    "admin-token": ("6f1c2a40-0000-4000-8000-000000000001", "admin", (Role.ADMIN, Role.AGENT, Role.CUSTOMER)),
    "agent-token": ("6f1c2a40-0000-4000-8000-000000000002", "agent", (Role.AGENT, Role.CUSTOMER)),
    "customer-token": ("6f1c2a40-0000-4000-8000-000000000003", "customer", (Role.CUSTOMER,)),
}

bearer_scheme = HTTPBearer(auto_error=False)


def resolve_user_from_token(token: str | None) -> User:
    """Return the user associated with the bearer token.

    Token verification is a stand-in for the real auth service: static tokens
    map to known users. Ticket ownership needs an identity, so anonymous
    callers are rejected.
    """

    if token is None:
        raise HTTPException(status_code=401, detail="Not authenticated")

    if token not in TOKEN_USER_MAP:
        raise HTTPException(status_code=401, detail="Invalid authentication credentials")

    user_id, username, roles = TOKEN_USER_MAP[token]
    return User(user_id=user_id, username=username, roles=roles)


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    request: Request,
) -> User:
    cached = getattr(request.state, "user", None)
    if isinstance(cached, User):
        return cached

    token = credentials.credentials if credentials is not None else None
    user = resolve_user_from_token(token)
    request.state.user = user
    return user


def role_required(role: Role) -> Callable[[User], User]:
    """Dependency factory ensuring the current user has the requested role."""

    async def dependency(user: Annotated[User, Depends(get_current_user)]) -> User:
        if not user.has_role(role):
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user

    return dependency


CurrentUser = Annotated[User, Depends(get_current_user)]
