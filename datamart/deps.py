"""Shared FastAPI dependencies."""

from typing import Callable

from fastapi import Depends, Header, Request

from datamart.core.exceptions import ForbiddenError, UnauthorizedError
from datamart.core.logging import bind_actor
from datamart.core.roles import Capabilities
from datamart.core.security import load_session_cookie
from datamart.models.user import User
from datamart.services import users as user_service
from datamart.services.container import Services

SESSION_COOKIE_NAME = "datamart_session"


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_current_user(request: Request) -> User:
    """Dependency: load session from cookie and return User."""
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if not cookie:
        raise UnauthorizedError("Not authenticated")
    payload = load_session_cookie(cookie)
    if not payload:
        raise UnauthorizedError("Invalid or expired session")
    user_id = payload.get("user_id")
    if not user_id:
        raise UnauthorizedError("Invalid session")
    user = await User.get(user_id)
    if not user:
        raise UnauthorizedError("User not found")
    if payload.get("session_version") != user.session_version:
        raise UnauthorizedError("Session invalidated")
    bind_actor(str(user.id), user.role)
    return user


async def get_api_user(x_api_key: str = Header(..., alias="X-API-Key")) -> User:
    """Dependency for the developer API: authenticate by the user's API key."""
    user = await user_service.get_user_by_api_key(x_api_key)
    bind_actor(str(user.id), user.role)
    return user


def require_capability(name: str) -> Callable:
    """Dependency factory: current user must hold the named capability."""
    if name not in Capabilities.__dataclass_fields__:
        raise ValueError(f"Unknown capability: {name}")

    async def dependency(user: User = Depends(get_current_user)) -> User:
        if not getattr(user.capabilities, name):
            raise ForbiddenError("You do not have permission for this action", details={"capability": name})
        return user

    return dependency
