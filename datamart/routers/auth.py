from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel

from datamart.deps import SESSION_COOKIE_NAME, get_current_user
from datamart.models.user import User
from datamart.services import users as user_service

router = APIRouter()


class RegisterRequest(BaseModel):
    username: str
    email: str
    phone: str = ""


def _me(user: User) -> dict:
    return {
        "id": str(user.id),
        "username": user.username,
        "email": user.email,
        "phone": user.phone,
        "role": user.role,
        "approval_status": user.approval_status,
        "is_active": user.is_active,
    }


@router.post("/register")
async def register(body: RegisterRequest):
    """Create an account; it stays pending until approved by staff."""
    user = await user_service.register_user(body.username, body.email, body.phone)
    return {"success": True, "user": _me(user)}


@router.get("/me")
async def auth_me(user: User = Depends(get_current_user)):
    """Return current user. Requires session cookie."""
    return {"success": True, "user": _me(user)}


@router.post("/api-key")
async def rotate_api_key(user: User = Depends(get_current_user)):
    return {"success": True, "api_key": await user_service.rotate_api_key(user)}


@router.post("/logout")
async def logout(response: Response, user: User = Depends(get_current_user)):
    """Drop the cookie and invalidate every other session of this user."""
    await user_service.invalidate_sessions(user)
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return {"success": True}
