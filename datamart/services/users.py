from datetime import datetime

from beanie import UpdateResponse
from pymongo.errors import DuplicateKeyError

from datamart.core.audit import log_event
from datamart.core.exceptions import ConflictError, UnauthorizedError
from datamart.core.logging import get_logger
from datamart.models.user import User, generate_api_key

log = get_logger(__name__)


async def register_user(username: str, email: str, phone: str = "") -> User:
    """New accounts start pending and inactive until staff approve them."""
    username = username.strip()
    email = email.strip().lower()
    if await User.find_one({"$or": [{"username": username}, {"email": email}]}):
        raise ConflictError("Username or email already registered")
    user = User(username=username, email=email, phone=phone.strip())
    try:
        await user.insert()
    except DuplicateKeyError as e:
        raise ConflictError("Username or email already registered") from e
    log.info("user_registered", user_id=str(user.id), username=username)
    await log_event(str(user.id), "user_registered", "user", str(user.id), {"email": email})
    return user


async def get_user_by_api_key(api_key: str) -> User:
    user = await User.find_one({"api_key": api_key}) if api_key else None
    if user is None:
        raise UnauthorizedError("Invalid API key")
    if not user.is_approved or not user.is_active:
        raise UnauthorizedError("Account is not active")
    return user


async def rotate_api_key(user: User) -> str:
    key = generate_api_key()
    await User.find_one({"_id": user.id}).update(
        {"$set": {"api_key": key, "updated_at": datetime.utcnow()}}
    )
    log.info("api_key_rotated", user_id=str(user.id))
    return key


async def invalidate_sessions(user: User) -> User:
    updated = await User.find_one({"_id": user.id}).update(
        {"$inc": {"session_version": 1}}, response_type=UpdateResponse.NEW_DOCUMENT
    )
    return updated or user
