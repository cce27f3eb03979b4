import pytest

from datamart.core.exceptions import ConflictError, UnauthorizedError
from datamart.services import users as user_service
from factories import make_user


async def test_registration_starts_pending(db):
    user = await user_service.register_user("kofi", "Kofi@Example.com", "0241234567")

    assert user.approval_status == "pending"
    assert user.is_active is False
    assert user.email == "kofi@example.com"
    assert user.wallet.balance == 0

    with pytest.raises(ConflictError):
        await user_service.register_user("kofi", "other@example.com")


async def test_api_key_lookup(db):
    user = await make_user()
    assert (await user_service.get_user_by_api_key(user.api_key)).id == user.id

    pending = await make_user(approved=False)
    with pytest.raises(UnauthorizedError):
        await user_service.get_user_by_api_key(pending.api_key)

    new_key = await user_service.rotate_api_key(user)
    with pytest.raises(UnauthorizedError):
        await user_service.get_user_by_api_key(user.api_key)
    assert (await user_service.get_user_by_api_key(new_key)).id == user.id
