"""Roles and the capabilities each one grants."""

import enum
from dataclasses import dataclass
from functools import lru_cache


class Role(str, enum.Enum):
    admin = "admin"
    wallet_admin = "wallet_admin"
    editor = "Editor"
    agent = "agent"
    super_agent = "super_agent"
    dealer = "dealer"
    user = "user"

    @property
    def capabilities(self) -> "Capabilities":
        return capabilities_for(self)


@dataclass(frozen=True)
class Capabilities:
    can_credit_wallet: bool = False
    can_debit_wallet: bool = False
    can_view_users: bool = False
    can_approve_users: bool = False
    can_update_order_status: bool = False
    can_manage_stock: bool = False
    can_reconcile_deposits: bool = False
    can_reward: bool = False


_FULL = Capabilities(
    can_credit_wallet=True,
    can_debit_wallet=True,
    can_view_users=True,
    can_approve_users=True,
    can_update_order_status=True,
    can_manage_stock=True,
    can_reconcile_deposits=True,
    can_reward=True,
)

_BY_ROLE = {
    Role.admin: _FULL,
    Role.wallet_admin: Capabilities(can_credit_wallet=True, can_debit_wallet=True, can_view_users=True),
    Role.editor: Capabilities(can_update_order_status=True),
}


@lru_cache
def capabilities_for(role: Role) -> Capabilities:
    return _BY_ROLE.get(role, Capabilities())


def parse_role(value: str | Role | None) -> Role:
    """Map a stored role string to Role; unknown values get no privileges."""
    if isinstance(value, Role):
        return value
    try:
        return Role(value or "user")
    except ValueError:
        return Role.user
