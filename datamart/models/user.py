import secrets
from datetime import datetime
from typing import Literal

from beanie import Document, Indexed, PydanticObjectId
from pydantic import BaseModel, Field

from datamart.core.roles import Capabilities, Role, parse_role

ApprovalStatus = Literal["pending", "approved", "rejected"]


class Wallet(BaseModel):
    balance: int = 0  # pesewas; only ever changed by WalletLedger's $inc
    currency: str = "GHS"
    transactions: list[PydanticObjectId] = Field(default_factory=list)


class ApprovalInfo(BaseModel):
    decided_by: PydanticObjectId | None = None
    decided_at: datetime | None = None
    notes: str | None = None


def generate_api_key() -> str:
    return secrets.token_hex(32)


class User(Document):
    username: Indexed(str, unique=True)
    email: Indexed(str, unique=True)
    phone: str = ""
    role: str = Role.user.value
    approval_status: ApprovalStatus = "pending"
    approval_info: ApprovalInfo = Field(default_factory=ApprovalInfo)
    is_active: bool = False
    api_key: Indexed(str) = Field(default_factory=generate_api_key)
    wallet: Wallet = Field(default_factory=Wallet)
    session_version: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "users"

    @property
    def role_enum(self) -> Role:
        return parse_role(self.role)

    @property
    def capabilities(self) -> Capabilities:
        return self.role_enum.capabilities

    @property
    def is_approved(self) -> bool:
        return self.approval_status == "approved"
