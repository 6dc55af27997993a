from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from models import MAX_AMOUNT_CENTS, TransactionType, format_transaction_name


class UserIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=256)
    email: str = Field(..., min_length=3, max_length=512)


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=256)
    initial_amount_cents: int = Field(
        default=0, ge=-MAX_AMOUNT_CENTS, le=MAX_AMOUNT_CENTS
    )
    user_id: int


class TransactionIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=256)
    amount_cents: int = Field(..., ge=0, le=MAX_AMOUNT_CENTS)
    type: TransactionType
    account_id: int


class TransactionUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=256)
    amount_cents: Optional[int] = Field(default=None, ge=0, le=MAX_AMOUNT_CENTS)
    type: Optional[TransactionType] = None


class FixturesIn(BaseModel):
    count: int = Field(..., gt=0, le=100_000)


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str
    account_count: int
    created_at: datetime


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    opening_balance_cents: int
    balance_cents: int
    transaction_count: int
    user_id: int
    created_at: datetime


class UserDetailOut(UserOut):
    accounts: list[AccountOut] = Field(default_factory=list)


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    amount_cents: int
    type: TransactionType
    account_id: int
    created_at: datetime

    @computed_field
    @property
    def display_name(self) -> str:
        return format_transaction_name(self.type, self.name)


class BudgetOut(BaseModel):
    account_id: int
    budget_cents: int
    total_cents: int
    transactions: list[TransactionOut]


class BulkLoadOut(BaseModel):
    account_id: int
    requested: int
    inserted: int
    balance_delta_cents: int


class AccountAuditOut(BaseModel):
    account_id: int
    expected_balance_cents: int
    actual_balance_cents: int
    expected_transaction_count: int
    actual_transaction_count: int
    is_consistent: bool
