import datetime as dt
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import (
    EXTERNAL_ID_MAX_LENGTH,
    MAX_CENTS,
    AccountType,
    AssetIncomeType,
    CategoryType,
    Frequency,
    TransactionType,
)


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    currency: str = Field(default="BRL", min_length=3, max_length=3)
    balance_cents: int = Field(default=0, ge=-MAX_CENTS, le=MAX_CENTS)
    bank_name: Optional[str] = Field(default=None, max_length=100)
    color: Optional[str] = Field(default=None, max_length=7)


class AccountUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[AccountType] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    bank_name: Optional[str] = Field(default=None, max_length=100)
    color: Optional[str] = Field(default=None, max_length=7)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType
    parent_id: Optional[int] = None
    icon: Optional[str] = Field(default=None, max_length=16)
    color: Optional[str] = Field(default=None, max_length=7)
    order: int = 0


class TransactionIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=200)
    amount_cents: int = Field(..., ge=0, le=MAX_CENTS)
    date: date
    type: TransactionType
    account_id: int
    to_account_id: Optional[int] = None
    category_id: Optional[int] = None
    asset_id: Optional[int] = None
    external_id: Optional[str] = Field(default=None, max_length=EXTERNAL_ID_MAX_LENGTH)

    @field_validator("external_id")
    @classmethod
    def _blank_external_id_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None


class AssetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    income_type: AssetIncomeType
    color: Optional[str] = Field(default=None, max_length=7)


class ScheduleIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=200)
    amount_cents: int = Field(..., ge=0, le=MAX_CENTS)
    date: date
    frequency: Frequency
    type: TransactionType
    account_id: int
    to_account_id: Optional[int] = None
    category_id: Optional[int] = None


class BudgetIn(BaseModel):
    category_id: int
    limit_cents: int = Field(..., gt=0, le=MAX_CENTS)


class ColumnMapping(BaseModel):
    """Header names for each field of an imported row."""

    date: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    amount: str = Field(..., min_length=1)
    external_id: Optional[str] = None


class ImportRow(BaseModel):
    row_number: int
    date: dt.date
    description: str
    amount_cents: int = Field(..., ge=0, le=MAX_CENTS)
    type: TransactionType
    external_id: Optional[str] = Field(default=None, max_length=EXTERNAL_ID_MAX_LENGTH)
    category_id: Optional[int] = None
    category_suggested: bool = False


class ImportCommitIn(BaseModel):
    token: str
    account_id: int
    category_overrides: dict[int, Optional[int]] = Field(default_factory=dict)
