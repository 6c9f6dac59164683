import datetime as dt
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import (
    EXPENSE_CATEGORIES,
    INCOME_CATEGORIES,
    AccountType,
    RecurringInterval,
    TransactionType,
)


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType = AccountType.current
    balance: Decimal = Field(default=Decimal("0"), decimal_places=2, max_digits=14)
    is_default: bool = False


class TransactionIn(BaseModel):
    account_id: int
    type: TransactionType
    amount: Decimal = Field(..., ge=0, decimal_places=2, max_digits=14)
    date: dt.date
    description: Optional[str] = Field(default=None, max_length=500)
    category: str = Field(..., min_length=1, max_length=40)
    receipt_url: Optional[str] = None
    is_recurring: bool = False
    recurring_interval: Optional[RecurringInterval] = None

    @model_validator(mode="after")
    def _check_category_and_recurrence(self) -> "TransactionIn":
        allowed = (
            INCOME_CATEGORIES
            if self.type == TransactionType.income
            else EXPENSE_CATEGORIES
        )
        if self.category not in allowed:
            raise ValueError(
                f"Unsupported category '{self.category}' for {self.type.value}"
            )
        if self.is_recurring and self.recurring_interval is None:
            raise ValueError("Recurring transactions need an interval")
        if not self.is_recurring:
            self.recurring_interval = None
        return self


class BulkDeleteIn(BaseModel):
    transaction_ids: list[int] = Field(..., min_length=1, max_length=500)


class BudgetIn(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2, max_digits=14)


class ReceiptData(BaseModel):
    """Best-effort transaction fields read off a receipt image."""

    model_config = ConfigDict(extra="forbid")

    amount: Optional[Decimal] = None
    date: Optional[dt.date] = None
    description: str = ""
    merchant_name: str = ""
    category: str = "other-expense"


class MonthlySummary(BaseModel):
    user_id: int
    year: int
    month: int
    total_income: Decimal = Decimal("0")
    total_expenses: Decimal = Decimal("0")
    by_category: dict[str, Decimal] = Field(default_factory=dict)
    transaction_count: int = 0
    narrative: Optional[str] = None

    @property
    def net(self) -> Decimal:
        return self.total_income - self.total_expenses
