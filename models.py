from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


EXPENSE_CATEGORIES = (
    "housing",
    "transportation",
    "groceries",
    "utilities",
    "entertainment",
    "food",
    "shopping",
    "healthcare",
    "education",
    "personal",
    "travel",
    "insurance",
    "gifts",
    "bills",
    "other-expense",
)
INCOME_CATEGORIES = (
    "salary",
    "freelance",
    "investments",
    "business",
    "rental",
    "other-income",
)
DEFAULT_EXPENSE_CATEGORY = "other-expense"


class TransactionType(str, Enum):
    income = "INCOME"
    expense = "EXPENSE"


class AccountType(str, Enum):
    current = "CURRENT"
    savings = "SAVINGS"


class RecurringInterval(str, Enum):
    daily = "DAILY"
    weekly = "WEEKLY"
    monthly = "MONTHLY"
    yearly = "YEARLY"


class TransactionStatus(str, Enum):
    pending = "PENDING"
    completed = "COMPLETED"
    failed = "FAILED"


def _values_enum(enum_cls: type[Enum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda cls: [member.value for member in cls],
    )


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    external_id: Mapped[str] = mapped_column(String(120), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(200))
    image_url: Mapped[Optional[str]] = mapped_column(Text)

    accounts: Mapped[list["Account"]] = relationship(
        "Account", back_populates="user", order_by="Account.id"
    )
    default_account: Mapped[Optional["Account"]] = relationship(
        "Account",
        primaryjoin="and_(User.id == Account.user_id, Account.is_default.is_(True))",
        viewonly=True,
        uselist=False,
    )
    budget: Mapped[Optional["Budget"]] = relationship(
        "Budget", back_populates="user", uselist=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[AccountType] = mapped_column(
        _values_enum(AccountType, "accounttype"), nullable=False
    )
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    opening_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="accounts")
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="account"
    )

    __table_args__ = (Index("ix_accounts_user_default", "user_id", "is_default"),)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        _values_enum(TransactionType, "transactiontype"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    category: Mapped[str] = mapped_column(String(40), nullable=False)
    receipt_url: Mapped[Optional[str]] = mapped_column(Text)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurring_interval: Mapped[Optional[RecurringInterval]] = mapped_column(
        _values_enum(RecurringInterval, "recurringinterval")
    )
    next_recurring_date: Mapped[Optional[date]] = mapped_column(Date)
    last_processed: Mapped[Optional[datetime]] = mapped_column(DateTime)
    status: Mapped[TransactionStatus] = mapped_column(
        _values_enum(TransactionStatus, "transactionstatus"),
        nullable=False,
        default=TransactionStatus.completed,
    )
    origin_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id")
    )
    occurrence_date: Mapped[Optional[date]] = mapped_column(Date)

    account: Mapped["Account"] = relationship("Account", back_populates="transactions")

    __table_args__ = (
        UniqueConstraint(
            "origin_transaction_id",
            "occurrence_date",
            name="uq_txn_origin_occurrence",
        ),
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_account_type_date", "account_id", "type", "date"),
        Index(
            "ix_transactions_recurring_due",
            "is_recurring",
            "status",
            "next_recurring_date",
        ),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id"), unique=True, nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    last_alert_sent: Mapped[Optional[datetime]] = mapped_column(DateTime)

    user: Mapped["User"] = relationship("User", back_populates="budget")

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
    )


class MonthlyReport(Base, TimestampMixin):
    __tablename__ = "monthly_reports"
    __table_args__ = (
        UniqueConstraint("user_id", "year", "month", name="uq_report_user_month"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    sent_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
