from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import TYPE_CHECKING, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, joinedload

from balances import (
    BalanceReconciler,
    apply_update,
    signed_amount,
    to_cents,
)
from errors import NotFound, ValidationFailed
from models import (
    Account,
    Budget,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)
from periods import Period, current_month
from recurrence import local_today, schedule_for
from schemas import AccountIn, BudgetIn, TransactionIn

if TYPE_CHECKING:  # pragma: no cover
    from auth import ExternalIdentity


logger = logging.getLogger(__name__)


def expenses_for_period(session: Session, account_id: int, period: Period) -> int:
    stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
        Transaction.account_id == account_id,
        Transaction.type == TransactionType.expense,
        Transaction.status != TransactionStatus.failed,
        Transaction.date.between(period.start, period.end),
    )
    return int(session.execute(stmt).scalar_one() or 0)


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def sync(self, identity: "ExternalIdentity") -> User:
        """Upsert the local user for an identity, keyed by email."""
        user = self.session.scalar(select(User).where(User.email == identity.email))
        if user is None:
            user = User(
                external_id=identity.external_id,
                email=identity.email,
                name=identity.name,
                image_url=identity.image_url,
            )
            self.session.add(user)
            logger.info(f"user_created: email={identity.email}")
        else:
            user.external_id = identity.external_id
            user.name = identity.name
            user.image_url = identity.image_url
        self.session.commit()
        self.session.refresh(user)
        return user


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.created_at.desc(), Account.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFound("Account not found")
        return account

    def default(self) -> Optional[Account]:
        return self.session.scalar(
            select(Account).where(
                Account.user_id == self.user_id, Account.is_default.is_(True)
            )
        )

    def create(self, data: AccountIn) -> Account:
        opening = to_cents(data.balance)
        has_accounts = (
            self.session.execute(
                select(func.count(Account.id)).where(Account.user_id == self.user_id)
            ).scalar_one()
            or 0
        ) > 0
        # The first account is always the default one.
        is_default = data.is_default or not has_accounts
        if is_default:
            self._clear_default()
        account = Account(
            user_id=self.user_id,
            name=data.name,
            type=data.type,
            balance_cents=opening,
            opening_balance_cents=opening,
            is_default=is_default,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def set_default(self, account_id: int) -> Account:
        account = self.get(account_id)
        self._clear_default()
        account.is_default = True
        self.session.commit()
        self.session.refresh(account)
        return account

    def _clear_default(self) -> None:
        self.session.execute(
            update(Account)
            .where(Account.user_id == self.user_id, Account.is_default.is_(True))
            .values(is_default=False)
        )

    def recompute_balance(self, account_id: int) -> int:
        account = self.get(account_id)
        return BalanceReconciler(self.session, self.user_id).replayed_balance(account)

    def repair_balance(self, account_id: int) -> Account:
        reconciler = BalanceReconciler(self.session, self.user_id)
        account = reconciler.lock_account(account_id)
        expected = reconciler.replayed_balance(account)
        if account.balance_cents != expected:
            logger.warning(
                f"balance_repaired: account_id={account_id} "
                f"cached={account.balance_cents} replayed={expected}"
            )
            account.balance_cents = expected
        self.session.commit()
        self.session.refresh(account)
        return account


@dataclass
class TransactionFilters:
    account_id: Optional[int] = None
    type: Optional[TransactionType] = None
    category: Optional[str] = None
    is_recurring: Optional[bool] = None
    start: Optional[date] = None
    end: Optional[date] = None


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.reconciler = BalanceReconciler(session, user_id)

    def create(self, data: TransactionIn) -> Transaction:
        amount_cents = to_cents(data.amount)
        delta = signed_amount(data.type, amount_cents)
        try:
            self.reconciler.lock_account(data.account_id)
            txn = Transaction(
                user_id=self.user_id,
                account_id=data.account_id,
                type=data.type,
                amount_cents=amount_cents,
                date=data.date,
                description=data.description,
                category=data.category,
                receipt_url=data.receipt_url,
                is_recurring=data.is_recurring,
                recurring_interval=data.recurring_interval,
                next_recurring_date=schedule_for(
                    data.date, data.is_recurring, data.recurring_interval
                ),
            )
            self.session.add(txn)
            self.session.flush()
            self.reconciler.shift(data.account_id, delta)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.account))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def _lock(self, transaction_ids: list[int]) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id, Transaction.id.in_(transaction_ids)
            )
            .order_by(Transaction.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        txns = self.session.scalars(stmt).all()
        if len(txns) != len(transaction_ids):
            raise NotFound("Transaction not found")
        return txns

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        new_amount = to_cents(data.amount)
        try:
            txn = self._lock([transaction_id])[0]
            old_account_id = txn.account_id
            old_type = txn.type
            old_amount = txn.amount_cents
            keep_schedule = (
                txn.is_recurring
                and data.is_recurring
                and txn.date == data.date
                and txn.recurring_interval == data.recurring_interval
            )
            if data.account_id == old_account_id:
                self.reconciler.lock_account(old_account_id)
                net_change = apply_update(0, old_type, old_amount, data.type, new_amount)
                self.reconciler.shift(old_account_id, net_change)
            else:
                self.reconciler.lock_account(old_account_id)
                self.reconciler.lock_account(data.account_id)
                self.reconciler.on_delete(old_account_id, old_type, old_amount)
                self.reconciler.on_create(data.account_id, data.type, new_amount)

            txn.account_id = data.account_id
            txn.type = data.type
            txn.amount_cents = new_amount
            txn.date = data.date
            txn.description = data.description
            txn.category = data.category
            txn.receipt_url = data.receipt_url
            txn.is_recurring = data.is_recurring
            txn.recurring_interval = data.recurring_interval
            if not keep_schedule:
                txn.next_recurring_date = schedule_for(
                    data.date, data.is_recurring, data.recurring_interval
                )
            # An edit puts a failed recurring item back into the due scan.
            if txn.status == TransactionStatus.failed:
                txn.status = TransactionStatus.completed
            self.session.flush()
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> int:
        """Delete one transaction; returns the account's new balance in cents."""
        try:
            txn = self._lock([transaction_id])[0]
            self.reconciler.lock_account(txn.account_id)
            balance = self.reconciler.on_delete(
                txn.account_id, txn.type, txn.amount_cents
            )
            self._detach_copies([txn.id])
            self.session.delete(txn)
            self.session.flush()
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return balance

    def bulk_delete(self, transaction_ids: Iterable[int]) -> int:
        ids = sorted(set(transaction_ids))
        if not ids:
            raise ValidationFailed("No transactions selected")
        try:
            txns = self._lock(ids)
            deltas: dict[int, int] = {}
            for txn in txns:
                deltas[txn.account_id] = deltas.get(
                    txn.account_id, 0
                ) - signed_amount(txn.type, txn.amount_cents)
            for account_id in sorted(deltas):
                self.reconciler.lock_account(account_id)
                self.reconciler.shift(account_id, deltas[account_id])
            self._detach_copies(ids)
            for txn in txns:
                self.session.delete(txn)
            self.session.flush()
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return len(txns)

    def _detach_copies(self, origin_ids: list[int]) -> None:
        self.session.execute(
            update(Transaction)
            .where(Transaction.origin_transaction_id.in_(origin_ids))
            .values(origin_transaction_id=None)
        )

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.account))
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        if filters.account_id:
            stmt = stmt.where(Transaction.account_id == filters.account_id)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category:
            stmt = stmt.where(Transaction.category == filters.category)
        if filters.is_recurring is not None:
            stmt = stmt.where(Transaction.is_recurring.is_(filters.is_recurring))
        if filters.start:
            stmt = stmt.where(Transaction.date >= filters.start)
        if filters.end:
            stmt = stmt.where(Transaction.date <= filters.end)
        return self.session.scalars(stmt).all()


@dataclass(frozen=True)
class BudgetProgress:
    budget_cents: int
    spent_cents: int
    account_id: int

    @property
    def remaining_cents(self) -> int:
        return self.budget_cents - self.spent_cents

    @property
    def ratio(self) -> float:
        if self.budget_cents <= 0:
            return 0.0
        return self.spent_cents / self.budget_cents


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self) -> Optional[Budget]:
        return self.session.scalar(select(Budget).where(Budget.user_id == self.user_id))

    def upsert(self, data: BudgetIn) -> Budget:
        amount_cents = to_cents(data.amount)
        budget = self.get()
        if budget:
            budget.amount_cents = amount_cents
        else:
            budget = Budget(user_id=self.user_id, amount_cents=amount_cents)
            self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def progress(self, today: Optional[date] = None) -> Optional[BudgetProgress]:
        budget = self.get()
        account = AccountService(self.session, self.user_id).default()
        if not budget or not account:
            return None
        period = current_month(today or local_today())
        return BudgetProgress(
            budget_cents=budget.amount_cents,
            spent_cents=expenses_for_period(self.session, account.id, period),
            account_id=account.id,
        )