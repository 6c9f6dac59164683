"""Balance bookkeeping for accounts.

An account's ``balance_cents`` is a cached aggregate of its transaction log:
INCOME adds the amount, EXPENSE subtracts it. The pure ``apply_*`` helpers
compute the new balance for a create, update or delete; ``BalanceReconciler``
writes the matching delta to the store as a single atomic increment, inside
the caller's database transaction, so the transaction row and the balance
commit or roll back together.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from errors import NotFound, Unauthorized, ValidationFailed
from models import Account, Transaction, TransactionType

Number = Union[int, Decimal]


def to_cents(amount: Decimal) -> int:
    if not amount.is_finite():
        raise ValidationFailed("Amount must be a finite number")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))


def signed_amount(txn_type: TransactionType, amount: Number) -> Number:
    if isinstance(amount, Decimal) and not amount.is_finite():
        raise ValidationFailed("Amount must be a finite number")
    if amount < 0:
        raise ValidationFailed("Amount must not be negative")
    return amount if txn_type == TransactionType.income else -amount


def apply_create(
    balance: Number, txn_type: TransactionType, amount: Number
) -> Number:
    return balance + signed_amount(txn_type, amount)


def apply_update(
    balance: Number,
    old_type: TransactionType,
    old_amount: Number,
    new_type: TransactionType,
    new_amount: Number,
) -> Number:
    net_change = signed_amount(new_type, new_amount) - signed_amount(
        old_type, old_amount
    )
    return balance + net_change


def apply_delete(
    balance: Number, txn_type: TransactionType, amount: Number
) -> Number:
    return balance - signed_amount(txn_type, amount)


class BalanceReconciler:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    def lock_account(self, account_id: int) -> Account:
        stmt = select(Account).where(Account.id == account_id).with_for_update()
        account = self.session.scalar(stmt)
        if not account:
            raise NotFound("Account not found")
        if self.user_id is not None and account.user_id != self.user_id:
            raise Unauthorized("Account does not belong to this user")
        return account

    def shift(self, account_id: int, delta_cents: int) -> int:
        if delta_cents:
            self.session.execute(
                update(Account)
                .where(Account.id == account_id)
                .values(balance_cents=Account.balance_cents + delta_cents)
            )
        return int(
            self.session.scalar(
                select(Account.balance_cents).where(Account.id == account_id)
            )
        )

    def on_create(
        self, account_id: int, txn_type: TransactionType, amount_cents: int
    ) -> int:
        return self.shift(account_id, signed_amount(txn_type, amount_cents))

    def on_delete(
        self, account_id: int, txn_type: TransactionType, amount_cents: int
    ) -> int:
        return self.shift(account_id, -signed_amount(txn_type, amount_cents))

    def replayed_balance(self, account: Account) -> int:
        """Opening balance plus every signed amount booked on the account."""
        signed = case(
            (Transaction.type == TransactionType.income, Transaction.amount_cents),
            else_=-Transaction.amount_cents,
        )
        stmt = select(func.coalesce(func.sum(signed), 0)).where(
            Transaction.account_id == account.id
        )
        booked = int(self.session.execute(stmt).scalar_one() or 0)
        return account.opening_balance_cents + booked
