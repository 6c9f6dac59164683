import logging
from datetime import date, datetime, timedelta
from itertools import groupby
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from balances import BalanceReconciler
from config import get_settings
from errors import transient_retry
from models import (
    RecurringInterval,
    Transaction,
    TransactionStatus,
    utcnow,
)


logger = logging.getLogger(__name__)


def local_now() -> datetime:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(base.day, days_in_month(year, month)))


def next_occurrence(from_date: date, interval: RecurringInterval) -> date:
    if interval == RecurringInterval.daily:
        return from_date + timedelta(days=1)
    if interval == RecurringInterval.weekly:
        return from_date + timedelta(weeks=1)
    if interval == RecurringInterval.monthly:
        return _add_months(from_date, 1)
    if interval == RecurringInterval.yearly:
        return _add_months(from_date, 12)
    raise ValueError(f"Unsupported recurring interval: {interval}")


def is_due(txn: Transaction, as_of: date) -> bool:
    return bool(
        txn.is_recurring
        and txn.next_recurring_date is not None
        and txn.next_recurring_date <= as_of
    )


def schedule_for(
    txn_date: date, is_recurring: bool, interval: Optional[RecurringInterval]
) -> Optional[date]:
    """``next_recurring_date`` for a transaction written by a user."""
    if is_recurring and interval is not None:
        return next_occurrence(txn_date, interval)
    return None


class RecurringEngine:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.settings = get_settings()

    def due_transaction_ids(self, today: date) -> list[int]:
        stmt = (
            select(Transaction.id, Transaction.user_id)
            .where(
                Transaction.is_recurring.is_(True),
                Transaction.status != TransactionStatus.failed,
                Transaction.next_recurring_date.is_not(None),
                Transaction.next_recurring_date <= today,
            )
            .order_by(
                Transaction.user_id,
                Transaction.next_recurring_date,
                Transaction.id,
            )
        )
        rows = self.session.execute(stmt).all()
        limit = self.settings.recurring_max_items_per_user
        due: list[int] = []
        for user_id, group in groupby(rows, key=lambda row: row.user_id):
            ids = [row.id for row in group]
            if limit > 0 and len(ids) > limit:
                logger.info(
                    f"recurring_throttled: user_id={user_id} due={len(ids)} limit={limit}"
                )
                ids = ids[:limit]
            due.extend(ids)
        return due

    def post_due_transactions(self, today: Optional[date] = None) -> int:
        today = today or local_today()
        count = 0
        for txn_id in self.due_transaction_ids(today):
            try:
                for attempt in transient_retry():
                    with attempt:
                        posted = self._post_occurrence(txn_id, today)
            except Exception as exc:
                self.session.rollback()
                logger.warning(
                    f"recurring_failed: transaction_id={txn_id} error={exc!r}"
                )
                try:
                    self._mark_failed(txn_id)
                except SQLAlchemyError as mark_exc:
                    self.session.rollback()
                    logger.error(
                        f"recurring_mark_failed_error: transaction_id={txn_id} "
                        f"error={mark_exc!r}"
                    )
                continue
            if posted:
                count += 1
        return count

    def _post_occurrence(self, txn_id: int, today: date) -> bool:
        try:
            parent = self.session.scalar(
                select(Transaction)
                .where(Transaction.id == txn_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            # Another runner may have advanced it since the scan.
            if (
                parent is None
                or parent.status == TransactionStatus.failed
                or not is_due(parent, today)
            ):
                self.session.rollback()
                return False

            occurrence_date = parent.next_recurring_date
            exists_stmt = (
                select(Transaction.id)
                .where(
                    Transaction.origin_transaction_id == parent.id,
                    Transaction.occurrence_date == occurrence_date,
                )
                .limit(1)
            )
            if self.session.execute(exists_stmt).scalar_one_or_none():
                next_date = self._advance(parent, occurrence_date, today)
                self.session.commit()
                logger.info(
                    f"recurring_already_posted: transaction_id={txn_id} "
                    f"occurrence={occurrence_date} next={next_date}"
                )
                return False

            reconciler = BalanceReconciler(self.session, parent.user_id)
            reconciler.lock_account(parent.account_id)

            child = Transaction(
                user_id=parent.user_id,
                account_id=parent.account_id,
                type=parent.type,
                amount_cents=parent.amount_cents,
                date=today,
                description=parent.description,
                category=parent.category,
                is_recurring=False,
                status=TransactionStatus.completed,
                origin_transaction_id=parent.id,
                occurrence_date=occurrence_date,
            )
            self.session.add(child)
            reconciler.on_create(parent.account_id, parent.type, parent.amount_cents)

            next_date = self._advance(parent, occurrence_date, today)
            self.session.flush()
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info(
            f"recurring_posted: transaction_id={txn_id} occurrence={occurrence_date} "
            f"next={next_date}"
        )
        return True

    @staticmethod
    def _advance(parent: Transaction, occurrence_date: date, today: date) -> date:
        """Move the parent's schedule to the first occurrence after ``today``."""
        next_date = next_occurrence(occurrence_date, parent.recurring_interval)
        while next_date <= today:
            next_date = next_occurrence(next_date, parent.recurring_interval)
        parent.next_recurring_date = next_date
        parent.last_processed = utcnow()
        return next_date

    def _mark_failed(self, txn_id: int) -> None:
        self.session.execute(
            update(Transaction)
            .where(Transaction.id == txn_id)
            .values(status=TransactionStatus.failed, last_processed=utcnow())
        )
        self.session.commit()
