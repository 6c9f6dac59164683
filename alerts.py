import logging
from datetime import datetime, time
from typing import Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from balances import from_cents
from config import get_settings
from errors import transient_retry
from models import Account, Budget, User
from notifications import Dispatcher, EmailTemplate
from periods import Period, current_month
from recurrence import local_now
from services import expenses_for_period


logger = logging.getLogger(__name__)


class BudgetAlertMonitor:
    """Sends at most one budget alert per user per calendar month.

    The month is claimed with a conditional update on ``last_alert_sent``
    before the email goes out, so two monitors racing on the same budget
    cannot both send. If the dispatch fails the claim is rolled back and the
    next tick tries again.
    """

    def __init__(
        self,
        session: Session,
        dispatcher: Dispatcher,
        threshold: Optional[float] = None,
    ) -> None:
        self.session = session
        self.dispatcher = dispatcher
        self.threshold = (
            threshold if threshold is not None else get_settings().alert_threshold
        )

    def _candidates(self):
        stmt = (
            select(
                Budget.id.label("budget_id"),
                Budget.amount_cents.label("budget_cents"),
                Budget.last_alert_sent,
                User.id.label("user_id"),
                User.email,
                User.name.label("user_name"),
                Account.id.label("account_id"),
                Account.name.label("account_name"),
            )
            .join(User, Budget.user_id == User.id)
            .join(
                Account,
                and_(Account.user_id == User.id, Account.is_default.is_(True)),
            )
            .order_by(User.id)
        )
        return self.session.execute(stmt).all()

    def run(self, now: Optional[datetime] = None) -> int:
        now = now or local_now()
        period = current_month(now.date())
        sent = 0
        for row in self._candidates():
            try:
                if self._check(row, now, period):
                    sent += 1
            except Exception as exc:
                self.session.rollback()
                logger.warning(
                    f"budget_alert_failed: user_id={row.user_id} error={exc!r}"
                )
        logger.info(f"budget_alert_run: period={period.slug} alerts_sent={sent}")
        return sent

    def _check(self, row, now: datetime, period: Period) -> bool:
        if row.budget_cents <= 0:
            return False
        spent = expenses_for_period(self.session, row.account_id, period)
        ratio = spent / row.budget_cents
        if ratio < self.threshold:
            return False
        month_start = datetime.combine(period.start, time.min)
        if row.last_alert_sent is not None and row.last_alert_sent >= month_start:
            return False

        claimed = self.session.execute(
            update(Budget)
            .where(
                Budget.id == row.budget_id,
                or_(
                    Budget.last_alert_sent.is_(None),
                    Budget.last_alert_sent < month_start,
                ),
            )
            .values(last_alert_sent=now)
        ).rowcount
        if not claimed:
            self.session.rollback()
            return False

        payload = {
            "user_name": row.user_name or row.email,
            "account_name": row.account_name,
            "percentage_used": round(ratio * 100, 1),
            "budget_amount": from_cents(row.budget_cents),
            "total_expenses": from_cents(spent),
            "remaining": from_cents(row.budget_cents - spent),
        }
        try:
            for attempt in transient_retry():
                with attempt:
                    accepted = self.dispatcher.send(
                        row.email, EmailTemplate.budget_alert, payload
                    )
        except Exception:
            self.session.rollback()
            raise
        if not accepted:
            self.session.rollback()
            logger.warning(f"budget_alert_rejected: user_id={row.user_id}")
            return False
        self.session.commit()
        logger.info(
            f"budget_alert_sent: user_id={row.user_id} "
            f"percentage_used={payload['percentage_used']}"
        )
        return True
