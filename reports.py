import logging
from datetime import date
from typing import Optional, Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from balances import from_cents
from errors import transient_retry
from models import MonthlyReport, Transaction, TransactionType, User, utcnow
from notifications import Dispatcher, EmailTemplate
from periods import Period, previous_month
from recurrence import local_today
from schemas import MonthlySummary


logger = logging.getLogger(__name__)


class Narrator(Protocol):
    def narrate(self, period: str, data: dict[str, object]) -> str: ...


def summarize_month(
    session: Session, user_id: int, period: Period
) -> MonthlySummary:
    stmt = (
        select(
            Transaction.type,
            Transaction.category,
            func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
            func.count(Transaction.id).label("txn_count"),
        )
        .where(
            Transaction.user_id == user_id,
            Transaction.date.between(period.start, period.end),
        )
        .group_by(Transaction.type, Transaction.category)
        .order_by(Transaction.category)
    )
    income = 0
    expenses = 0
    count = 0
    by_category: dict[str, int] = {}
    for row in session.execute(stmt):
        total = int(row.total or 0)
        count += int(row.txn_count or 0)
        if row.type == TransactionType.income:
            income += total
        else:
            expenses += total
            by_category[row.category] = by_category.get(row.category, 0) + total
    return MonthlySummary(
        user_id=user_id,
        year=period.start.year,
        month=period.start.month,
        total_income=from_cents(income),
        total_expenses=from_cents(expenses),
        by_category={
            name: from_cents(cents)
            for name, cents in sorted(
                by_category.items(), key=lambda item: item[1], reverse=True
            )
        },
        transaction_count=count,
    )


class MonthlyReportGenerator:
    def __init__(
        self,
        session: Session,
        dispatcher: Dispatcher,
        narrator: Optional[Narrator] = None,
    ) -> None:
        self.session = session
        self.dispatcher = dispatcher
        self.narrator = narrator

    def run(self, today: Optional[date] = None) -> int:
        period = previous_month(today or local_today())
        reported = set(
            self.session.scalars(
                select(MonthlyReport.user_id).where(
                    MonthlyReport.year == period.start.year,
                    MonthlyReport.month == period.start.month,
                )
            ).all()
        )
        users = self.session.execute(
            select(User.id, User.email, User.name).order_by(User.id)
        ).all()
        sent = 0
        for user in users:
            if user.id in reported:
                continue
            try:
                if self._report(user, period):
                    sent += 1
                    reported.add(user.id)
            except Exception as exc:
                self.session.rollback()
                logger.warning(
                    f"monthly_report_failed: user_id={user.id} error={exc!r}"
                )
        logger.info(f"monthly_report_run: period={period.slug} reports_sent={sent}")
        return sent

    def _narrative(self, summary: MonthlySummary, period: Period) -> Optional[str]:
        if self.narrator is None:
            return None
        data = {
            "totalIncome": summary.total_income,
            "totalExpenses": summary.total_expenses,
            "byCategory": summary.by_category,
        }
        try:
            return self.narrator.narrate(period.start.strftime("%B %Y"), data) or None
        except Exception as exc:
            logger.warning(
                f"monthly_report_narrative_failed: user_id={summary.user_id} "
                f"error={exc!r}"
            )
            return None

    def _report(self, user, period: Period) -> bool:
        summary = summarize_month(self.session, user.id, period)
        summary.narrative = self._narrative(summary, period)

        try:
            self.session.add(
                MonthlyReport(
                    user_id=user.id,
                    year=summary.year,
                    month=summary.month,
                    sent_at=utcnow(),
                )
            )
            self.session.flush()
        except IntegrityError:
            # Reported by a concurrent run.
            self.session.rollback()
            return False

        payload = {
            "user_name": user.name or user.email,
            "period": period.start.strftime("%B %Y"),
            "total_income": summary.total_income,
            "total_expenses": summary.total_expenses,
            "net": summary.net,
            "by_category": summary.by_category,
            "insights": [
                line.strip()
                for line in (summary.narrative or "").splitlines()
                if line.strip()
            ],
        }
        try:
            for attempt in transient_retry():
                with attempt:
                    accepted = self.dispatcher.send(
                        user.email, EmailTemplate.monthly_report, payload
                    )
        except Exception:
            self.session.rollback()
            raise
        if not accepted:
            self.session.rollback()
            logger.warning(f"monthly_report_rejected: user_id={user.id}")
            return False
        self.session.commit()
        logger.info(f"monthly_report_sent: user_id={user.id} period={period.slug}")
        return True
