from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import create_engine, update
from sqlalchemy.orm import Session

from alerts import BudgetAlertMonitor
from config import get_settings
from database import Base
from errors import TransientExternalFailure
from models import (
    Account,
    AccountType,
    Budget,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)
from notifications import EmailTemplate
from schemas import TransactionIn
from services import BudgetService, TransactionService


class RecordingDispatcher:
    def __init__(self, accept: bool = True, error: Exception = None) -> None:
        self.accept = accept
        self.error = error
        self.sent = []

    def send(self, recipient, template, payload):
        if self.error is not None:
            self.sent.append((recipient, template, None))
            raise self.error
        self.sent.append((recipient, template, payload))
        return self.accept


def _seed(session: Session, budget: str = "1000.00") -> tuple[User, Account, Budget]:
    user = User(external_id="ext_1", email="ada@example.com", name="Ada")
    session.add(user)
    session.flush()
    account = Account(
        user_id=user.id,
        name="Main",
        type=AccountType.current,
        balance_cents=500_000,
        opening_balance_cents=500_000,
        is_default=True,
    )
    row = Budget(user_id=user.id, amount_cents=int(Decimal(budget) * 100))
    session.add_all([account, row])
    session.commit()
    return user, account, row


def _spend(session: Session, user: User, account: Account, amount: str, on: date):
    TransactionService(session, user.id).create(
        TransactionIn(
            account_id=account.id,
            type=TransactionType.expense,
            amount=Decimal(amount),
            date=on,
            category="shopping",
        )
    )


def test_alert_sent_once_per_month():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account, budget = _seed(session)
        _spend(session, user, account, "850.00", date(2024, 3, 5))
        dispatcher = RecordingDispatcher()
        monitor = BudgetAlertMonitor(session, dispatcher)

        now = datetime(2024, 3, 10, 12, 0)
        assert monitor.run(now) == 1
        assert monitor.run(now) == 0
        assert len(dispatcher.sent) == 1

        recipient, template, payload = dispatcher.sent[0]
        assert recipient == "ada@example.com"
        assert template == EmailTemplate.budget_alert
        assert payload["percentage_used"] == 85.0
        assert payload["account_name"] == "Main"
        assert payload["remaining"] == Decimal("150.00")

        session.refresh(budget)
        assert budget.last_alert_sent == now


def test_alert_resets_in_new_month():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account, budget = _seed(session)
        dispatcher = RecordingDispatcher()
        monitor = BudgetAlertMonitor(session, dispatcher)

        _spend(session, user, account, "900.00", date(2024, 3, 31))
        assert monitor.run(datetime(2024, 3, 31, 23, 0)) == 1

        # April has no spending yet.
        assert monitor.run(datetime(2024, 4, 1, 6, 0)) == 0

        _spend(session, user, account, "820.00", date(2024, 4, 2))
        assert monitor.run(datetime(2024, 4, 2, 9, 0)) == 1
        assert len(dispatcher.sent) == 2


def test_below_threshold_sends_nothing():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account, budget = _seed(session)
        _spend(session, user, account, "799.99", date(2024, 3, 5))
        dispatcher = RecordingDispatcher()

        assert BudgetAlertMonitor(session, dispatcher).run(
            datetime(2024, 3, 10)
        ) == 0
        assert dispatcher.sent == []
        session.refresh(budget)
        assert budget.last_alert_sent is None


def test_zero_budget_is_skipped():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account, budget = _seed(session, budget="0")
        _spend(session, user, account, "10.00", date(2024, 3, 5))
        dispatcher = RecordingDispatcher()

        assert BudgetAlertMonitor(session, dispatcher).run(
            datetime(2024, 3, 10)
        ) == 0
        assert dispatcher.sent == []


def test_rejected_dispatch_releases_month_claim():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account, budget = _seed(session)
        _spend(session, user, account, "950.00", date(2024, 3, 5))
        now = datetime(2024, 3, 10)

        assert BudgetAlertMonitor(session, RecordingDispatcher(accept=False)).run(
            now
        ) == 0
        session.refresh(budget)
        assert budget.last_alert_sent is None

        dispatcher = RecordingDispatcher()
        assert BudgetAlertMonitor(session, dispatcher).run(now) == 1
        assert len(dispatcher.sent) == 1


def test_transient_dispatch_failure_is_retried_then_released(monkeypatch):
    settings = get_settings()
    monkeypatch.setattr(settings, "job_retry_wait_secs", 0)
    monkeypatch.setattr(settings, "job_retry_attempts", 2)
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account, budget = _seed(session)
        _spend(session, user, account, "950.00", date(2024, 3, 5))
        dispatcher = RecordingDispatcher(error=TransientExternalFailure("smtp down"))

        assert BudgetAlertMonitor(session, dispatcher).run(datetime(2024, 3, 10)) == 0
        assert len(dispatcher.sent) == 2
        session.refresh(budget)
        assert budget.last_alert_sent is None


def test_alerted_last_month_alerts_again():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account, budget = _seed(session)
        budget.last_alert_sent = datetime(2024, 2, 20, 8, 0)
        session.commit()
        _spend(session, user, account, "800.00", date(2024, 3, 1))

        dispatcher = RecordingDispatcher()
        assert BudgetAlertMonitor(session, dispatcher).run(datetime(2024, 3, 2)) == 1


def test_failed_expenses_do_not_count_toward_budget():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account, budget = _seed(session)
        _spend(session, user, account, "900.00", date(2024, 3, 5))
        session.execute(
            update(Transaction)
            .where(Transaction.account_id == account.id)
            .values(status=TransactionStatus.failed)
        )
        session.commit()
        _spend(session, user, account, "100.00", date(2024, 3, 6))

        progress = BudgetService(session, user.id).progress(date(2024, 3, 10))
        assert progress.spent_cents == 10_000

        dispatcher = RecordingDispatcher()
        assert BudgetAlertMonitor(session, dispatcher).run(datetime(2024, 3, 10)) == 0
        assert dispatcher.sent == []


def test_month_claimed_elsewhere_after_scan_is_not_resent(tmp_path, monkeypatch):
    engine = create_engine(f"sqlite:///{tmp_path / 'alerts.db'}")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account, budget = _seed(session)
        _spend(session, user, account, "900.00", date(2024, 3, 5))
        dispatcher = RecordingDispatcher()
        monitor = BudgetAlertMonitor(session, dispatcher)
        scan = monitor._candidates

        def scan_then_claim_elsewhere():
            rows = scan()
            with Session(engine) as other:
                other.execute(
                    update(Budget).values(last_alert_sent=datetime(2024, 3, 9, 18, 0))
                )
                other.commit()
            return rows

        monkeypatch.setattr(monitor, "_candidates", scan_then_claim_elsewhere)
        assert monitor.run(datetime(2024, 3, 10)) == 0
        assert dispatcher.sent == []

        session.refresh(budget)
        assert budget.last_alert_sent == datetime(2024, 3, 9, 18, 0)
