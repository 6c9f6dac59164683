import smtplib
from decimal import Decimal

import pytest

import notifications
from errors import TransientExternalFailure
from notifications import EmailDispatcher, EmailTemplate, render_email


ALERT_PAYLOAD = {
    "user_name": "Ada",
    "account_name": "Main <Card>",
    "percentage_used": 85.0,
    "budget_amount": Decimal("1000.00"),
    "total_expenses": Decimal("850.00"),
    "remaining": Decimal("150.00"),
}


def test_budget_alert_renders_amounts_and_escapes_names():
    subject, body = render_email(EmailTemplate.budget_alert, ALERT_PAYLOAD)

    assert subject == "Budget Alert: 85.0% of your budget used"
    assert "1,000.00" in body
    assert "150.00" in body
    assert "Main &lt;Card&gt;" in body


def test_monthly_report_lists_categories_and_insights():
    subject, body = render_email(
        EmailTemplate.monthly_report,
        {
            "user_name": "Ada",
            "period": "February 2024",
            "total_income": Decimal("3000.00"),
            "total_expenses": Decimal("500.00"),
            "net": Decimal("2500.00"),
            "by_category": {"travel": Decimal("300.00"), "food": Decimal("200.00")},
            "insights": ["Travel was your top spend."],
        },
    )

    assert subject == "Your Monthly Financial Report - February 2024"
    assert body.index("travel") < body.index("food")
    assert "2,500.00" in body
    assert "Travel was your top spend." in body


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.messages = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        pass

    def login(self, user, password):
        pass

    def send_message(self, message):
        self.messages.append(message)


def test_dispatcher_sends_html_message(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(notifications.smtplib, "SMTP", FakeSMTP)

    assert EmailDispatcher().send(
        "ada@example.com", EmailTemplate.budget_alert, ALERT_PAYLOAD
    )
    message = FakeSMTP.instances[0].messages[0]
    assert message["To"] == "ada@example.com"
    assert message["Subject"].startswith("Budget Alert")


def test_dispatcher_reports_refused_recipient(monkeypatch):
    class RefusingSMTP(FakeSMTP):
        def send_message(self, message):
            raise smtplib.SMTPRecipientsRefused({"ada@example.com": (550, b"no")})

    monkeypatch.setattr(notifications.smtplib, "SMTP", RefusingSMTP)
    assert not EmailDispatcher().send(
        "ada@example.com", EmailTemplate.budget_alert, ALERT_PAYLOAD
    )


def test_dispatcher_connection_error_is_transient(monkeypatch):
    def unreachable(*args, **kwargs):
        raise ConnectionRefusedError("smtp down")

    monkeypatch.setattr(notifications.smtplib, "SMTP", unreachable)
    with pytest.raises(TransientExternalFailure):
        EmailDispatcher().send(
            "ada@example.com", EmailTemplate.budget_alert, ALERT_PAYLOAD
        )
