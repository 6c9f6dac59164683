import logging
import smtplib
from email.message import EmailMessage
from enum import Enum
from pathlib import Path
from typing import Protocol

from jinja2 import Environment, FileSystemLoader, select_autoescape

from config import get_settings
from errors import TransientExternalFailure


logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates" / "email"


class EmailTemplate(str, Enum):
    monthly_report = "monthly-report"
    budget_alert = "budget-alert"


SUBJECTS = {
    EmailTemplate.monthly_report: "Your Monthly Financial Report - {period}",
    EmailTemplate.budget_alert: "Budget Alert: {percentage_used}% of your budget used",
}


class Dispatcher(Protocol):
    def send(
        self, recipient: str, template: EmailTemplate, payload: dict[str, object]
    ) -> bool: ...


_env = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(["html"]),
)
_env.filters["money"] = lambda value: f"{value:,.2f}"


def render_email(
    template: EmailTemplate, payload: dict[str, object]
) -> tuple[str, str]:
    subject = SUBJECTS[template].format(**payload)
    body = _env.get_template(f"{template.value}.html").render(**payload)
    return subject, body


class EmailDispatcher:
    def __init__(self) -> None:
        self.settings = get_settings()

    def send(
        self, recipient: str, template: EmailTemplate, payload: dict[str, object]
    ) -> bool:
        subject, body = render_email(template, payload)
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.settings.smtp_sender
        message["To"] = recipient
        message.set_content("This message requires an HTML capable mail client.")
        message.add_alternative(body, subtype="html")

        try:
            with smtplib.SMTP(
                self.settings.smtp_host,
                self.settings.smtp_port,
                timeout=self.settings.smtp_timeout_secs,
            ) as smtp:
                if self.settings.smtp_user:
                    smtp.starttls()
                    smtp.login(
                        self.settings.smtp_user, self.settings.smtp_password or ""
                    )
                smtp.send_message(message)
        except (smtplib.SMTPRecipientsRefused, smtplib.SMTPDataError) as exc:
            logger.warning(
                f"email_rejected: template={template.value} recipient={recipient} "
                f"error={exc!r}"
            )
            return False
        except (smtplib.SMTPException, OSError) as exc:
            raise TransientExternalFailure(f"Email dispatch failed: {exc}") from exc
        logger.info(f"email_sent: template={template.value} recipient={recipient}")
        return True
