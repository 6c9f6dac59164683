import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        identity_secret: str,
        identity_max_age_secs: int,
        gemini_api_key: Optional[str],
        gemini_model: str,
        ai_timeout_secs: float,
        smtp_host: str,
        smtp_port: int,
        smtp_user: Optional[str],
        smtp_password: Optional[str],
        smtp_sender: str,
        smtp_timeout_secs: float,
        alert_threshold: float,
        recurring_max_items_per_user: int,
        job_retry_attempts: int,
        job_retry_wait_secs: float,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.identity_secret = identity_secret
        self.identity_max_age_secs = identity_max_age_secs
        self.gemini_api_key = gemini_api_key
        self.gemini_model = gemini_model
        self.ai_timeout_secs = ai_timeout_secs
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_sender = smtp_sender
        self.smtp_timeout_secs = smtp_timeout_secs
        self.alert_threshold = alert_threshold
        self.recurring_max_items_per_user = recurring_max_items_per_user
        self.job_retry_attempts = job_retry_attempts
        self.job_retry_wait_secs = job_retry_wait_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    return Settings(
        database_url=os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}"),
        timezone=os.getenv("FINANCE_TIMEZONE", "Asia/Kolkata"),
        identity_secret=os.getenv(
            "FINANCE_IDENTITY_SECRET",
            "7f0c2b1e9d4a8c3f5e6b7a9d0c1e2f3a4b5c6d7e8f9a0b1c2d3e4f5a6b7c8d9e",
        ),
        identity_max_age_secs=int(os.getenv("FINANCE_IDENTITY_MAX_AGE_SECS", "3600")),
        gemini_api_key=os.getenv("FINANCE_GEMINI_API_KEY"),
        gemini_model=os.getenv("FINANCE_GEMINI_MODEL", "gemini-1.5-flash"),
        ai_timeout_secs=float(os.getenv("FINANCE_AI_TIMEOUT_SECS", "30")),
        smtp_host=os.getenv("FINANCE_SMTP_HOST", "localhost"),
        smtp_port=int(os.getenv("FINANCE_SMTP_PORT", "587")),
        smtp_user=os.getenv("FINANCE_SMTP_USER"),
        smtp_password=os.getenv("FINANCE_SMTP_PASSWORD"),
        smtp_sender=os.getenv("FINANCE_SMTP_SENDER", "Finance <noreply@localhost>"),
        smtp_timeout_secs=float(os.getenv("FINANCE_SMTP_TIMEOUT_SECS", "10")),
        alert_threshold=float(os.getenv("FINANCE_ALERT_THRESHOLD", "0.8")),
        recurring_max_items_per_user=int(
            os.getenv("FINANCE_RECURRING_MAX_ITEMS_PER_USER", "10")
        ),
        job_retry_attempts=int(os.getenv("FINANCE_JOB_RETRY_ATTEMPTS", "3")),
        job_retry_wait_secs=float(os.getenv("FINANCE_JOB_RETRY_WAIT_SECS", "1")),
    )
