from sqlalchemy.exc import OperationalError
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config import get_settings


class FinanceError(Exception):
    kind = "error"


class Unauthorized(FinanceError):
    kind = "unauthorized"


class NotFound(FinanceError, LookupError):
    kind = "not_found"


class ValidationFailed(FinanceError, ValueError):
    kind = "validation"


class RateLimited(FinanceError):
    kind = "rate_limited"


class Blocked(FinanceError):
    kind = "blocked"


class ExtractionFailure(FinanceError):
    kind = "extraction_failure"


class TransientExternalFailure(FinanceError):
    kind = "transient_failure"


TRANSIENT_ERRORS = (OperationalError, TransientExternalFailure)


def transient_retry() -> Retrying:
    """Retry policy for a single scheduled-job item."""
    settings = get_settings()
    return Retrying(
        stop=stop_after_attempt(max(settings.job_retry_attempts, 1)),
        wait=wait_exponential(
            multiplier=settings.job_retry_wait_secs,
            max=settings.job_retry_wait_secs * 10,
        ),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        reraise=True,
    )
