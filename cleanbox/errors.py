"""
Exception types shared across the scan pipeline.

Three families matter to callers:
- ExternalApiError: Gmail / OpenAI failed. Retried by the job queue, never inline.
- NotFoundError: a row the job depends on is gone. Fatal to that job only.
- ScanInProgressError: refused to enqueue a second scan for the same account.

Data problems (missing order number, unparseable event description) are not
exceptions here; they are logged and the record is skipped.
"""
from __future__ import annotations

from typing import Optional


class CleanBoxError(Exception):
    """Base error carrying a stable code and an HTTP-ish status."""

    code = "E_CLEANBOX"
    status = 500
    retryable = False

    def __init__(self, message: str, code: Optional[str] = None, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status:
            self.status = status

    def to_dict(self) -> dict:
        return {"message": self.message, "code": self.code, "status": self.status}


class ExternalApiError(CleanBoxError):
    """Gmail or OpenAI call failed."""

    code = "E_EXTERNAL_API_ERROR"
    status = 502
    retryable = True

    @classmethod
    def gmail_api_failed(cls, message: str) -> "ExternalApiError":
        return cls(f"Gmail API error: {message}", code="E_GMAIL_API_ERROR", status=502)

    @classmethod
    def openai_api_failed(cls, message: str) -> "ExternalApiError":
        return cls(f"OpenAI API error: {message}", code="E_OPENAI_API_ERROR", status=502)

    @classmethod
    def openai_timeout(cls) -> "ExternalApiError":
        return cls("OpenAI API request timed out", code="E_OPENAI_TIMEOUT", status=504)


class RateLimitExceededError(ExternalApiError):
    """The provider asked us to slow down; the whole job should back off."""

    code = "E_RATE_LIMIT_EXCEEDED"
    status = 429

    def __init__(self, service: str, retry_after: Optional[float] = None) -> None:
        if retry_after:
            message = f"{service} rate limit exceeded. Retry after {retry_after:g} seconds"
        else:
            message = f"{service} rate limit exceeded"
        super().__init__(message)
        self.service = service
        self.retry_after = retry_after


class NotFoundError(CleanBoxError):
    """A required row does not exist."""

    code = "E_NOT_FOUND"
    status = 404
    retryable = False

    @classmethod
    def email_account_not_found(cls, account_id: int) -> "NotFoundError":
        return cls(f"Email account {account_id} not found", code="E_EMAIL_ACCOUNT_NOT_FOUND")

    @classmethod
    def scan_job_not_found(cls, scan_job_id: int) -> "NotFoundError":
        return cls(f"Scan job {scan_job_id} not found", code="E_SCAN_JOB_NOT_FOUND")

    @classmethod
    def email_not_found(cls, email_id: int) -> "NotFoundError":
        return cls(f"Email {email_id} not found", code="E_EMAIL_NOT_FOUND")


class ScanInProgressError(CleanBoxError):
    code = "E_SCAN_IN_PROGRESS"
    status = 409

    def __init__(self, account_id: int) -> None:
        super().__init__(f"A scan is already in progress for account {account_id}")
        self.account_id = account_id
