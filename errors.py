"""
Error taxonomy for the DomainBay lifecycle pipeline

Every failure a worker can see maps onto one of these classes, and the class
decides what happens to the job:
- RetryableError subclasses are retried with backoff (or re-queued after the
  rate-limit window) until max_attempts is reached
- every other PipelineError is terminal for the job and is surfaced to the owner
"""

from typing import Optional
from decimal import Decimal


class PipelineError(Exception):
    """Base class for all pipeline errors"""
    pass


class RetryableError(PipelineError):
    """Transient failure - the job is retried later"""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ValidationError(PipelineError):
    """Malformed input (bad payload, bad amount, bad domain name)"""
    pass


class DuplicateJobError(PipelineError):
    """A job with the same fingerprint is already queued or running"""

    def __init__(self, fingerprint: str, existing_job_id: Optional[str] = None):
        super().__init__(f"Job already in flight for fingerprint {fingerprint}")
        self.fingerprint = fingerprint
        self.existing_job_id = existing_job_id


class JobStateError(PipelineError):
    """Illegal job state transition, e.g. writing to a terminal job"""
    pass


class RegistrarError(PipelineError):
    """Failure reported by (or while talking to) the registrar API"""

    def __init__(self, message: str, code: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.code = code


class RetryableRegistrarError(RegistrarError, RetryableError):
    """Network error, timeout, 429 or 5xx from the registrar"""
    pass


class TerminalRegistrarError(RegistrarError):
    """Business rejection from the registrar (domain taken, invalid record, ...)"""
    pass


class LedgerError(PipelineError):
    """Base class for wallet ledger failures"""
    pass


class InsufficientFunds(LedgerError):
    """Debit would take the wallet balance below zero"""

    def __init__(self, owner_id: str, balance: Decimal, amount: Decimal):
        super().__init__(f"Insufficient funds for owner {owner_id}: balance {balance}, required {amount}")
        self.owner_id = owner_id
        self.balance = balance
        self.amount = amount


class AccountNotFound(LedgerError):
    """No wallet account exists for the owner"""

    def __init__(self, owner_id: str):
        super().__init__(f"Wallet account not found for owner {owner_id}")
        self.owner_id = owner_id


class RateLimitExceeded(RetryableError):
    """Local throttling - never surfaced to the owner"""

    def __init__(self, key: str, retry_after: float):
        super().__init__(f"Rate limit exceeded for {key}, retry in {retry_after:.1f}s", retry_after=retry_after)
        self.key = key


class NotificationDeliveryError(RetryableError):
    """Transient failure delivering an owner notification"""
    pass


class NotificationRejectedError(PipelineError):
    """Messenger refused the notification (blocked bot, bad chat id)"""
    pass


def is_retryable(error: BaseException) -> bool:
    """Whether a failure should be retried with backoff"""
    if isinstance(error, RetryableError):
        return True
    # Unknown exceptions are treated as transient; known pipeline errors are terminal
    return not isinstance(error, PipelineError)
