"""
Core data model for the domain lifecycle pipeline
Jobs, domains, wallet accounts/transactions and rate-limit windows
"""

import copy
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from errors import InsufficientFunds


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# ====================================================================
# JOBS
# ====================================================================

class JobType(str, Enum):
    REGISTER = "register"
    RENEW = "renew"
    UPDATE_DNS = "update_dns"
    TRANSFER = "transfer"
    NOTIFY = "notify"


class JobState(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED_RETRY = "delayed_retry"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})
RUNNABLE_JOB_STATES = frozenset({JobState.QUEUED, JobState.DELAYED_RETRY})
# States in which a fingerprint is considered "in flight"
IN_FLIGHT_JOB_STATES = frozenset({JobState.QUEUED, JobState.DELAYED_RETRY, JobState.ACTIVE})


@dataclass
class Job:
    """A unit of lifecycle work owned by exactly one worker while Active"""
    id: str
    job_type: JobType
    payload: Dict[str, Any]
    fingerprint: str
    state: JobState = JobState.QUEUED
    attempts: int = 0
    max_attempts: int = 5
    next_run_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    progress: Dict[str, Any] = field(default_factory=dict)
    cancel_requested: bool = False
    worker_id: Optional[str] = None
    parent_job_id: Optional[str] = None

    @property
    def domain_name(self) -> str:
        return self.payload['domain_name']

    @property
    def owner_id(self) -> str:
        return self.payload['owner_id']

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_JOB_STATES

    def copy(self) -> 'Job':
        return copy.deepcopy(self)

    def status(self) -> Dict[str, Any]:
        """Public status view used by the API layer for polling"""
        status: Dict[str, Any] = {
            'job_id': self.id,
            'job_type': self.job_type.value,
            'state': self.state.value,
            'attempts': self.attempts,
            'max_attempts': self.max_attempts,
        }
        if self.error:
            status['error'] = self.error
        if self.state == JobState.DELAYED_RETRY:
            status['next_run_at'] = self.next_run_at.isoformat()
        if self.result is not None:
            status['result'] = self.result
        return status


@dataclass
class JobResult:
    """What a worker reports after processing a job"""
    job_id: str
    job_type: JobType
    state: JobState
    attempts: int
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @classmethod
    def from_job(cls, job: Job) -> 'JobResult':
        return cls(
            job_id=job.id,
            job_type=job.job_type,
            state=job.state,
            attempts=job.attempts,
            result=job.result,
            error=job.error,
        )


# ====================================================================
# DOMAINS
# ====================================================================

class DomainStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    SUSPENDED = "suspended"
    TRANSFER_PENDING = "transfer_pending"


class TransferState(str, Enum):
    INITIATED = "initiated"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


DNS_RECORD_TYPES = ('A', 'AAAA', 'CNAME', 'MX', 'TXT', 'NS', 'SRV')


@dataclass
class Domain:
    id: str
    domain_name: str
    owner_id: str
    status: DomainStatus = DomainStatus.PENDING
    registered_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    registrar_order_id: Optional[str] = None
    term_years: int = 1
    renewal_price: Optional[Decimal] = None
    auto_renew: bool = True
    dns_records: List[Dict[str, Any]] = field(default_factory=list)
    transfer_state: Optional[TransferState] = None
    transfer_id: Optional[str] = None
    compensation_required: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def copy(self) -> 'Domain':
        return copy.deepcopy(self)

    def abandon_transfer(self, now: datetime) -> bool:
        """Return a domain stuck waiting on a dropped transfer to Pending"""
        if self.status != DomainStatus.TRANSFER_PENDING:
            return False
        self.status = DomainStatus.PENDING
        self.transfer_state = TransferState.REJECTED
        self.updated_at = now
        return True


def record_key(record: Dict[str, Any]) -> Tuple[str, str, str]:
    return (record['type'], record['name'], record['value'])


def apply_record_diff(records: List[Dict[str, Any]], diff: Dict[str, List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """Apply an {add, remove} record-set diff, returning the new record set"""
    removed = {record_key(r) for r in diff.get('remove', [])}
    merged = [r for r in records if record_key(r) not in removed]
    existing = {record_key(r) for r in merged}
    for record in diff.get('add', []):
        if record_key(record) not in existing:
            merged.append(dict(record))
            existing.add(record_key(record))
    return merged


# ====================================================================
# WALLET
# ====================================================================

class TransactionType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


@dataclass
class WalletAccount:
    owner_id: str
    balance: Decimal = Decimal('0.00')
    currency: str = 'INR'
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class WalletEntry:
    """A validated wallet mutation request, built only by the WalletLedger"""
    owner_id: str
    transaction_type: TransactionType
    amount: Decimal
    reason: str
    related_job_id: Optional[str] = None
    related_payment_id: Optional[str] = None


@dataclass(frozen=True)
class WalletTransaction:
    id: str
    account_id: str
    transaction_type: TransactionType
    amount: Decimal
    balance_after: Decimal
    reason: str
    related_job_id: Optional[str] = None
    related_payment_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


def apply_entry_to_balance(balance: Decimal, entry: WalletEntry) -> Decimal:
    """New balance after an entry; raises InsufficientFunds for overdrafts"""
    if entry.transaction_type == TransactionType.CREDIT:
        return balance + entry.amount
    if balance < entry.amount:
        raise InsufficientFunds(entry.owner_id, balance, entry.amount)
    return balance - entry.amount


# ====================================================================
# RATE LIMITING
# ====================================================================

@dataclass
class RateWindow:
    key: str
    window_start: datetime
    count: int = 0

    def hit(self, limit: int, window_ms: int, now: datetime) -> Tuple[bool, 'RateWindow']:
        """Fixed-window check-and-increment. Returns (allowed, updated window)"""
        window = self
        if now - window.window_start >= timedelta(milliseconds=window_ms):
            window = replace(window, window_start=now, count=0)
        if window.count >= limit:
            return False, window
        return True, replace(window, count=window.count + 1)

    def retry_after(self, window_ms: int, now: datetime) -> float:
        reset_at = self.window_start + timedelta(milliseconds=window_ms)
        return max((reset_at - now).total_seconds(), 0.0)


# ====================================================================
# UNIT OF WORK
# ====================================================================

@dataclass
class JobOutcome:
    """Everything a worker commits atomically when a job leaves Active"""
    job: Job
    domain: Optional[Domain] = None
    wallet_entry: Optional[WalletEntry] = None
    follow_ups: List[Job] = field(default_factory=list)
