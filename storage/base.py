"""
Job store interface
Durable storage for jobs, domains, wallet state and rate-limit windows
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from models import (
    Domain, Job, JobOutcome, JobState, JobType, RateWindow,
    WalletAccount, WalletEntry, WalletTransaction,
)


class Store(ABC):
    """
    Storage backend shared by the producer, the workers and the wallet ledger

    Implementations must make every method atomic. A claimed job holds the
    lock for its domain until the transaction that moves it out of Active.
    """

    # ----------------------------------------------------------------
    # Jobs
    # ----------------------------------------------------------------

    @abstractmethod
    async def insert_job(self, job: Job, domain: Optional[Domain] = None) -> Job:
        """
        Insert a new job, creating `domain` first if it does not exist yet

        Raises:
            DuplicateJobError: a job with the same fingerprint is in flight
        """

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def list_jobs(self, state: Optional[JobState] = None, job_type: Optional[JobType] = None,
                        parent_job_id: Optional[str] = None) -> List[Job]:
        ...

    @abstractmethod
    async def claim_job(self, job_types: Iterable[JobType], worker_id: str, now: datetime) -> Optional[Job]:
        """
        Atomically move the oldest runnable job of the given types to Active

        Skips jobs whose domain is locked by another Active job.
        """

    @abstractmethod
    async def commit_outcome(self, outcome: JobOutcome) -> Optional[WalletTransaction]:
        """
        Commit a job transition with its domain, wallet and follow-up changes

        All or nothing: the stored job must still be Active, the wallet entry
        must apply, and follow-ups whose fingerprint is already in flight are
        skipped.

        Raises:
            JobStateError: the stored job is not Active
            InsufficientFunds: the debit would overdraw the wallet
            AccountNotFound: no wallet account for the entry owner
        """

    @abstractmethod
    async def request_cancel(self, job_id: str, now: datetime) -> Job:
        """Cancel a waiting job, or flag an Active one for cooperative cancellation"""

    @abstractmethod
    async def is_cancel_requested(self, job_id: str) -> bool:
        ...

    @abstractmethod
    async def release_job(self, job_id: str, next_run_at: datetime, now: datetime) -> Optional[Job]:
        """Return an Active job to DelayedRetry without counting an attempt"""

    @abstractmethod
    async def recover_stale_jobs(self, cutoff: datetime, now: datetime) -> List[str]:
        """Release Active jobs last touched before `cutoff` (left behind by a dead worker)"""

    # ----------------------------------------------------------------
    # Domains
    # ----------------------------------------------------------------

    @abstractmethod
    async def get_domain(self, domain_name: str) -> Optional[Domain]:
        ...

    @abstractmethod
    async def save_domain(self, domain: Domain) -> Domain:
        ...

    @abstractmethod
    async def list_domains_expiring(self, before: datetime) -> List[Domain]:
        """Active auto-renew domains with expires_at <= before"""

    # ----------------------------------------------------------------
    # Wallet
    # ----------------------------------------------------------------

    @abstractmethod
    async def get_account(self, owner_id: str) -> Optional[WalletAccount]:
        ...

    @abstractmethod
    async def open_account(self, owner_id: str, currency: str) -> WalletAccount:
        """Create the account if missing and return it"""

    @abstractmethod
    async def apply_wallet_entry(self, entry: WalletEntry) -> Tuple[WalletTransaction, bool]:
        """
        Apply one entry and append its transaction

        Returns (transaction, duplicate). A replayed payment id returns the
        original transaction with duplicate=True and leaves the balance alone.
        """

    @abstractmethod
    async def list_transactions(self, owner_id: str) -> List[WalletTransaction]:
        ...

    # ----------------------------------------------------------------
    # Rate limiting
    # ----------------------------------------------------------------

    @abstractmethod
    async def hit_rate_window(self, key: str, limit: int, window_ms: int,
                              now: datetime) -> Tuple[bool, RateWindow]:
        """Fixed-window check-and-increment for one key"""

    async def close(self) -> None:
        pass
