"""
In-process job store for tests and single-process runs

Every operation runs under one asyncio lock with no awaits inside, so each
call is atomic with respect to other coroutines. Callers always get copies.
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from errors import AccountNotFound, DuplicateJobError, JobStateError
from models import (
    IN_FLIGHT_JOB_STATES, RUNNABLE_JOB_STATES,
    Domain, DomainStatus, Job, JobOutcome, JobState, JobType, RateWindow,
    WalletAccount, WalletEntry, WalletTransaction,
    apply_entry_to_balance, new_id, utcnow,
)
from storage.base import Store

logger = logging.getLogger(__name__)


class MemoryStore(Store):

    def __init__(self):
        self._lock = asyncio.Lock()
        self._jobs: Dict[str, Job] = {}
        self._domains: Dict[str, Domain] = {}
        self._domain_locks: Dict[str, str] = {}  # domain_name -> job id
        self._accounts: Dict[str, WalletAccount] = {}
        self._transactions: List[WalletTransaction] = []
        self._rate_windows: Dict[str, RateWindow] = {}

    # ----------------------------------------------------------------
    # helpers (call with the lock held)
    # ----------------------------------------------------------------

    def _in_flight_job(self, fingerprint: str) -> Optional[Job]:
        for job in self._jobs.values():
            if job.fingerprint == fingerprint and job.state in IN_FLIGHT_JOB_STATES:
                return job
        return None

    def _release_domain_lock(self, job: Job) -> None:
        if self._domain_locks.get(job.domain_name) == job.id:
            del self._domain_locks[job.domain_name]

    def _payment_transaction(self, payment_id: str) -> Optional[WalletTransaction]:
        for txn in self._transactions:
            if txn.related_payment_id == payment_id:
                return txn
        return None

    def _apply_entry(self, entry: WalletEntry, now: datetime) -> Tuple[WalletAccount, WalletTransaction]:
        """Compute the new account and transaction without mutating anything"""
        account = self._accounts.get(entry.owner_id)
        if account is None:
            raise AccountNotFound(entry.owner_id)
        new_balance = apply_entry_to_balance(account.balance, entry)
        updated = WalletAccount(owner_id=account.owner_id, balance=new_balance,
                                currency=account.currency, updated_at=now)
        txn = WalletTransaction(
            id=new_id(),
            account_id=account.owner_id,
            transaction_type=entry.transaction_type,
            amount=entry.amount,
            balance_after=new_balance,
            reason=entry.reason,
            related_job_id=entry.related_job_id,
            related_payment_id=entry.related_payment_id,
            created_at=now,
        )
        return updated, txn

    # ----------------------------------------------------------------
    # Jobs
    # ----------------------------------------------------------------

    async def insert_job(self, job: Job, domain: Optional[Domain] = None) -> Job:
        async with self._lock:
            existing = self._in_flight_job(job.fingerprint)
            if existing is not None:
                raise DuplicateJobError(job.fingerprint, existing.id)
            if domain is not None and domain.domain_name not in self._domains:
                self._domains[domain.domain_name] = domain.copy()
            self._jobs[job.id] = job.copy()
            return job.copy()

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            return job.copy() if job else None

    async def list_jobs(self, state: Optional[JobState] = None, job_type: Optional[JobType] = None,
                        parent_job_id: Optional[str] = None) -> List[Job]:
        async with self._lock:
            jobs = [
                job.copy() for job in self._jobs.values()
                if (state is None or job.state == state)
                and (job_type is None or job.job_type == job_type)
                and (parent_job_id is None or job.parent_job_id == parent_job_id)
            ]
        return sorted(jobs, key=lambda j: j.created_at)

    async def claim_job(self, job_types: Iterable[JobType], worker_id: str, now: datetime) -> Optional[Job]:
        types = set(job_types)
        async with self._lock:
            candidates = sorted(
                (job for job in self._jobs.values()
                 if job.job_type in types
                 and job.state in RUNNABLE_JOB_STATES
                 and job.next_run_at <= now
                 and job.attempts < job.max_attempts
                 and job.domain_name not in self._domain_locks),
                key=lambda j: j.created_at,
            )
            if not candidates:
                return None
            job = candidates[0]
            job.state = JobState.ACTIVE
            job.worker_id = worker_id
            job.updated_at = now
            self._domain_locks[job.domain_name] = job.id
            return job.copy()

    async def commit_outcome(self, outcome: JobOutcome) -> Optional[WalletTransaction]:
        job = outcome.job
        async with self._lock:
            stored = self._jobs.get(job.id)
            if stored is None or stored.state != JobState.ACTIVE:
                state = stored.state.value if stored else 'missing'
                raise JobStateError(f"Job {job.id} is {state}, cannot commit outcome")
            if job.attempts > job.max_attempts:
                raise JobStateError(f"Job {job.id} attempts {job.attempts} exceed max {job.max_attempts}")

            # Validate everything before mutating so a failure leaves no trace
            now = job.updated_at
            wallet_change = None
            if outcome.wallet_entry is not None:
                wallet_change = self._apply_entry(outcome.wallet_entry, now)

            follow_ups = [f for f in outcome.follow_ups if self._in_flight_job(f.fingerprint) is None]
            skipped = len(outcome.follow_ups) - len(follow_ups)
            if skipped:
                logger.info(f"🔁 Skipped {skipped} follow-up job(s) already in flight for job {job.id}")

            txn = None
            if wallet_change is not None:
                account, txn = wallet_change
                self._accounts[account.owner_id] = account
                self._transactions.append(txn)
            if outcome.domain is not None:
                self._domains[outcome.domain.domain_name] = outcome.domain.copy()
            saved = job.copy()
            saved.cancel_requested = saved.cancel_requested or stored.cancel_requested
            self._jobs[job.id] = saved
            if job.state != JobState.ACTIVE:
                self._release_domain_lock(job)
            for follow_up in follow_ups:
                self._jobs[follow_up.id] = follow_up.copy()
            return txn

    async def request_cancel(self, job_id: str, now: datetime) -> Job:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobStateError(f"Job {job_id} not found")
            if job.is_terminal:
                raise JobStateError(f"Job {job_id} is already {job.state.value}")
            if job.state in RUNNABLE_JOB_STATES:
                job.state = JobState.CANCELLED
                job.error = 'Cancelled before execution'
                domain = self._domains.get(job.domain_name)
                if job.progress.get('transfer_id') and domain is not None and domain.abandon_transfer(now):
                    logger.info(f"↩️ Transfer of {job.domain_name} abandoned with job {job_id}")
            else:
                job.cancel_requested = True
            job.updated_at = now
            return job.copy()

    async def is_cancel_requested(self, job_id: str) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            return bool(job and job.cancel_requested)

    async def release_job(self, job_id: str, next_run_at: datetime, now: datetime) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.ACTIVE:
                return None
            job.state = JobState.DELAYED_RETRY
            job.next_run_at = next_run_at
            job.worker_id = None
            job.updated_at = now
            self._release_domain_lock(job)
            return job.copy()

    async def recover_stale_jobs(self, cutoff: datetime, now: datetime) -> List[str]:
        async with self._lock:
            recovered = []
            for job in self._jobs.values():
                if job.state == JobState.ACTIVE and job.updated_at < cutoff:
                    job.state = JobState.DELAYED_RETRY
                    job.next_run_at = now
                    job.worker_id = None
                    job.updated_at = now
                    self._release_domain_lock(job)
                    recovered.append(job.id)
            return recovered

    # ----------------------------------------------------------------
    # Domains
    # ----------------------------------------------------------------

    async def get_domain(self, domain_name: str) -> Optional[Domain]:
        async with self._lock:
            domain = self._domains.get(domain_name)
            return domain.copy() if domain else None

    async def save_domain(self, domain: Domain) -> Domain:
        async with self._lock:
            self._domains[domain.domain_name] = domain.copy()
            return domain.copy()

    async def list_domains_expiring(self, before: datetime) -> List[Domain]:
        async with self._lock:
            domains = [
                d.copy() for d in self._domains.values()
                if d.status == DomainStatus.ACTIVE and d.auto_renew
                and d.expires_at is not None and d.expires_at <= before
            ]
        return sorted(domains, key=lambda d: d.expires_at)

    # ----------------------------------------------------------------
    # Wallet
    # ----------------------------------------------------------------

    async def get_account(self, owner_id: str) -> Optional[WalletAccount]:
        async with self._lock:
            account = self._accounts.get(owner_id)
            if account is None:
                return None
            return WalletAccount(owner_id=account.owner_id, balance=account.balance,
                                 currency=account.currency, updated_at=account.updated_at)

    async def open_account(self, owner_id: str, currency: str) -> WalletAccount:
        async with self._lock:
            if owner_id not in self._accounts:
                self._accounts[owner_id] = WalletAccount(owner_id=owner_id, currency=currency)
            account = self._accounts[owner_id]
            return WalletAccount(owner_id=account.owner_id, balance=account.balance,
                                 currency=account.currency, updated_at=account.updated_at)

    async def apply_wallet_entry(self, entry: WalletEntry) -> Tuple[WalletTransaction, bool]:
        async with self._lock:
            if entry.related_payment_id:
                existing = self._payment_transaction(entry.related_payment_id)
                if existing is not None:
                    return existing, True
            account, txn = self._apply_entry(entry, utcnow())
            self._accounts[account.owner_id] = account
            self._transactions.append(txn)
            return txn, False

    async def list_transactions(self, owner_id: str) -> List[WalletTransaction]:
        async with self._lock:
            return [txn for txn in self._transactions if txn.account_id == owner_id]

    # ----------------------------------------------------------------
    # Rate limiting
    # ----------------------------------------------------------------

    async def hit_rate_window(self, key: str, limit: int, window_ms: int,
                              now: datetime) -> Tuple[bool, RateWindow]:
        async with self._lock:
            window = self._rate_windows.get(key) or RateWindow(key=key, window_start=now, count=0)
            allowed, window = window.hit(limit, window_ms, now)
            self._rate_windows[key] = window
            return allowed, window
