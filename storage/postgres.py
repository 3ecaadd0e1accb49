"""
PostgreSQL job store
Row-level locking (FOR UPDATE / SKIP LOCKED) and unique constraints keep
claims, the domain lock and the wallet consistent across processes
"""

import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

import psycopg2
import psycopg2.errors

from database import Database
from errors import AccountNotFound, DuplicateJobError, JobStateError
from models import (
    Domain, DomainStatus, Job, JobOutcome, JobState, JobType, RateWindow,
    TransactionType, TransferState, WalletAccount, WalletEntry, WalletTransaction,
    apply_entry_to_balance, new_id, utcnow,
)
from storage.base import Store

logger = logging.getLogger(__name__)

_IN_FLIGHT_SQL = "('queued', 'delayed_retry', 'active')"

# How many runnable candidates to try per claim before giving up
_CLAIM_BATCH = 10


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=_json_default)


def _row_to_job(row: Dict[str, Any]) -> Job:
    return Job(
        id=row['id'],
        job_type=JobType(row['job_type']),
        payload=row['payload'],
        fingerprint=row['fingerprint'],
        state=JobState(row['state']),
        attempts=row['attempts'],
        max_attempts=row['max_attempts'],
        next_run_at=row['next_run_at'],
        created_at=row['created_at'],
        updated_at=row['updated_at'],
        result=row['result'],
        error=row['error'],
        progress=row['progress'] or {},
        cancel_requested=row['cancel_requested'],
        worker_id=row['worker_id'],
        parent_job_id=row['parent_job_id'],
    )


def _row_to_domain(row: Dict[str, Any]) -> Domain:
    return Domain(
        id=row['id'],
        domain_name=row['domain_name'],
        owner_id=row['owner_id'],
        status=DomainStatus(row['status']),
        registered_at=row['registered_at'],
        expires_at=row['expires_at'],
        registrar_order_id=row['registrar_order_id'],
        term_years=row['term_years'],
        renewal_price=row['renewal_price'],
        auto_renew=row['auto_renew'],
        dns_records=row['dns_records'] or [],
        transfer_state=TransferState(row['transfer_state']) if row['transfer_state'] else None,
        transfer_id=row['transfer_id'],
        compensation_required=row['compensation_required'],
        created_at=row['created_at'],
        updated_at=row['updated_at'],
    )


def _row_to_account(row: Dict[str, Any]) -> WalletAccount:
    return WalletAccount(
        owner_id=row['owner_id'],
        balance=Decimal(row['balance']),
        currency=row['currency'],
        updated_at=row['updated_at'],
    )


def _row_to_transaction(row: Dict[str, Any]) -> WalletTransaction:
    return WalletTransaction(
        id=row['id'],
        account_id=row['account_id'],
        transaction_type=TransactionType(row['transaction_type']),
        amount=Decimal(row['amount']),
        balance_after=Decimal(row['balance_after']),
        reason=row['reason'],
        related_job_id=row['related_job_id'],
        related_payment_id=row['related_payment_id'],
        created_at=row['created_at'],
    )


def _insert_job_row(cursor, job: Job) -> None:
    cursor.execute(
        """INSERT INTO jobs (id, job_type, fingerprint, domain_name, owner_id, payload, state,
                             attempts, max_attempts, next_run_at, result, error, progress,
                             cancel_requested, worker_id, parent_job_id, created_at, updated_at)
           VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s, %s, %s, %s, %s::jsonb, %s, %s::jsonb,
                   %s, %s, %s, %s, %s)""",
        (job.id, job.job_type.value, job.fingerprint, job.domain_name, job.owner_id,
         _dumps(job.payload), job.state.value, job.attempts, job.max_attempts, job.next_run_at,
         _dumps(job.result), job.error, _dumps(job.progress), job.cancel_requested,
         job.worker_id, job.parent_job_id, job.created_at, job.updated_at)
    )


def _update_job_row(cursor, job: Job) -> None:
    cursor.execute(
        """UPDATE jobs
           SET state = %s, attempts = %s, next_run_at = %s, result = %s::jsonb, error = %s,
               progress = %s::jsonb, cancel_requested = cancel_requested OR %s, worker_id = %s, updated_at = %s
           WHERE id = %s""",
        (job.state.value, job.attempts, job.next_run_at, _dumps(job.result), job.error,
         _dumps(job.progress), job.cancel_requested, job.worker_id, job.updated_at, job.id)
    )


def _upsert_domain_row(cursor, domain: Domain) -> None:
    cursor.execute(
        """INSERT INTO domains (id, domain_name, owner_id, status, registered_at, expires_at,
                                registrar_order_id, term_years, renewal_price, auto_renew,
                                dns_records, transfer_state, transfer_id, compensation_required,
                                created_at, updated_at)
           VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s, %s, %s, %s, %s)
           ON CONFLICT (domain_name) DO UPDATE SET
               owner_id = EXCLUDED.owner_id,
               status = EXCLUDED.status,
               registered_at = EXCLUDED.registered_at,
               expires_at = EXCLUDED.expires_at,
               registrar_order_id = EXCLUDED.registrar_order_id,
               term_years = EXCLUDED.term_years,
               renewal_price = EXCLUDED.renewal_price,
               auto_renew = EXCLUDED.auto_renew,
               dns_records = EXCLUDED.dns_records,
               transfer_state = EXCLUDED.transfer_state,
               transfer_id = EXCLUDED.transfer_id,
               compensation_required = EXCLUDED.compensation_required,
               updated_at = EXCLUDED.updated_at""",
        (domain.id, domain.domain_name, domain.owner_id, domain.status.value, domain.registered_at,
         domain.expires_at, domain.registrar_order_id, domain.term_years, domain.renewal_price,
         domain.auto_renew, _dumps(domain.dns_records),
         domain.transfer_state.value if domain.transfer_state else None,
         domain.transfer_id, domain.compensation_required, domain.created_at, domain.updated_at)
    )


def _release_domain_lock(cursor, job: Job) -> None:
    cursor.execute("DELETE FROM domain_locks WHERE domain_name = %s AND job_id = %s",
                   (job.domain_name, job.id))


def _abandon_transfer(cursor, domain_name: str, now: datetime) -> None:
    cursor.execute("SELECT * FROM domains WHERE domain_name = %s FOR UPDATE", (domain_name,))
    row = cursor.fetchone()
    if not row:
        return
    domain = _row_to_domain(row)
    if domain.abandon_transfer(now):
        _upsert_domain_row(cursor, domain)
        logger.info(f"↩️ Transfer of {domain_name} abandoned")



def _apply_entry(cursor, entry: WalletEntry, now: datetime) -> WalletTransaction:
    """Lock the account row, check the balance and append the transaction"""
    cursor.execute("SELECT * FROM wallet_accounts WHERE owner_id = %s FOR UPDATE", (entry.owner_id,))
    row = cursor.fetchone()
    if not row:
        raise AccountNotFound(entry.owner_id)

    new_balance = apply_entry_to_balance(Decimal(row['balance']), entry)
    cursor.execute("UPDATE wallet_accounts SET balance = %s, updated_at = %s WHERE owner_id = %s",
                   (new_balance, now, entry.owner_id))

    txn = WalletTransaction(
        id=new_id(),
        account_id=entry.owner_id,
        transaction_type=entry.transaction_type,
        amount=entry.amount,
        balance_after=new_balance,
        reason=entry.reason,
        related_job_id=entry.related_job_id,
        related_payment_id=entry.related_payment_id,
        created_at=now,
    )
    cursor.execute(
        """INSERT INTO wallet_transactions (id, account_id, transaction_type, amount, balance_after,
                                            reason, related_job_id, related_payment_id, created_at)
           VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)""",
        (txn.id, txn.account_id, txn.transaction_type.value, txn.amount, txn.balance_after,
         txn.reason, txn.related_job_id, txn.related_payment_id, txn.created_at)
    )
    return txn


class PostgresStore(Store):

    def __init__(self, database: Database):
        self.db = database

    async def initialize(self) -> None:
        await self.db.init_database()

    # ----------------------------------------------------------------
    # Jobs
    # ----------------------------------------------------------------

    async def insert_job(self, job: Job, domain: Optional[Domain] = None) -> Job:
        def _insert(cursor) -> Job:
            cursor.execute(
                f"SELECT id FROM jobs WHERE fingerprint = %s AND state IN {_IN_FLIGHT_SQL} FOR UPDATE",
                (job.fingerprint,)
            )
            existing = cursor.fetchone()
            if existing:
                raise DuplicateJobError(job.fingerprint, existing['id'])

            if domain is not None:
                cursor.execute(
                    """INSERT INTO domains (id, domain_name, owner_id, status, term_years, renewal_price,
                                            auto_renew, dns_records, created_at, updated_at)
                       VALUES (%s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s, %s)
                       ON CONFLICT (domain_name) DO NOTHING""",
                    (domain.id, domain.domain_name, domain.owner_id, domain.status.value,
                     domain.term_years, domain.renewal_price, domain.auto_renew,
                     _dumps(domain.dns_records), domain.created_at, domain.updated_at)
                )
            _insert_job_row(cursor, job)
            return job

        try:
            return await self.db.run_in_transaction(_insert)
        except psycopg2.errors.UniqueViolation:
            # Lost a race with a concurrent insert of the same fingerprint
            raise DuplicateJobError(job.fingerprint)

    async def get_job(self, job_id: str) -> Optional[Job]:
        rows = await self.db.execute_query("SELECT * FROM jobs WHERE id = %s", (job_id,))
        return _row_to_job(rows[0]) if rows else None

    async def list_jobs(self, state: Optional[JobState] = None, job_type: Optional[JobType] = None,
                        parent_job_id: Optional[str] = None) -> List[Job]:
        conditions = []
        params: List[Any] = []
        if state is not None:
            conditions.append("state = %s")
            params.append(state.value)
        if job_type is not None:
            conditions.append("job_type = %s")
            params.append(job_type.value)
        if parent_job_id is not None:
            conditions.append("parent_job_id = %s")
            params.append(parent_job_id)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = await self.db.execute_query(f"SELECT * FROM jobs {where} ORDER BY created_at", tuple(params))
        return [_row_to_job(row) for row in rows]

    async def claim_job(self, job_types: Iterable[JobType], worker_id: str, now: datetime) -> Optional[Job]:
        type_values = [t.value for t in job_types]

        def _claim(cursor) -> Optional[Job]:
            cursor.execute(
                """SELECT j.* FROM jobs j
                   WHERE j.job_type = ANY(%s)
                     AND j.state IN ('queued', 'delayed_retry')
                     AND j.next_run_at <= %s
                     AND j.attempts < j.max_attempts
                     AND NOT EXISTS (SELECT 1 FROM domain_locks l WHERE l.domain_name = j.domain_name)
                   ORDER BY j.created_at
                   LIMIT %s
                   FOR UPDATE OF j SKIP LOCKED""",
                (type_values, now, _CLAIM_BATCH)
            )
            for row in cursor.fetchall():
                cursor.execute(
                    """INSERT INTO domain_locks (domain_name, job_id, worker_id, acquired_at)
                       VALUES (%s, %s, %s, %s)
                       ON CONFLICT (domain_name) DO NOTHING""",
                    (row['domain_name'], row['id'], worker_id, now)
                )
                if cursor.rowcount == 0:
                    continue
                job = _row_to_job(row)
                job.state = JobState.ACTIVE
                job.worker_id = worker_id
                job.updated_at = now
                _update_job_row(cursor, job)
                return job
            return None

        return await self.db.run_in_transaction(_claim)

    async def commit_outcome(self, outcome: JobOutcome) -> Optional[WalletTransaction]:
        job = outcome.job

        def _commit(cursor) -> Optional[WalletTransaction]:
            cursor.execute("SELECT state FROM jobs WHERE id = %s FOR UPDATE", (job.id,))
            row = cursor.fetchone()
            if not row or row['state'] != JobState.ACTIVE.value:
                state = row['state'] if row else 'missing'
                raise JobStateError(f"Job {job.id} is {state}, cannot commit outcome")
            if job.attempts > job.max_attempts:
                raise JobStateError(f"Job {job.id} attempts {job.attempts} exceed max {job.max_attempts}")

            txn = None
            if outcome.wallet_entry is not None:
                txn = _apply_entry(cursor, outcome.wallet_entry, job.updated_at)
            if outcome.domain is not None:
                _upsert_domain_row(cursor, outcome.domain)
            _update_job_row(cursor, job)
            if job.state != JobState.ACTIVE:
                _release_domain_lock(cursor, job)

            for follow_up in outcome.follow_ups:
                cursor.execute(
                    f"SELECT 1 FROM jobs WHERE fingerprint = %s AND state IN {_IN_FLIGHT_SQL}",
                    (follow_up.fingerprint,)
                )
                if cursor.fetchone():
                    logger.info(f"🔁 Follow-up {follow_up.job_type.value} already in flight for job {job.id}")
                    continue
                _insert_job_row(cursor, follow_up)
            return txn

        return await self.db.run_in_transaction(_commit)

    async def request_cancel(self, job_id: str, now: datetime) -> Job:
        def _cancel(cursor) -> Job:
            cursor.execute("SELECT * FROM jobs WHERE id = %s FOR UPDATE", (job_id,))
            row = cursor.fetchone()
            if not row:
                raise JobStateError(f"Job {job_id} not found")
            job = _row_to_job(row)
            if job.is_terminal:
                raise JobStateError(f"Job {job_id} is already {job.state.value}")
            if job.state == JobState.ACTIVE:
                job.cancel_requested = True
            else:
                job.state = JobState.CANCELLED
                job.error = 'Cancelled before execution'
                if job.progress.get('transfer_id'):
                    _abandon_transfer(cursor, job.domain_name, now)
            job.updated_at = now
            _update_job_row(cursor, job)
            return job

        return await self.db.run_in_transaction(_cancel)

    async def is_cancel_requested(self, job_id: str) -> bool:
        rows = await self.db.execute_query("SELECT cancel_requested FROM jobs WHERE id = %s", (job_id,))
        return bool(rows and rows[0]['cancel_requested'])

    async def release_job(self, job_id: str, next_run_at: datetime, now: datetime) -> Optional[Job]:
        def _release(cursor) -> Optional[Job]:
            cursor.execute("SELECT * FROM jobs WHERE id = %s FOR UPDATE", (job_id,))
            row = cursor.fetchone()
            if not row or row['state'] != JobState.ACTIVE.value:
                return None
            job = _row_to_job(row)
            job.state = JobState.DELAYED_RETRY
            job.next_run_at = next_run_at
            job.worker_id = None
            job.updated_at = now
            _update_job_row(cursor, job)
            _release_domain_lock(cursor, job)
            return job

        return await self.db.run_in_transaction(_release)

    async def recover_stale_jobs(self, cutoff: datetime, now: datetime) -> List[str]:
        def _recover(cursor) -> List[str]:
            cursor.execute(
                """UPDATE jobs SET state = 'delayed_retry', next_run_at = %s, worker_id = NULL, updated_at = %s
                   WHERE state = 'active' AND updated_at < %s
                   RETURNING id, domain_name""",
                (now, now, cutoff)
            )
            rows = cursor.fetchall()
            for row in rows:
                cursor.execute("DELETE FROM domain_locks WHERE domain_name = %s AND job_id = %s",
                               (row['domain_name'], row['id']))
            return [row['id'] for row in rows]

        return await self.db.run_in_transaction(_recover)

    # ----------------------------------------------------------------
    # Domains
    # ----------------------------------------------------------------

    async def get_domain(self, domain_name: str) -> Optional[Domain]:
        rows = await self.db.execute_query("SELECT * FROM domains WHERE domain_name = %s", (domain_name,))
        return _row_to_domain(rows[0]) if rows else None

    async def save_domain(self, domain: Domain) -> Domain:
        await self.db.run_in_transaction(_upsert_domain_row, domain)
        return domain

    async def list_domains_expiring(self, before: datetime) -> List[Domain]:
        rows = await self.db.execute_query(
            """SELECT * FROM domains
               WHERE status = 'active' AND auto_renew = TRUE
                 AND expires_at IS NOT NULL AND expires_at <= %s
               ORDER BY expires_at""",
            (before,)
        )
        return [_row_to_domain(row) for row in rows]

    # ----------------------------------------------------------------
    # Wallet
    # ----------------------------------------------------------------

    async def get_account(self, owner_id: str) -> Optional[WalletAccount]:
        rows = await self.db.execute_query("SELECT * FROM wallet_accounts WHERE owner_id = %s", (owner_id,))
        return _row_to_account(rows[0]) if rows else None

    async def open_account(self, owner_id: str, currency: str) -> WalletAccount:
        def _open(cursor) -> WalletAccount:
            cursor.execute(
                """INSERT INTO wallet_accounts (owner_id, balance, currency, updated_at)
                   VALUES (%s, 0.00, %s, %s)
                   ON CONFLICT (owner_id) DO NOTHING""",
                (owner_id, currency, utcnow())
            )
            cursor.execute("SELECT * FROM wallet_accounts WHERE owner_id = %s", (owner_id,))
            return _row_to_account(cursor.fetchone())

        return await self.db.run_in_transaction(_open)

    async def apply_wallet_entry(self, entry: WalletEntry) -> Tuple[WalletTransaction, bool]:
        def _apply(cursor) -> Tuple[WalletTransaction, bool]:
            if entry.related_payment_id:
                # Serialize replays of the same payment on the account row first
                cursor.execute("SELECT owner_id FROM wallet_accounts WHERE owner_id = %s FOR UPDATE",
                               (entry.owner_id,))
                cursor.execute("SELECT * FROM wallet_transactions WHERE related_payment_id = %s",
                               (entry.related_payment_id,))
                existing = cursor.fetchone()
                if existing:
                    return _row_to_transaction(existing), True
            return _apply_entry(cursor, entry, utcnow()), False

        return await self.db.run_in_transaction(_apply)

    async def list_transactions(self, owner_id: str) -> List[WalletTransaction]:
        rows = await self.db.execute_query(
            "SELECT * FROM wallet_transactions WHERE account_id = %s ORDER BY created_at", (owner_id,)
        )
        return [_row_to_transaction(row) for row in rows]

    # ----------------------------------------------------------------
    # Rate limiting
    # ----------------------------------------------------------------

    async def hit_rate_window(self, key: str, limit: int, window_ms: int,
                              now: datetime) -> Tuple[bool, RateWindow]:
        def _hit(cursor) -> Tuple[bool, RateWindow]:
            cursor.execute(
                """INSERT INTO rate_windows (key, window_start, count) VALUES (%s, %s, 0)
                   ON CONFLICT (key) DO NOTHING""",
                (key, now)
            )
            cursor.execute("SELECT * FROM rate_windows WHERE key = %s FOR UPDATE", (key,))
            row = cursor.fetchone()
            window = RateWindow(key=row['key'], window_start=row['window_start'], count=row['count'])
            allowed, window = window.hit(limit, window_ms, now)
            cursor.execute("UPDATE rate_windows SET window_start = %s, count = %s WHERE key = %s",
                           (window.window_start, window.count, key))
            return allowed, window

        return await self.db.run_in_transaction(_hit)

    async def close(self) -> None:
        self.db.close()
