"""
PostgreSQL connection management for the lifecycle pipeline
Threaded psycopg2 pool with raw SQL helpers and schema bootstrap
"""

import asyncio
import logging
import time
import threading
from typing import Any, Callable, Dict, List, Optional, TypeVar

import psycopg2
import psycopg2.pool
from psycopg2.extras import RealDictCursor

logger = logging.getLogger(__name__)

T = TypeVar('T')

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id VARCHAR(64) PRIMARY KEY,
        job_type VARCHAR(32) NOT NULL,
        fingerprint VARCHAR(64) NOT NULL,
        domain_name VARCHAR(255) NOT NULL,
        owner_id VARCHAR(255) NOT NULL,
        payload JSONB NOT NULL,
        state VARCHAR(32) NOT NULL DEFAULT 'queued',
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 5,
        next_run_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        result JSONB,
        error TEXT,
        progress JSONB NOT NULL DEFAULT '{}'::jsonb,
        cancel_requested BOOLEAN NOT NULL DEFAULT FALSE,
        worker_id VARCHAR(255),
        parent_job_id VARCHAR(64),
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        CONSTRAINT jobs_attempts_bounded CHECK (attempts >= 0 AND attempts <= max_attempts)
    )
    """,
    # At most one in-flight job per fingerprint
    """
    CREATE UNIQUE INDEX IF NOT EXISTS jobs_fingerprint_in_flight
        ON jobs (fingerprint) WHERE state IN ('queued', 'delayed_retry', 'active')
    """,
    """
    CREATE INDEX IF NOT EXISTS jobs_runnable
        ON jobs (job_type, state, next_run_at, created_at)
    """,
    # Per-domain advisory lock: one Active job per domain
    """
    CREATE TABLE IF NOT EXISTS domain_locks (
        domain_name VARCHAR(255) PRIMARY KEY,
        job_id VARCHAR(64) NOT NULL,
        worker_id VARCHAR(255),
        acquired_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS domains (
        id VARCHAR(64) PRIMARY KEY,
        domain_name VARCHAR(255) UNIQUE NOT NULL,
        owner_id VARCHAR(255) NOT NULL,
        status VARCHAR(32) NOT NULL DEFAULT 'pending',
        registered_at TIMESTAMPTZ,
        expires_at TIMESTAMPTZ,
        registrar_order_id VARCHAR(255),
        term_years INTEGER NOT NULL DEFAULT 1,
        renewal_price DECIMAL(12,2),
        auto_renew BOOLEAN NOT NULL DEFAULT TRUE,
        dns_records JSONB NOT NULL DEFAULT '[]'::jsonb,
        transfer_state VARCHAR(32),
        transfer_id VARCHAR(255),
        compensation_required BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS domains_expiry
        ON domains (status, auto_renew, expires_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS wallet_accounts (
        owner_id VARCHAR(255) PRIMARY KEY,
        balance DECIMAL(12,2) NOT NULL DEFAULT 0.00,
        currency VARCHAR(3) NOT NULL DEFAULT 'INR',
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        CONSTRAINT wallet_balance_non_negative CHECK (balance >= 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS wallet_transactions (
        id VARCHAR(64) PRIMARY KEY,
        account_id VARCHAR(255) NOT NULL REFERENCES wallet_accounts(owner_id),
        transaction_type VARCHAR(10) NOT NULL,
        amount DECIMAL(12,2) NOT NULL,
        balance_after DECIMAL(12,2) NOT NULL,
        reason TEXT NOT NULL DEFAULT '',
        related_job_id VARCHAR(64),
        related_payment_id VARCHAR(255),
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        CONSTRAINT wallet_transaction_amount_positive CHECK (amount > 0),
        CONSTRAINT wallet_transaction_type_valid CHECK (transaction_type IN ('credit', 'debit'))
    )
    """,
    # Payment credits are applied exactly once per external payment reference
    """
    CREATE UNIQUE INDEX IF NOT EXISTS wallet_transactions_payment_once
        ON wallet_transactions (related_payment_id) WHERE related_payment_id IS NOT NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS rate_windows (
        key VARCHAR(255) PRIMARY KEY,
        window_start TIMESTAMPTZ NOT NULL,
        count INTEGER NOT NULL DEFAULT 0
    )
    """,
]


class Database:
    """Threaded psycopg2 connection pool with async helpers"""

    def __init__(self, dsn: str, minconn: int = 2, maxconn: int = 20):
        if not dsn:
            raise ValueError("DATABASE_URL is required for the PostgreSQL store")
        self.dsn = dsn
        self.minconn = minconn
        self.maxconn = maxconn
        self._pool: Optional[psycopg2.pool.ThreadedConnectionPool] = None
        self._pool_lock = threading.Lock()

    def get_connection_pool(self) -> psycopg2.pool.ThreadedConnectionPool:
        """Get or create the connection pool"""
        with self._pool_lock:
            if self._pool is None:
                self._pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=self.minconn,
                    maxconn=self.maxconn,
                    dsn=self.dsn,
                    cursor_factory=RealDictCursor,
                    connect_timeout=5,
                    keepalives_idle=600,
                    keepalives_interval=30,
                    keepalives_count=3,
                )
                logger.info(f"✅ Connection pool created ({self.minconn}-{self.maxconn} connections)")
            return self._pool

    def get_connection(self):
        """Get a healthy connection from the pool, retrying dead ones"""
        pool_retry_attempts = 3
        last_error: Optional[Exception] = None

        for pool_attempt in range(pool_retry_attempts):
            conn = self.get_connection_pool().getconn()
            try:
                with conn.cursor() as cursor:
                    cursor.execute("SELECT 1")
                conn.autocommit = True
                return conn
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                last_error = e
                logger.warning(f"🔄 Pool connection {pool_attempt + 1}/{pool_retry_attempts} unhealthy: {e}")
                self.return_connection(conn, is_broken=True)
                time.sleep(0.1)

        logger.error(f"❌ No healthy database connection after {pool_retry_attempts} attempts")
        raise last_error if last_error else psycopg2.OperationalError("No database connection available")

    def return_connection(self, conn, is_broken: bool = False) -> None:
        """Return a connection to the pool"""
        if self._pool is None:
            conn.close()
            return
        self._pool.putconn(conn, close=is_broken)

    async def execute_query(self, query: str, params: Optional[tuple] = None) -> List[Dict[str, Any]]:
        """Execute a SELECT query and return rows as dicts"""
        def _execute() -> List[Dict[str, Any]]:
            conn = self.get_connection()
            try:
                with conn.cursor() as cursor:
                    cursor.execute(query, params)
                    return [dict(row) for row in cursor.fetchall()]
            finally:
                self.return_connection(conn)

        return await asyncio.to_thread(_execute)

    async def execute_update(self, query: str, params: Optional[tuple] = None) -> int:
        """Execute an UPDATE/INSERT/DELETE query and return affected rows (no retries to prevent duplicates)"""
        def _execute() -> int:
            conn = self.get_connection()
            try:
                with conn.cursor() as cursor:
                    cursor.execute(query, params)
                    return cursor.rowcount
            finally:
                self.return_connection(conn)

        return await asyncio.to_thread(_execute)

    async def run_in_transaction(self, func: Callable[..., T], *args, **kwargs) -> T:
        """
        Run func(cursor, *args, **kwargs) inside a single transaction

        Commits when func returns, rolls back and re-raises when it raises.
        """
        def _execute_in_transaction() -> T:
            conn = self.get_connection()
            broken = False
            try:
                conn.autocommit = False
                try:
                    with conn.cursor() as cursor:
                        result = func(cursor, *args, **kwargs)
                    conn.commit()
                    return result
                except (psycopg2.OperationalError, psycopg2.InterfaceError):
                    broken = True
                    raise
                except BaseException:
                    conn.rollback()
                    raise
            finally:
                if not broken:
                    conn.autocommit = True
                self.return_connection(conn, is_broken=broken)

        return await asyncio.to_thread(_execute_in_transaction)

    async def init_database(self) -> None:
        """Create tables and indexes if they don't exist"""
        def _init(cursor) -> None:
            for statement in SCHEMA_STATEMENTS:
                cursor.execute(statement)

        await self.run_in_transaction(_init)
        logger.info("✅ Database schema ready (jobs, domain_locks, domains, wallet, rate_windows)")

    def close(self) -> None:
        with self._pool_lock:
            if self._pool is not None:
                self._pool.closeall()
                self._pool = None
                logger.info("🔌 Connection pool closed")
