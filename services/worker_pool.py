"""
Worker pool for the lifecycle pipeline
Runs asyncio worker loops per job type against the shared store, plus the
renewal scan, with graceful shutdown and crash recovery
"""

import asyncio
import logging
import os
import random
import socket
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from admin_alerts import AdminAlertSystem, AlertCategory
from config import PipelineConfig
from models import Job, JobResult, JobType, utcnow
from services.base_worker import BaseWorker, WorkerContext
from services.dns_worker import DnsUpdateWorker
from services.notification_worker import NotificationWorker
from services.queue_producer import QueueProducer
from services.rate_limiter import RateLimiter
from services.registrar_client import RegistrarClient
from services.registration_worker import RegistrationWorker
from services.renewal_scheduler import RenewalScheduler
from services.renewal_worker import RenewalWorker
from services.transfer_worker import TransferWorker
from services.wallet_ledger import WalletLedger
from storage.base import Store

logger = logging.getLogger(__name__)

WORKER_CLASSES = (RegistrationWorker, RenewalWorker, DnsUpdateWorker, TransferWorker, NotificationWorker)


class WorkerPool:
    """Owns the store, registrar, notifier and alert system for one worker process"""

    def __init__(self, store: Store, registrar: RegistrarClient, config: PipelineConfig,
                 notifier=None, alerts: Optional[AdminAlertSystem] = None,
                 clock: Callable[[], datetime] = utcnow, rng: Optional[random.Random] = None,
                 worker_id: Optional[str] = None):
        self.store = store
        self.registrar = registrar
        self.config = config
        self.notifier = notifier
        self.alerts = alerts or AdminAlertSystem()
        self.clock = clock
        self.worker_id = worker_id or f"{socket.gethostname()}-{os.getpid()}"

        self.ledger = WalletLedger(store, config.wallet_currency)
        self.rate_limiter = RateLimiter(store, config.rate_limits, clock)
        self.producer = QueueProducer(store, config, clock, max_amount=self.ledger.max_amount)
        self.scheduler = RenewalScheduler(store, self.producer, config.renewal_lead_days, clock)

        context = WorkerContext(
            store=store,
            registrar=registrar,
            ledger=self.ledger,
            rate_limiter=self.rate_limiter,
            alerts=self.alerts,
            config=config,
            notifier=notifier,
            clock=clock,
            rng=rng or random.Random(),
        )
        self.workers: Dict[JobType, BaseWorker] = {cls.job_type: cls(context) for cls in WORKER_CLASSES}

        self._stop_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._in_flight: Dict[str, Job] = {}
        self._started = False

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    async def start(self) -> None:
        """Recover jobs left Active by a dead process and spawn the worker loops"""
        if self._started:
            return
        self._started = True

        now = self.clock()
        cutoff = now - timedelta(seconds=self.config.job_lease_seconds)
        recovered = await self.store.recover_stale_jobs(cutoff, now)
        if recovered:
            logger.warning(f"♻️ Recovered {len(recovered)} stale active job(s): {', '.join(recovered)}")
            await self.alerts.send_warning_alert(
                'worker_pool',
                f"Released {len(recovered)} job(s) left active by a stopped worker",
                AlertCategory.JOB_QUEUE,
                {'job_ids': recovered},
            )

        for job_type, worker in self.workers.items():
            for index in range(self.config.worker_concurrency):
                loop_id = f"{self.worker_id}-{job_type.value}-{index}"
                self._tasks.append(asyncio.create_task(self._worker_loop(worker, loop_id), name=loop_id))
        self._tasks.append(asyncio.create_task(self._renewal_loop(), name=f"{self.worker_id}-renewals"))

        logger.info(f"🚀 Worker pool started: {len(self.workers)} job types x "
                    f"{self.config.worker_concurrency} loop(s)")

    async def _wait(self, timeout: float) -> None:
        """Sleep until timeout or until a stop is requested"""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def _worker_loop(self, worker: BaseWorker, loop_id: str) -> None:
        logger.info(f"👷 {loop_id} started")
        while not self.stopping:
            try:
                result = await self._run_one(worker, loop_id)
            except Exception as e:
                # One job must never take the loop down
                logger.exception(f"💥 {loop_id} loop error: {e}")
                await self.alerts.send_critical_alert(
                    loop_id, f"Worker loop error: {e!r}", AlertCategory.JOB_QUEUE
                )
                await self._wait(self.config.queue_poll_interval)
                continue
            if result is None:
                await self._wait(self.config.queue_poll_interval)
        logger.info(f"👋 {loop_id} stopped")

    async def _run_one(self, worker: BaseWorker, loop_id: str,
                       now: Optional[datetime] = None) -> Optional[JobResult]:
        job = await self.store.claim_job([worker.job_type], loop_id, now or self.clock())
        if job is None:
            return None

        self._in_flight[job.id] = job
        cancelled = False
        try:
            return await worker.process(job)
        except asyncio.CancelledError:
            # Left in _in_flight so shutdown can release it
            cancelled = True
            raise
        finally:
            if not cancelled:
                self._in_flight.pop(job.id, None)

    async def process_next(self, job_type: JobType, now: Optional[datetime] = None) -> Optional[JobResult]:
        """Claim and process one job of the given type, if any is runnable"""
        return await self._run_one(self.workers[job_type], f"{self.worker_id}-{job_type.value}-direct", now)

    async def _renewal_loop(self) -> None:
        while not self.stopping:
            try:
                await self.scheduler.scan()
            except Exception as e:
                logger.exception(f"💥 Renewal scan failed: {e}")
                await self.alerts.send_error_alert(
                    'renewal_scheduler', f"Renewal scan failed: {e!r}", AlertCategory.DOMAIN_RENEWAL
                )
            await self._wait(self.config.renewal_scan_interval)

    def request_stop(self) -> None:
        if not self.stopping:
            logger.info("🛑 Worker pool stop requested")
        self._stop_event.set()

    async def shutdown(self, grace: Optional[float] = None) -> None:
        """
        Stop the loops, giving in-flight jobs `grace` seconds to finish

        Jobs still running afterwards are cancelled and released back to
        DelayedRetry without counting an attempt.
        """
        self.request_stop()
        grace = self.config.shutdown_grace_seconds if grace is None else grace

        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=grace)
            if pending:
                logger.warning(f"⏱️ {len(pending)} task(s) still running after {grace}s grace - cancelling")
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
            self._tasks = []

        now = self.clock()
        for job_id in list(self._in_flight):
            released = await self.store.release_job(job_id, now, now)
            if released is not None:
                logger.info(f"↩️ Released interrupted job {job_id} back to the queue")
        self._in_flight.clear()

        await self.registrar.close()
        await self.store.close()
        logger.info("✅ Worker pool shut down")

    async def run_forever(self) -> None:
        await self.start()
        await self._stop_event.wait()
        await self.shutdown()
