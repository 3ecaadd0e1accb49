"""
Base class for lifecycle workers

A worker executes one claimed job and turns whatever happened into exactly
one committed job transition: Completed, DelayedRetry, Failed or Cancelled.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from admin_alerts import AdminAlertSystem, AlertCategory
from config import PipelineConfig
from errors import (
    JobStateError, LedgerError, PipelineError, RateLimitExceeded,
    RetryableRegistrarError, is_retryable,
)
from message_utils import create_error_message, escape_html, format_inline_code, truncate_with_ellipsis
from models import Domain, Job, JobOutcome, JobResult, JobState, JobType, WalletEntry, utcnow
from services.backoff import compute_backoff
from services.queue_producer import make_notify_job
from services.rate_limiter import RateLimiter
from services.registrar_client import RegistrarClient
from services.wallet_ledger import WalletLedger
from storage.base import Store

logger = logging.getLogger(__name__)

T = TypeVar('T')

REGISTRAR_RATE_SCOPE = 'registrar'
REGISTRAR_RATE_IDENTITY = 'outbound'


@dataclass
class StepResult:
    """What an execution produced, committed atomically by the base worker"""
    domain: Optional[Domain] = None
    wallet_entry: Optional[WalletEntry] = None
    result: Optional[Dict[str, Any]] = None
    progress: Dict[str, Any] = field(default_factory=dict)
    # Owner notification for the Completed transition
    message: Optional[str] = None
    # Yield and run again later without counting an attempt (transfer polling)
    reschedule_in: Optional[float] = None
    # Terminal failure that still persists `domain` (transfer rejected)
    failure: Optional[PipelineError] = None


@dataclass
class WorkerContext:
    """Dependencies shared by all workers of a pool"""
    store: Store
    registrar: RegistrarClient
    ledger: WalletLedger
    rate_limiter: RateLimiter
    alerts: AdminAlertSystem
    config: PipelineConfig
    notifier: Any = None
    clock: Callable[[], datetime] = utcnow
    rng: random.Random = field(default_factory=random.Random)


class BaseWorker:
    job_type: JobType
    alert_category: AlertCategory = AlertCategory.JOB_QUEUE

    def __init__(self, context: WorkerContext):
        self.ctx = context
        self.store = context.store
        self.registrar = context.registrar
        self.ledger = context.ledger
        self.config = context.config
        self.alerts = context.alerts

    @property
    def name(self) -> str:
        return f"{self.job_type.value}_worker"

    async def execute(self, job: Job) -> StepResult:
        raise NotImplementedError

    async def compensate(self, job: Job, step: StepResult, reason: str) -> Optional[Domain]:
        """
        Undo the external side effect of an execution that will not be committed

        Default: nothing to undo at the registrar, so flag the domain for a
        manual refund and alert admins. Returns the domain to persist.
        """
        domain = await self.store.get_domain(job.domain_name)
        if domain is None:
            return None
        domain.compensation_required = True
        domain.updated_at = self.ctx.clock()
        await self.alerts.send_critical_alert(
            self.name,
            f"Registrar {job.job_type.value} for {job.domain_name} completed but was not committed: {reason}",
            self.alert_category,
            {'job_id': job.id, 'owner_id': job.owner_id},
        )
        return domain

    # ----------------------------------------------------------------
    # Registrar calls
    # ----------------------------------------------------------------

    async def call_registrar(self, operation: str, factory: Callable[[], Awaitable[T]]) -> T:
        """Rate-limited, time-bounded registrar call"""
        await self.ctx.rate_limiter.enforce_scope(REGISTRAR_RATE_SCOPE, REGISTRAR_RATE_IDENTITY)
        timeout = self.config.registrar_timeout_seconds
        try:
            return await asyncio.wait_for(factory(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"⏱️ Registrar {operation} exceeded {timeout}s")
            raise RetryableRegistrarError(f"Registrar {operation} timed out after {timeout}s", code='timeout')

    # ----------------------------------------------------------------
    # Job lifecycle
    # ----------------------------------------------------------------

    async def process(self, job: Job) -> JobResult:
        """Run one Active job to its next committed state"""
        logger.info(f"⚙️ {self.name} processing job {job.id} for {job.domain_name} "
                    f"(attempt {job.attempts + 1}/{job.max_attempts})")

        if await self.store.is_cancel_requested(job.id):
            return await self._cancel(job, None)

        try:
            step = await self.execute(job)
        except Exception as e:
            return await self._fail_or_retry(job, e)

        if await self.store.is_cancel_requested(job.id):
            return await self._cancel(job, step)

        if step.failure is not None:
            return await self._fail_or_retry(job, step.failure, domain=step.domain, progress=step.progress)

        return await self._commit_step(job, step)

    async def _commit(self, outcome: JobOutcome) -> JobResult:
        try:
            await self.store.commit_outcome(outcome)
        except JobStateError as e:
            # Job was released or recovered elsewhere while we ran
            logger.warning(f"⚠️ {self.name} could not commit job {outcome.job.id}: {e}")
            current = await self.store.get_job(outcome.job.id)
            return JobResult.from_job(current or outcome.job)
        return JobResult.from_job(outcome.job)

    async def _commit_step(self, job: Job, step: StepResult) -> JobResult:
        now = self.ctx.clock()
        updated = job.copy()
        updated.progress.update(step.progress)
        updated.updated_at = now
        updated.worker_id = None
        follow_ups: List[Job] = []

        if step.reschedule_in is not None:
            updated.state = JobState.DELAYED_RETRY
            updated.next_run_at = now + timedelta(seconds=step.reschedule_in)
            logger.info(f"⏳ Job {job.id} yields, next check in {step.reschedule_in:.0f}s")
        else:
            updated.state = JobState.COMPLETED
            updated.attempts += 1
            updated.result = step.result or {}
            updated.error = None
            if job.job_type != JobType.NOTIFY and step.message:
                follow_ups.append(make_notify_job(updated, 'completed', step.message, now,
                                                  self.config.max_attempts))

        outcome = JobOutcome(job=updated, domain=step.domain, wallet_entry=step.wallet_entry,
                             follow_ups=follow_ups)
        try:
            await self.store.commit_outcome(outcome)
        except LedgerError as e:
            logger.warning(f"💸 Job {job.id} could not be committed: {e}")
            domain = await self.compensate(job, step, str(e))
            return await self._fail_or_retry(job, e, domain=domain, progress=step.progress)
        except JobStateError as e:
            logger.warning(f"⚠️ {self.name} could not commit job {job.id}: {e}")
            current = await self.store.get_job(job.id)
            return JobResult.from_job(current or updated)

        if updated.state == JobState.COMPLETED:
            logger.info(f"✅ Job {job.id} ({job.job_type.value} {job.domain_name}) completed "
                        f"after {updated.attempts} attempt(s)")
        return JobResult.from_job(updated)

    async def _fail_or_retry(self, job: Job, error: BaseException, domain: Optional[Domain] = None,
                             progress: Optional[Dict[str, Any]] = None) -> JobResult:
        now = self.ctx.clock()
        updated = job.copy()
        if progress:
            updated.progress.update(progress)
        updated.attempts += 1
        updated.updated_at = now
        updated.worker_id = None
        updated.error = str(error) or error.__class__.__name__

        if not isinstance(error, PipelineError):
            logger.exception(f"💥 Unexpected error in {self.name} for job {job.id}", exc_info=error)
            await self.alerts.send_error_alert(
                self.name, f"Unexpected error processing job {job.id}: {error!r}", AlertCategory.JOB_QUEUE,
                {'job_id': job.id, 'domain': job.domain_name},
            )

        if is_retryable(error) and updated.attempts < updated.max_attempts:
            delay = compute_backoff(updated.attempts, self.config.backoff_base_seconds,
                                    self.config.backoff_jitter_seconds, self.config.backoff_max_seconds,
                                    self.ctx.rng)
            retry_after = getattr(error, 'retry_after', None)
            if retry_after:
                delay = max(delay, retry_after)
            updated.state = JobState.DELAYED_RETRY
            updated.next_run_at = now + timedelta(seconds=delay)
            if isinstance(error, RateLimitExceeded):
                logger.info(f"🚦 Job {job.id} throttled locally, retry in {delay:.1f}s")
            else:
                logger.warning(f"🔄 Job {job.id} failed (attempt {updated.attempts}/{updated.max_attempts}), "
                               f"retry in {delay:.1f}s: {error}")
            return await self._commit(JobOutcome(job=updated, domain=domain))

        updated.state = JobState.FAILED
        follow_ups = []
        if job.job_type != JobType.NOTIFY:
            follow_ups.append(make_notify_job(updated, 'failed', self.failure_message(job, error), now,
                                              self.config.max_attempts))
        logger.error(f"❌ Job {job.id} ({job.job_type.value} {job.domain_name}) failed permanently "
                     f"after {updated.attempts} attempt(s): {error}")

        result = await self._commit(JobOutcome(job=updated, domain=domain, follow_ups=follow_ups))
        await self.alerts.send_error_alert(
            self.name,
            f"Job {job.job_type.value} for {job.domain_name} failed permanently: {updated.error}",
            self.alert_category,
            {'job_id': job.id, 'owner_id': job.owner_id, 'attempts': updated.attempts},
        )
        return result

    async def cancelled_domain(self, job: Job, step: Optional[StepResult]) -> Optional[Domain]:
        """Domain state to persist alongside a cancellation"""
        if step is None:
            return None
        if step.reschedule_in is not None or step.failure is not None:
            # Keep the intermediate state the registrar already reflects
            return step.domain
        return await self.compensate(job, step, 'job cancelled')

    async def _cancel(self, job: Job, step: Optional[StepResult]) -> JobResult:
        domain = await self.cancelled_domain(job, step)
        now = self.ctx.clock()
        updated = job.copy()
        updated.state = JobState.CANCELLED
        updated.error = 'Cancelled'
        updated.updated_at = now
        updated.worker_id = None
        logger.info(f"🛑 Job {job.id} cancelled during execution")
        return await self._commit(JobOutcome(job=updated, domain=domain))

    def failure_message(self, job: Job, error: BaseException) -> str:
        reason = escape_html(truncate_with_ellipsis(str(error), 300))
        return create_error_message(
            f"{job.job_type.value.replace('_', ' ').title()} failed",
            f"Domain: {format_inline_code(job.domain_name)}\nReason: {reason}",
        )
