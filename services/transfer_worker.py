"""
Transfer worker
Runs the inbound transfer state machine persisted on the domain record:
Initiated -> AwaitingConfirmation -> Confirmed | Rejected
"""

import logging
from typing import Optional

from admin_alerts import AlertCategory
from errors import TerminalRegistrarError, ValidationError
from message_utils import create_success_message, format_inline_code
from models import Domain, DomainStatus, Job, JobType, TransferState, WalletEntry
from pricing_utils import format_money, to_money
from services.base_worker import BaseWorker, StepResult
from services.registrar_client import TRANSFER_CONFIRMED, TRANSFER_REJECTED

logger = logging.getLogger(__name__)


class TransferWorker(BaseWorker):
    job_type = JobType.TRANSFER
    alert_category = AlertCategory.TRANSFER

    async def execute(self, job: Job) -> StepResult:
        domain = await self.store.get_domain(job.domain_name)
        if domain is None:
            raise ValidationError(f"Domain record for {job.domain_name} not found")

        cost = to_money(job.payload['cost'])
        entry = self.ledger.debit_entry(
            job.owner_id, cost, f"Domain transfer: {job.domain_name}", related_job_id=job.id
        )

        transfer_id = job.progress.get('transfer_id')
        if not transfer_id:
            return await self._initiate(job, domain)
        return await self._poll(job, domain, transfer_id, entry)

    async def _initiate(self, job: Job, domain) -> StepResult:
        if domain.status == DomainStatus.ACTIVE:
            raise ValidationError(f"Domain {job.domain_name} is already active in this account")

        transfer_id = await self.call_registrar(
            'transfer', lambda: self.registrar.initiate_transfer(job.domain_name, job.payload['auth_code'])
        )

        domain.status = DomainStatus.TRANSFER_PENDING
        domain.transfer_state = TransferState.AWAITING_CONFIRMATION
        domain.transfer_id = transfer_id
        domain.updated_at = self.ctx.clock()
        logger.info(f"🔀 Transfer {transfer_id} for {job.domain_name} awaiting confirmation")
        return StepResult(
            domain=domain,
            progress={'transfer_id': transfer_id, 'polls': 0},
            reschedule_in=self.config.transfer_poll_seconds,
        )

    async def _poll(self, job: Job, domain, transfer_id: str, entry: WalletEntry) -> StepResult:
        polls = job.progress.get('polls', 0) + 1
        status = await self.call_registrar(
            'transfer status', lambda: self.registrar.get_transfer_status(job.domain_name, transfer_id)
        )
        now = self.ctx.clock()

        if status == TRANSFER_CONFIRMED:
            domain.status = DomainStatus.ACTIVE
            domain.transfer_state = TransferState.CONFIRMED
            domain.registrar_order_id = transfer_id
            domain.updated_at = now
            message = create_success_message(
                "Domain transferred",
                f"Domain: {format_inline_code(job.domain_name)}\n"
                f"Charged: {format_money(entry.amount, self.ledger.currency)}",
            )
            logger.info(f"✅ Transfer {transfer_id} for {job.domain_name} confirmed after {polls} check(s)")
            return StepResult(domain=domain, wallet_entry=entry, progress={'polls': polls},
                              result={'transfer_id': transfer_id}, message=message)

        if status == TRANSFER_REJECTED:
            failure = TerminalRegistrarError(f"Transfer of {job.domain_name} was rejected",
                                             code='transfer_rejected')
        elif polls >= self.config.transfer_max_polls:
            failure = TerminalRegistrarError(
                f"Transfer of {job.domain_name} not confirmed after {polls} checks", code='transfer_timeout'
            )
        else:
            logger.info(f"⏳ Transfer {transfer_id} for {job.domain_name} still pending ({polls} check(s))")
            return StepResult(progress={'polls': polls}, reschedule_in=self.config.transfer_poll_seconds)

        domain.status = DomainStatus.PENDING
        domain.transfer_state = TransferState.REJECTED
        domain.updated_at = now
        return StepResult(domain=domain, progress={'polls': polls}, failure=failure)

    async def cancelled_domain(self, job: Job, step: Optional[StepResult]) -> Optional[Domain]:
        """A cancelled transfer is never polled again, so release the domain from TransferPending"""
        if step is not None and step.reschedule_in is None and step.failure is None:
            return await super().cancelled_domain(job, step)

        progress = dict(job.progress)
        if step is not None:
            progress.update(step.progress)
        if not progress.get('transfer_id'):
            return step.domain if step is not None else None

        domain = step.domain if step is not None else None
        if domain is None:
            domain = await self.store.get_domain(job.domain_name)
        if domain is not None and domain.abandon_transfer(self.ctx.clock()):
            logger.info(f"↩️ Transfer {progress['transfer_id']} for {job.domain_name} abandoned on cancel")
        return domain
