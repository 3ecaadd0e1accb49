"""
Registration worker
Buys the domain at the registrar, activates it and debits the wallet in one commit
"""

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from admin_alerts import AlertCategory
from errors import PipelineError, TerminalRegistrarError, ValidationError
from message_utils import create_success_message, format_inline_code
from models import Domain, DomainStatus, Job, JobType
from pricing_utils import format_money, to_money
from services.base_worker import BaseWorker, StepResult

logger = logging.getLogger(__name__)

DAYS_PER_YEAR = 365


class RegistrationWorker(BaseWorker):
    job_type = JobType.REGISTER
    alert_category = AlertCategory.DOMAIN_REGISTRATION

    async def execute(self, job: Job) -> StepResult:
        domain = await self.store.get_domain(job.domain_name)
        if domain is None:
            raise ValidationError(f"Domain record for {job.domain_name} not found")
        if domain.status == DomainStatus.ACTIVE:
            raise ValidationError(f"Domain {job.domain_name} is already registered")

        term = job.payload.get('term_years', 1)
        cost = to_money(job.payload['cost'])
        contact = job.payload.get('contact')
        entry = self.ledger.debit_entry(
            job.owner_id, cost, f"Domain registration: {job.domain_name} ({term}y)", related_job_id=job.id
        )

        async def purchase() -> str:
            availability = await self.registrar.check_availability(job.domain_name)
            if not availability.get('available'):
                raise TerminalRegistrarError(f"Domain {job.domain_name} is not available for registration",
                                             code='unavailable')
            return await self.registrar.register(job.domain_name, term, contact)

        order_id = await self.call_registrar('registration', purchase)

        now = self.ctx.clock()
        domain.status = DomainStatus.ACTIVE
        domain.registered_at = now
        domain.expires_at = now + timedelta(days=DAYS_PER_YEAR * term)
        domain.registrar_order_id = order_id
        domain.term_years = term
        domain.renewal_price = cost
        domain.updated_at = now

        message = create_success_message(
            "Domain registered",
            f"Domain: {format_inline_code(job.domain_name)}\n"
            f"Expires: {domain.expires_at.strftime('%Y-%m-%d')}\n"
            f"Charged: {format_money(cost, self.ledger.currency)}",
        )
        return StepResult(
            domain=domain,
            wallet_entry=entry,
            result={'order_id': order_id, 'expires_at': domain.expires_at.isoformat()},
            progress={'order_id': order_id},
            message=message,
        )

    async def compensate(self, job: Job, step: StepResult, reason: str) -> Optional[Domain]:
        """Cancel the registrar order; fall back to the refund flag when that fails"""
        order_id = (step.result or {}).get('order_id')
        if not order_id:
            return None
        try:
            await asyncio.wait_for(self.registrar.cancel_order(job.domain_name, order_id),
                                   timeout=self.config.registrar_timeout_seconds)
        except (PipelineError, asyncio.TimeoutError) as e:
            logger.error(f"❌ Could not cancel registrar order {order_id} for {job.domain_name}: {e}")
            return await super().compensate(job, step, f"{reason}; order cancellation failed: {e}")

        logger.info(f"↩️ Registrar order {order_id} for {job.domain_name} cancelled ({reason})")
        return None
