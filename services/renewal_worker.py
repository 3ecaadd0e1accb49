"""
Renewal worker
Extends the registration period; replays of the same registrar order are no-ops
"""

import logging
from datetime import timedelta

from admin_alerts import AlertCategory
from errors import ValidationError
from message_utils import create_success_message, format_inline_code
from models import DomainStatus, Job, JobType
from pricing_utils import format_money, to_money
from services.base_worker import BaseWorker, StepResult
from services.registration_worker import DAYS_PER_YEAR

logger = logging.getLogger(__name__)

RENEWABLE_STATUSES = (DomainStatus.ACTIVE, DomainStatus.EXPIRED)


class RenewalWorker(BaseWorker):
    job_type = JobType.RENEW
    alert_category = AlertCategory.DOMAIN_RENEWAL

    async def execute(self, job: Job) -> StepResult:
        domain = await self.store.get_domain(job.domain_name)
        if domain is None:
            raise ValidationError(f"Domain {job.domain_name} not found")
        if domain.status not in RENEWABLE_STATUSES:
            raise ValidationError(f"Domain {job.domain_name} cannot be renewed while {domain.status.value}")

        term = job.payload.get('term_years', 1)
        cost = to_money(job.payload['cost'])
        entry = self.ledger.debit_entry(
            job.owner_id, cost, f"Domain renewal: {job.domain_name} ({term}y)", related_job_id=job.id
        )

        order_id = await self.call_registrar('renewal', lambda: self.registrar.renew(job.domain_name, term))

        if order_id == domain.registrar_order_id:
            logger.info(f"🔁 Renewal order {order_id} for {job.domain_name} already applied - no-op")
            expiry = domain.expires_at.strftime('%Y-%m-%d') if domain.expires_at else 'unknown'
            return StepResult(
                result={
                    'order_id': order_id,
                    'noop': True,
                    'expires_at': domain.expires_at.isoformat() if domain.expires_at else None,
                },
                message=create_success_message(
                    "Domain already renewed",
                    f"Domain: {format_inline_code(job.domain_name)}\n"
                    f"Expires: {expiry}\n"
                    f"No charge was made",
                ),
            )

        now = self.ctx.clock()
        base = max(domain.expires_at, now) if domain.expires_at else now
        domain.expires_at = base + timedelta(days=DAYS_PER_YEAR * term)
        domain.status = DomainStatus.ACTIVE
        domain.registrar_order_id = order_id
        domain.renewal_price = cost
        domain.updated_at = now

        message = create_success_message(
            "Domain renewed",
            f"Domain: {format_inline_code(job.domain_name)}\n"
            f"New expiry: {domain.expires_at.strftime('%Y-%m-%d')}\n"
            f"Charged: {format_money(cost, self.ledger.currency)}",
        )
        return StepResult(
            domain=domain,
            wallet_entry=entry,
            result={'order_id': order_id, 'noop': False, 'expires_at': domain.expires_at.isoformat()},
            message=message,
        )
