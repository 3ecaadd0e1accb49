"""
DNS update worker
Applies a record-set diff at the registrar and stores the merged zone
"""

import logging
from typing import Optional

from admin_alerts import AlertCategory
from errors import ValidationError
from message_utils import create_success_message, format_inline_code
from models import Domain, DomainStatus, Job, JobType, apply_record_diff
from services.base_worker import BaseWorker, StepResult

logger = logging.getLogger(__name__)


class DnsUpdateWorker(BaseWorker):
    job_type = JobType.UPDATE_DNS
    alert_category = AlertCategory.DNS

    async def execute(self, job: Job) -> StepResult:
        domain = await self.store.get_domain(job.domain_name)
        if domain is None:
            raise ValidationError(f"Domain {job.domain_name} not found")
        if domain.status != DomainStatus.ACTIVE:
            raise ValidationError(f"DNS for {job.domain_name} cannot be changed while {domain.status.value}")

        diff = job.payload['records']
        merged = apply_record_diff(domain.dns_records, diff)

        # A zone the registrar does not manage surfaces as TerminalRegistrarError(code='zone_unmanaged')
        await self.call_registrar('DNS update', lambda: self.registrar.update_dns(job.domain_name, merged))

        domain.dns_records = merged
        domain.updated_at = self.ctx.clock()
        message = create_success_message(
            "DNS updated",
            f"Domain: {format_inline_code(job.domain_name)}\n"
            f"Added: {len(diff.get('add', []))}, removed: {len(diff.get('remove', []))}",
        )
        return StepResult(domain=domain, result={'record_count': len(merged)}, message=message)

    async def compensate(self, job: Job, step: StepResult, reason: str) -> Optional[Domain]:
        # Nothing was charged; the next DNS update re-sends the stored record set
        logger.warning(f"⚠️ DNS update for {job.domain_name} applied at registrar but not stored ({reason})")
        return None
