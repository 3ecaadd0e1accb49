"""
Renewal scheduler
Enqueues Renew jobs for auto-renew domains approaching expiry
"""

import logging
from datetime import datetime, timedelta
from typing import Callable

from errors import DuplicateJobError, ValidationError
from models import JobState, JobType, utcnow
from services.queue_producer import QueueProducer
from storage.base import Store

logger = logging.getLogger(__name__)


class RenewalScheduler:

    def __init__(self, store: Store, producer: QueueProducer, lead_days: int,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.producer = producer
        self.lead_days = lead_days
        self.clock = clock

    async def scan(self) -> int:
        """Enqueue one Renew job per due domain and billing cycle; returns how many were enqueued"""
        horizon = self.clock() + timedelta(days=self.lead_days)
        domains = await self.store.list_domains_expiring(horizon)
        failed_cycles = {
            (job.domain_name, job.payload.get('billing_cycle_id'))
            for job in await self.store.list_jobs(state=JobState.FAILED, job_type=JobType.RENEW)
        }
        enqueued = 0

        for domain in domains:
            cycle_id = domain.expires_at.date().isoformat()
            if (domain.domain_name, cycle_id) in failed_cycles:
                # Owner was already told; a manual renewal starts a new attempt
                continue
            if domain.renewal_price is None:
                logger.warning(f"⚠️ No renewal price for {domain.domain_name} - skipping auto-renewal")
                continue
            payload = {
                'domain_name': domain.domain_name,
                'owner_id': domain.owner_id,
                'term_years': domain.term_years,
                'cost': str(domain.renewal_price),
                'billing_cycle_id': cycle_id,
            }
            try:
                await self.producer.enqueue(JobType.RENEW, payload)
                enqueued += 1
            except DuplicateJobError:
                continue
            except ValidationError as e:
                logger.warning(f"⚠️ Auto-renewal for {domain.domain_name} rejected: {e}")

        if enqueued:
            logger.info(f"🔄 Renewal scan: {enqueued} job(s) enqueued of {len(domains)} due domain(s)")
        return enqueued
