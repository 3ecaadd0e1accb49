"""
Notification worker
Delivers owner notifications; never creates further notifications
"""

import asyncio
import logging

from admin_alerts import AlertCategory
from errors import NotificationDeliveryError
from models import Job, JobType
from services.base_worker import BaseWorker, StepResult

logger = logging.getLogger(__name__)


class NotificationWorker(BaseWorker):
    job_type = JobType.NOTIFY
    alert_category = AlertCategory.NOTIFICATION

    async def execute(self, job: Job) -> StepResult:
        notifier = self.ctx.notifier
        if notifier is None or not self.config.notifications_enabled:
            logger.info(f"📭 Notifications disabled - dropping {job.payload.get('event')} for {job.owner_id}")
            return StepResult(result={'delivered': False})

        timeout = self.config.registrar_timeout_seconds
        try:
            await asyncio.wait_for(notifier.send(job.owner_id, job.payload.get('message', '')), timeout=timeout)
        except asyncio.TimeoutError:
            raise NotificationDeliveryError(f"Notification delivery timed out after {timeout}s")
        return StepResult(result={'delivered': True, 'event': job.payload.get('event')})
