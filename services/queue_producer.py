"""
Queue producer for domain lifecycle jobs
Validates business events and turns them into deduplicated jobs
"""

import hashlib
import json
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from config import PipelineConfig
from domain_validation import normalize_domain_name
from errors import DuplicateJobError, ValidationError
from models import DNS_RECORD_TYPES, Domain, DomainStatus, Job, JobType, new_id, utcnow
from pricing_utils import to_money
from services.wallet_ledger import DEFAULT_MAX_AMOUNT
from storage.base import Store

logger = logging.getLogger(__name__)

MAX_TERM_YEARS = 10


def job_fingerprint(job_type: JobType, domain_name: str, cycle_id: str) -> str:
    """Deduplication key: md5 of (job type, domain, billing cycle)"""
    return hashlib.md5(f"{job_type.value}:{domain_name}:{cycle_id}".encode()).hexdigest()


def _digest(value: Any) -> str:
    return hashlib.md5(json.dumps(value, sort_keys=True, default=str).encode()).hexdigest()[:16]


def make_notify_job(parent: Job, event: str, message: str, now: datetime,
                    max_attempts: int) -> Job:
    """Build the Notify follow-up for a job that reached a terminal state"""
    payload = {
        'domain_name': parent.domain_name,
        'owner_id': parent.owner_id,
        'event': event,
        'message': message,
        'parent_job_type': parent.job_type.value,
    }
    return Job(
        id=new_id(),
        job_type=JobType.NOTIFY,
        payload=payload,
        fingerprint=job_fingerprint(JobType.NOTIFY, parent.domain_name, f"{parent.id}:{event}"),
        max_attempts=max_attempts,
        next_run_at=now,
        created_at=now,
        updated_at=now,
        parent_job_id=parent.id,
    )


def _validate_term(payload: Dict[str, Any]) -> int:
    term = payload.get('term_years', 1)
    if isinstance(term, bool) or not isinstance(term, int):
        raise ValidationError(f"term_years must be an integer, got {term!r}")
    if not 1 <= term <= MAX_TERM_YEARS:
        raise ValidationError(f"term_years must be between 1 and {MAX_TERM_YEARS}, got {term}")
    return term


def _validate_cost(payload: Dict[str, Any], max_amount: Decimal) -> Decimal:
    if 'cost' not in payload:
        raise ValidationError("cost is required")
    cost = to_money(payload['cost'])
    if cost <= 0:
        raise ValidationError(f"cost must be positive, got {cost}")
    if cost > max_amount:
        raise ValidationError(f"cost {cost} exceeds the wallet maximum of {max_amount}")
    return cost


def _validate_records(records: Any) -> Dict[str, List[Dict[str, Any]]]:
    if not isinstance(records, dict):
        raise ValidationError("records must be an object with 'add' and/or 'remove' lists")
    diff: Dict[str, List[Dict[str, Any]]] = {'add': [], 'remove': []}
    for section in ('add', 'remove'):
        entries = records.get(section, [])
        if not isinstance(entries, list):
            raise ValidationError(f"records.{section} must be a list")
        for record in entries:
            if not isinstance(record, dict):
                raise ValidationError(f"Invalid DNS record in records.{section}: {record!r}")
            record_type = str(record.get('type', '')).upper()
            if record_type not in DNS_RECORD_TYPES:
                raise ValidationError(f"Unsupported DNS record type: {record.get('type')!r}")
            name = record.get('name')
            value = record.get('value')
            if not name or not isinstance(name, str) or not value or not isinstance(value, str):
                raise ValidationError(f"DNS record requires 'name' and 'value': {record!r}")
            clean = {'type': record_type, 'name': name, 'value': value}
            if 'ttl' in record:
                ttl = record['ttl']
                if isinstance(ttl, bool) or not isinstance(ttl, int) or ttl < 60:
                    raise ValidationError(f"DNS record ttl must be an integer >= 60: {ttl!r}")
                clean['ttl'] = ttl
            if 'priority' in record:
                clean['priority'] = int(record['priority'])
            diff[section].append(clean)
    if not diff['add'] and not diff['remove']:
        raise ValidationError("records diff is empty")
    return diff


class QueueProducer:
    """Enqueues lifecycle jobs when business events occur"""

    def __init__(self, store: Store, config: PipelineConfig,
                 clock: Callable[[], datetime] = utcnow, max_amount: Decimal = DEFAULT_MAX_AMOUNT):
        self.store = store
        self.config = config
        self.clock = clock
        self.max_amount = max_amount

    async def enqueue(self, job_type: JobType, payload: Dict[str, Any], delay_seconds: float = 0,
                      max_attempts: Optional[int] = None) -> str:
        """
        Validate a business event and enqueue the matching job

        Returns:
            The new job id

        Raises:
            ValidationError: missing domain/owner, bad parameters or wrong owner
            DuplicateJobError: a job with the same fingerprint is in flight
        """
        if not isinstance(payload, dict):
            raise ValidationError("payload must be an object")
        try:
            job_type = JobType(job_type)
        except ValueError:
            raise ValidationError(f"Unknown job type: {job_type!r}")
        now = self.clock()

        if not payload.get('domain_name'):
            raise ValidationError("payload.domain_name is required")
        owner_id = payload.get('owner_id')
        if owner_id is None or str(owner_id).strip() == '':
            raise ValidationError("payload.owner_id is required")

        clean: Dict[str, Any] = {
            'domain_name': normalize_domain_name(payload['domain_name']),
            'owner_id': str(owner_id).strip(),
        }
        domain_name = clean['domain_name']
        existing = await self.store.get_domain(domain_name)
        new_domain: Optional[Domain] = None

        if job_type in (JobType.REGISTER, JobType.TRANSFER):
            if existing is not None and existing.owner_id != clean['owner_id']:
                raise ValidationError(f"Domain {domain_name} belongs to another owner")
            if existing is not None and job_type == JobType.REGISTER and existing.status == DomainStatus.ACTIVE:
                raise ValidationError(f"Domain {domain_name} is already registered")
            if existing is None:
                new_domain = Domain(id=new_id(), domain_name=domain_name, owner_id=clean['owner_id'],
                                    status=DomainStatus.PENDING, created_at=now, updated_at=now)
        elif job_type in (JobType.RENEW, JobType.UPDATE_DNS):
            if existing is None:
                raise ValidationError(f"Domain {domain_name} not found")
            if existing.owner_id != clean['owner_id']:
                raise ValidationError(f"Domain {domain_name} belongs to another owner")

        cycle_id = self._validate_type_params(job_type, payload, clean, existing, now)
        if new_domain is not None and 'term_years' in clean:
            new_domain.term_years = clean['term_years']

        job = Job(
            id=new_id(),
            job_type=job_type,
            payload=clean,
            fingerprint=job_fingerprint(job_type, domain_name, cycle_id),
            max_attempts=max_attempts or self.config.max_attempts,
            next_run_at=now + timedelta(seconds=delay_seconds),
            created_at=now,
            updated_at=now,
            parent_job_id=payload.get('parent_job_id'),
        )

        try:
            await self.store.insert_job(job, domain=new_domain)
        except DuplicateJobError as e:
            logger.info(f"🔁 Duplicate {job_type.value} job for {domain_name} rejected "
                        f"(existing job: {e.existing_job_id})")
            raise

        logger.info(f"📥 Enqueued {job_type.value} job {job.id} for {domain_name} (owner {clean['owner_id']})")
        return job.id

    def _validate_type_params(self, job_type: JobType, payload: Dict[str, Any], clean: Dict[str, Any],
                              existing: Optional[Domain], now: datetime) -> str:
        """Copy validated per-type parameters into `clean` and return the billing cycle id"""
        cycle_id = payload.get('billing_cycle_id')

        if job_type == JobType.REGISTER:
            clean['term_years'] = _validate_term(payload)
            clean['cost'] = str(_validate_cost(payload, self.max_amount))
            contact = payload.get('contact')
            if contact is not None:
                if not isinstance(contact, dict):
                    raise ValidationError("contact must be an object")
                clean['contact'] = contact
            return cycle_id or 'registration'

        if job_type == JobType.RENEW:
            clean['term_years'] = _validate_term(payload)
            clean['cost'] = str(_validate_cost(payload, self.max_amount))
            if not cycle_id:
                if existing is not None and existing.expires_at is not None:
                    cycle_id = existing.expires_at.date().isoformat()
                else:
                    cycle_id = now.date().isoformat()
            clean['billing_cycle_id'] = str(cycle_id)
            return clean['billing_cycle_id']

        if job_type == JobType.UPDATE_DNS:
            clean['records'] = _validate_records(payload.get('records'))
            return cycle_id or _digest(clean['records'])

        if job_type == JobType.TRANSFER:
            auth_code = payload.get('auth_code')
            if not auth_code or not isinstance(auth_code, str):
                raise ValidationError("auth_code is required for transfers")
            clean['auth_code'] = auth_code
            clean['cost'] = str(_validate_cost(payload, self.max_amount))
            return cycle_id or _digest(auth_code)

        # NOTIFY
        event = payload.get('event')
        if not event or not isinstance(event, str):
            raise ValidationError("event is required for notifications")
        clean['event'] = event
        clean['message'] = str(payload.get('message', ''))
        parent = payload.get('parent_job_id')
        return cycle_id or f"{parent or _digest(clean['message'])}:{event}"

    async def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Status view for polling: {job_id, state, attempts, error?, ...} or None"""
        job = await self.store.get_job(job_id)
        if job is None:
            return None
        return job.status()

    async def cancel(self, job_id: str) -> Dict[str, Any]:
        """
        Cancel a job

        Waiting jobs become Cancelled at once, Active jobs are flagged and
        stop at their next cancellation check.
        """
        job = await self.store.request_cancel(job_id, self.clock())
        if job.cancel_requested:
            logger.info(f"🛑 Cancellation requested for active job {job_id}")
        else:
            logger.info(f"🛑 Job {job_id} cancelled before execution")
        return job.status()
