"""
Domain renewal tests
Covers the renewal worker, replay protection and the auto-renew scheduler
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from errors import DuplicateJobError, TerminalRegistrarError, ValidationError
from models import DomainStatus, JobState, JobType, TransactionType


def renew_payload(domain, **overrides):
    payload = {
        'domain_name': domain.domain_name,
        'owner_id': domain.owner_id,
        'term_years': 1,
        'cost': '800.00',
    }
    payload.update(overrides)
    return payload


class TestRenewalWorker:

    async def test_renewal_extends_expiry_and_debits(self, fund, domain_factory, pool, producer, ledger, store,
                                                     mock_registrar):
        domain = await store.save_domain(domain_factory())
        await fund(domain.owner_id, '2000.00')
        await producer.enqueue(JobType.RENEW, renew_payload(domain))

        result = await pool.process_next(JobType.RENEW)

        assert result.state == JobState.COMPLETED
        assert result.result['noop'] is False
        mock_registrar.renew.assert_awaited_once_with(domain.domain_name, 1)
        renewed = await store.get_domain(domain.domain_name)
        assert renewed.expires_at == domain.expires_at + timedelta(days=365)
        assert renewed.registrar_order_id == 'renew-2001'
        assert await ledger.balance(domain.owner_id) == Decimal('1200.00')

    async def test_expired_domain_renews_from_today(self, fund, domain_factory, pool, producer, store, clock):
        domain = await store.save_domain(domain_factory(
            status=DomainStatus.EXPIRED, expires_at=clock.now - timedelta(days=5)))
        await fund(domain.owner_id, '2000.00')
        await producer.enqueue(JobType.RENEW, renew_payload(domain))

        result = await pool.process_next(JobType.RENEW)

        assert result.state == JobState.COMPLETED
        renewed = await store.get_domain(domain.domain_name)
        assert renewed.status == DomainStatus.ACTIVE
        assert renewed.expires_at == clock.now + timedelta(days=365)

    async def test_replayed_renewal_is_noop(self, fund, domain_factory, pool, producer, ledger, store):
        """Same registrar order returned twice must not extend or charge twice"""
        domain = await store.save_domain(domain_factory())
        await fund(domain.owner_id, '2000.00')

        await producer.enqueue(JobType.RENEW, renew_payload(domain, billing_cycle_id='cycle-1'))
        await pool.process_next(JobType.RENEW)
        after_first = await store.get_domain(domain.domain_name)

        replay_id = await producer.enqueue(JobType.RENEW, renew_payload(domain, billing_cycle_id='cycle-1'))
        result = await pool.process_next(JobType.RENEW)

        assert result.state == JobState.COMPLETED
        assert result.result['noop'] is True
        after_replay = await store.get_domain(domain.domain_name)
        assert after_replay.expires_at == after_first.expires_at
        assert await ledger.balance(domain.owner_id) == Decimal('1200.00')
        debits = [t for t in await ledger.transactions(domain.owner_id)
                  if t.transaction_type == TransactionType.DEBIT]
        assert len(debits) == 1
        notices = await store.list_jobs(job_type=JobType.NOTIFY, parent_job_id=replay_id)
        assert [n.payload['event'] for n in notices] == ['completed']
        assert 'Domain already renewed' in notices[0].payload['message']
        assert 'No charge' in notices[0].payload['message']

    async def test_renewal_of_known_order_notifies_without_charge(self, fund, domain_factory, pool, producer,
                                                                  ledger, store):
        domain = await store.save_domain(domain_factory(registrar_order_id='renew-2001'))
        await fund(domain.owner_id, '2000.00')
        job_id = await producer.enqueue(JobType.RENEW, renew_payload(domain))

        result = await pool.process_next(JobType.RENEW)

        assert result.state == JobState.COMPLETED
        assert result.result['noop'] is True
        assert await ledger.balance(domain.owner_id) == Decimal('2000.00')
        notices = await store.list_jobs(job_type=JobType.NOTIFY, parent_job_id=job_id)
        assert len(notices) == 1
        assert domain.expires_at.strftime('%Y-%m-%d') in notices[0].payload['message']

    async def test_cost_above_wallet_maximum_never_reaches_registrar(self, fund, domain_factory, pool, producer,
                                                                     store, mock_registrar):
        domain = await store.save_domain(domain_factory())
        await fund(domain.owner_id, '2000.00')
        producer.max_amount = Decimal('5000000.00')
        await producer.enqueue(JobType.RENEW, renew_payload(domain, cost='2000000.00'))

        result = await pool.process_next(JobType.RENEW)

        assert result.state == JobState.FAILED
        mock_registrar.renew.assert_not_awaited()
        assert (await store.get_domain(domain.domain_name)).expires_at == domain.expires_at

    async def test_renewal_insufficient_funds_flags_refund(self, fund, domain_factory, pool, producer, ledger,
                                                           store):
        domain = await store.save_domain(domain_factory())
        await fund(domain.owner_id, '100.00')
        await producer.enqueue(JobType.RENEW, renew_payload(domain))

        result = await pool.process_next(JobType.RENEW)

        assert result.state == JobState.FAILED
        flagged = await store.get_domain(domain.domain_name)
        assert flagged.compensation_required is True
        assert flagged.expires_at == domain.expires_at
        assert await ledger.balance(domain.owner_id) == Decimal('100.00')

    async def test_renewal_rejected_by_registrar(self, fund, domain_factory, pool, producer, store,
                                                 mock_registrar):
        domain = await store.save_domain(domain_factory())
        await fund(domain.owner_id, '2000.00')
        mock_registrar.renew.side_effect = TerminalRegistrarError('Domain locked', code='DOMAIN_LOCKED')
        await producer.enqueue(JobType.RENEW, renew_payload(domain))

        result = await pool.process_next(JobType.RENEW)

        assert result.state == JobState.FAILED
        assert (await store.get_domain(domain.domain_name)).expires_at == domain.expires_at

    async def test_renewal_requires_known_domain(self, producer):
        with pytest.raises(ValidationError):
            await producer.enqueue(JobType.RENEW, {
                'domain_name': 'unknown.com', 'owner_id': '1001', 'cost': '800.00'})

    async def test_renewal_requires_owner(self, domain_factory, producer, store):
        domain = await store.save_domain(domain_factory())
        with pytest.raises(ValidationError):
            await producer.enqueue(JobType.RENEW, renew_payload(domain, owner_id='someone-else'))


class TestRenewalScheduler:

    async def test_scan_enqueues_due_domains_once(self, domain_factory, pool, store, clock):
        due = await store.save_domain(domain_factory(expires_at=clock.now + timedelta(days=10)))
        await store.save_domain(domain_factory(expires_at=clock.now + timedelta(days=100)))
        await store.save_domain(domain_factory(expires_at=clock.now + timedelta(days=5), auto_renew=False))

        assert await pool.scheduler.scan() == 1
        assert await pool.scheduler.scan() == 0

        jobs = await store.list_jobs(job_type=JobType.RENEW)
        assert len(jobs) == 1
        assert jobs[0].domain_name == due.domain_name
        assert jobs[0].payload['cost'] == '800.00'
        assert jobs[0].payload['billing_cycle_id'] == due.expires_at.date().isoformat()

    async def test_scan_skips_domains_without_price(self, domain_factory, pool, store):
        await store.save_domain(domain_factory(renewal_price=None))
        assert await pool.scheduler.scan() == 0

    async def test_scan_skips_cycle_that_already_failed(self, fund, domain_factory, pool, store, mock_registrar):
        domain = await store.save_domain(domain_factory())
        await fund(domain.owner_id, '2000.00')
        mock_registrar.renew.side_effect = TerminalRegistrarError('Registry refused renewal')

        assert await pool.scheduler.scan() == 1
        result = await pool.process_next(JobType.RENEW)
        assert result.state == JobState.FAILED

        assert await pool.scheduler.scan() == 0

    async def test_manual_renewal_duplicate_of_scheduled_cycle(self, domain_factory, pool, producer, store):
        domain = await store.save_domain(domain_factory())
        await pool.scheduler.scan()

        with pytest.raises(DuplicateJobError):
            await producer.enqueue(JobType.RENEW, renew_payload(domain))
