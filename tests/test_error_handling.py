"""
Retry, throttling, timeout and cancellation behaviour of lifecycle workers
"""

import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from admin_alerts import AlertSeverity
from errors import JobStateError, RateLimitExceeded, RetryableRegistrarError
from models import DomainStatus, JobState, JobType


class TestRetryPolicy:
    """Transient failures retry with backoff until max_attempts"""

    async def test_rate_limited_job_completes_on_fourth_attempt(self, fund, register_payload, pool, producer,
                                                                 ledger, store, mock_registrar, clock):
        await fund('1001', '1000.00')
        job_id = await producer.enqueue(JobType.REGISTER, register_payload(
            domain_name='example.com', owner_id='1001'))
        throttle = AsyncMock(side_effect=[RateLimitExceeded('rl:registrar:outbound', 5.0)] * 3 + [None])

        with patch.object(pool.rate_limiter, 'enforce_scope', throttle):
            for attempt in range(1, 4):
                result = await pool.process_next(JobType.REGISTER)
                assert result.state == JobState.DELAYED_RETRY
                assert result.attempts == attempt
                clock.advance(3600)
            result = await pool.process_next(JobType.REGISTER)

        assert result.state == JobState.COMPLETED
        assert result.attempts == 4
        mock_registrar.register.assert_awaited_once()
        assert await ledger.balance('1001') == Decimal('200.00')

        notices = await store.list_jobs(job_type=JobType.NOTIFY, parent_job_id=job_id)
        assert [n.payload['event'] for n in notices] == ['completed']

    async def test_retry_after_extends_backoff(self, fund, register_payload, pool, producer, store, clock):
        await fund('1001', '1000.00')
        job_id = await producer.enqueue(JobType.REGISTER, register_payload(owner_id='1001'))
        throttle = AsyncMock(side_effect=RateLimitExceeded('rl:registrar:outbound', 5.0))

        with patch.object(pool.rate_limiter, 'enforce_scope', throttle):
            await pool.process_next(JobType.REGISTER)

        job = await store.get_job(job_id)
        # backoff for attempt 1 is 2 * 2^1 = 4s, the window reset is later
        assert job.next_run_at - clock.now == timedelta(seconds=5)

    async def test_exponential_backoff_schedule(self, fund, register_payload, pool, producer, store,
                                                mock_registrar, clock):
        await fund('1001', '1000.00')
        mock_registrar.register.side_effect = RetryableRegistrarError('Bad gateway', code='server_error')
        job_id = await producer.enqueue(JobType.REGISTER, register_payload(owner_id='1001'))

        delays = []
        for _ in range(3):
            await pool.process_next(JobType.REGISTER)
            job = await store.get_job(job_id)
            delays.append((job.next_run_at - clock.now).total_seconds())
            clock.advance(3600)

        assert delays == [4.0, 8.0, 16.0]

    async def test_job_fails_after_max_attempts(self, fund, register_payload, pool, producer, store,
                                                mock_registrar, clock, alerts):
        await fund('1001', '1000.00')
        mock_registrar.register.side_effect = RetryableRegistrarError('Service unavailable', code='server_error')
        job_id = await producer.enqueue(JobType.REGISTER, register_payload(owner_id='1001'))

        results = []
        for _ in range(5):
            results.append(await pool.process_next(JobType.REGISTER))
            clock.advance(3600)

        assert [r.state for r in results[:4]] == [JobState.DELAYED_RETRY] * 4
        assert results[-1].state == JobState.FAILED
        assert results[-1].attempts == 5
        assert mock_registrar.register.await_count == 5
        assert await pool.process_next(JobType.REGISTER) is None

        notices = await store.list_jobs(job_type=JobType.NOTIFY, parent_job_id=job_id)
        assert [n.payload['event'] for n in notices] == ['failed']
        assert any('failed permanently' in a['message'] for a in alerts.history)

    async def test_retry_not_claimed_before_due(self, fund, register_payload, pool, producer, mock_registrar, clock):
        await fund('1001', '1000.00')
        mock_registrar.register.side_effect = [RetryableRegistrarError('timeout', code='timeout'), 'order-1001']
        await producer.enqueue(JobType.REGISTER, register_payload(owner_id='1001'))

        await pool.process_next(JobType.REGISTER)
        assert await pool.process_next(JobType.REGISTER) is None

        clock.advance(4)
        result = await pool.process_next(JobType.REGISTER)
        assert result.state == JobState.COMPLETED
        assert result.attempts == 2

    async def test_unexpected_exception_is_retried_and_alerted(self, fund, register_payload, pool, producer,
                                                               mock_registrar, alerts):
        await fund('1001', '1000.00')
        mock_registrar.register.side_effect = RuntimeError('connection pool exhausted')
        await producer.enqueue(JobType.REGISTER, register_payload(owner_id='1001'))

        result = await pool.process_next(JobType.REGISTER)

        assert result.state == JobState.DELAYED_RETRY
        assert result.attempts == 1
        assert 'connection pool exhausted' in result.error
        assert any(a['severity'] == AlertSeverity.ERROR.value for a in alerts.history)


class TestRegistrarTimeouts:

    async def test_slow_registrar_call_times_out_and_retries(self, fund, register_payload, pool, producer,
                                                             config, mock_registrar):
        config.registrar_timeout_seconds = 0.05

        async def hang(*args, **kwargs):
            await asyncio.sleep(1)

        await fund('1001', '1000.00')
        mock_registrar.register.side_effect = hang
        await producer.enqueue(JobType.REGISTER, register_payload(owner_id='1001'))

        result = await pool.process_next(JobType.REGISTER)

        assert result.state == JobState.DELAYED_RETRY
        assert result.attempts == 1
        assert 'timed out' in result.error


class TestCancellation:

    async def test_cancel_queued_job(self, register_payload, pool, producer, store):
        job_id = await producer.enqueue(JobType.REGISTER, register_payload(owner_id='1001'))

        status = await producer.cancel(job_id)

        assert status['state'] == JobState.CANCELLED.value
        assert status['attempts'] == 0
        assert await pool.process_next(JobType.REGISTER) is None
        assert await store.list_jobs(job_type=JobType.NOTIFY) == []

    async def test_cancel_during_execution_rolls_back_registration(self, fund, register_payload, pool, producer,
                                                                   ledger, store, mock_registrar):
        await fund('1001', '1000.00')
        job_id = await producer.enqueue(JobType.REGISTER, register_payload(
            domain_name='example.com', owner_id='1001'))

        async def register_then_cancel(*args, **kwargs):
            await producer.cancel(job_id)
            return 'order-1001'

        mock_registrar.register.side_effect = register_then_cancel

        result = await pool.process_next(JobType.REGISTER)

        assert result.state == JobState.CANCELLED
        assert result.attempts == 0
        mock_registrar.cancel_order.assert_awaited_once_with('example.com', 'order-1001')
        assert (await store.get_domain('example.com')).status == DomainStatus.PENDING
        assert await ledger.balance('1001') == Decimal('1000.00')
        assert await store.list_jobs(job_type=JobType.NOTIFY) == []

    async def test_cancel_terminal_job_rejected(self, fund, register_payload, pool, producer):
        await fund('1001', '1000.00')
        job_id = await producer.enqueue(JobType.REGISTER, register_payload(owner_id='1001'))
        await pool.process_next(JobType.REGISTER)

        with pytest.raises(JobStateError):
            await producer.cancel(job_id)

    async def test_cancel_unknown_job_rejected(self, producer):
        with pytest.raises(JobStateError):
            await producer.cancel('missing-job')
