"""
Shared test fixtures and configuration for the DomainBay lifecycle pipeline test suite
Provides an in-memory store, a controllable clock, and mocked registrar/Telegram dependencies
"""

import os
import random
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import factory
from factory.declarations import LazyFunction, Sequence

# Test environment configuration
test_env_vars = {
    'STORE_BACKEND': 'memory',
    'TELEGRAM_BOT_TOKEN': 'test_token',
    'ADMIN_USER_ID': '999',
    'ADDITIONAL_ADMIN_USER_IDS': '',
    'ADMIN_ALERTS_ENABLED': 'true',
    'ALERT_MIN_SEVERITY': 'WARNING',
    'WALLET_CURRENCY': 'INR',
}
for key, value in test_env_vars.items():
    os.environ[key] = value

from admin_alerts import AdminAlertSystem  # noqa: E402
from config import AdminAlertConfig, PipelineConfig  # noqa: E402
from models import Domain, DomainStatus, new_id  # noqa: E402
from services.notifier import TelegramNotifier  # noqa: E402
from services.registrar_client import RegistrarClient, TRANSFER_PENDING  # noqa: E402
from services.worker_pool import WorkerPool  # noqa: E402
from storage.memory import MemoryStore  # noqa: E402

# Configure test logging
logging.basicConfig(level=logging.DEBUG)
logger = logging.getLogger(__name__)

START_TIME = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock shared by the pool, producer and rate limiter"""

    def __init__(self, start: datetime = START_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


# Test data factories
class RegisterPayloadFactory(factory.Factory):  # type: ignore[misc]
    """Factory for Register job payloads"""
    class Meta:  # type: ignore[misc]
        model = dict

    domain_name = Sequence(lambda n: f"example{n}.com")
    owner_id = Sequence(lambda n: str(100000 + n))
    term_years = 1
    cost = '800.00'


class DomainFactory(factory.Factory):  # type: ignore[misc]
    """Factory for registered domain records"""
    class Meta:  # type: ignore[misc]
        model = Domain

    id = LazyFunction(new_id)
    domain_name = Sequence(lambda n: f"owned{n}.com")
    owner_id = Sequence(lambda n: str(200000 + n))
    status = DomainStatus.ACTIVE
    registered_at = START_TIME - timedelta(days=355)
    expires_at = START_TIME + timedelta(days=10)
    registrar_order_id = Sequence(lambda n: f"order-{5000 + n}")
    term_years = 1
    renewal_price = Decimal('800.00')
    auto_renew = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    """Pipeline config with fast, deterministic timings"""
    cfg = PipelineConfig()
    cfg.max_attempts = 5
    cfg.backoff_base_seconds = 2.0
    cfg.backoff_jitter_seconds = 0.0
    cfg.backoff_max_seconds = 3600.0
    cfg.registrar_timeout_seconds = 1.0
    cfg.transfer_poll_seconds = 60.0
    cfg.transfer_max_polls = 5
    cfg.worker_concurrency = 1
    cfg.queue_poll_interval = 0.01
    cfg.renewal_scan_interval = 3600.0
    cfg.shutdown_grace_seconds = 0.5
    return cfg


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def mock_registrar():
    """Mock registrar client with successful default responses"""
    registrar = AsyncMock(spec=RegistrarClient)
    registrar.check_availability.return_value = {'domain': 'example.com', 'available': True}
    registrar.register.return_value = 'order-1001'
    registrar.renew.return_value = 'renew-2001'
    registrar.update_dns.return_value = None
    registrar.initiate_transfer.return_value = 'xfer-3001'
    registrar.get_transfer_status.return_value = TRANSFER_PENDING
    registrar.cancel_order.return_value = None
    return registrar


@pytest.fixture
def mock_bot():
    """Mock Telegram bot for testing"""
    bot = AsyncMock()
    bot.send_message = AsyncMock()
    return bot


@pytest.fixture
def admin_bot():
    """Separate mock bot for admin alerts so owner notifications stay isolated"""
    bot = AsyncMock()
    bot.send_message = AsyncMock()
    return bot


@pytest.fixture
def alerts(admin_bot):
    return AdminAlertSystem(AdminAlertConfig(), bot=admin_bot)


@pytest.fixture
def notifier(mock_bot):
    return TelegramNotifier(mock_bot)


@pytest.fixture
def pool(store, mock_registrar, config, notifier, alerts, clock):
    return WorkerPool(store, mock_registrar, config, notifier=notifier, alerts=alerts,
                      clock=clock, rng=random.Random(42), worker_id='test')


@pytest.fixture
def producer(pool):
    return pool.producer


@pytest.fixture
def ledger(pool):
    return pool.ledger


async def fund_wallet(ledger, owner_id: str, amount: str) -> None:
    """Open the owner's wallet and top it up"""
    await ledger.open_account(owner_id)
    result = await ledger.credit(owner_id, amount, 'Test top-up', related_payment_id=f"seed-{new_id()}")
    assert result.ok


@pytest.fixture
def fund(ledger):
    async def _fund(owner_id: str, amount: str) -> None:
        await fund_wallet(ledger, owner_id, amount)
    return _fund


@pytest.fixture
def register_payload():
    """Register payload factory"""
    return RegisterPayloadFactory


@pytest.fixture
def domain_factory():
    """Registered domain factory"""
    return DomainFactory
