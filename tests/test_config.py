"""
Configuration and store selection tests
"""

import pytest

from config import AdminAlertConfig, PipelineConfig
from storage import build_store
from storage.memory import MemoryStore


class TestPipelineConfig:

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv('JOB_MAX_ATTEMPTS', '7')
        monkeypatch.setenv('BACKOFF_BASE_SECONDS', '0.5')
        monkeypatch.setenv('WALLET_CURRENCY', 'usd')
        monkeypatch.setenv('NOTIFICATIONS_ENABLED', 'false')

        config = PipelineConfig()

        assert config.max_attempts == 7
        assert config.backoff_base_seconds == 0.5
        assert config.wallet_currency == 'USD'
        assert config.notifications_enabled is False

    def test_invalid_numbers_fall_back_to_defaults(self, monkeypatch):
        monkeypatch.setenv('JOB_MAX_ATTEMPTS', 'five')
        monkeypatch.setenv('TRANSFER_POLL_SECONDS', 'soon')

        config = PipelineConfig()

        assert config.max_attempts == 5
        assert config.transfer_poll_seconds == 3600.0

    def test_backend_follows_database_url(self, monkeypatch):
        monkeypatch.delenv('STORE_BACKEND', raising=False)
        monkeypatch.setenv('DATABASE_URL', 'postgresql://localhost/domainbay')
        assert PipelineConfig().store_backend == 'postgres'

        monkeypatch.setenv('DATABASE_URL', '')
        assert PipelineConfig().store_backend == 'memory'


class TestAdminAlertConfig:

    def test_admin_ids_parsed(self, monkeypatch):
        monkeypatch.setenv('ADMIN_USER_ID', '111')
        monkeypatch.setenv('ADDITIONAL_ADMIN_USER_IDS', '222, bad, 333')
        assert AdminAlertConfig().admin_user_ids == [111, 222, 333]


class TestBuildStore:

    def test_memory_backend(self, config):
        config.store_backend = 'memory'
        assert isinstance(build_store(config), MemoryStore)

    def test_unknown_backend_rejected(self, config):
        config.store_backend = 'redis'
        with pytest.raises(ValueError):
            build_store(config)
