"""
Pipeline configuration
All tunables come from environment variables with production defaults
"""

import os
import logging
from dataclasses import dataclass
from typing import Dict, List

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    """Limit and window for one rate-limit scope"""
    limit: int
    window_ms: int
    prefix: str


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid integer for {name}: {raw!r} - using default {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == '':
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid number for {name}: {raw!r} - using default {default}")
        return default


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, 'true' if default else 'false').lower() == 'true'


class PipelineConfig:
    """Configuration for the lifecycle job pipeline"""

    def __init__(self):
        # Storage
        self.database_url = os.getenv('DATABASE_URL', '')
        self.store_backend = os.getenv('STORE_BACKEND', 'postgres' if self.database_url else 'memory')

        # Retry policy
        self.max_attempts = _env_int('JOB_MAX_ATTEMPTS', 5)
        self.backoff_base_seconds = _env_float('BACKOFF_BASE_SECONDS', 2.0)
        self.backoff_jitter_seconds = _env_float('BACKOFF_JITTER_SECONDS', 1.0)
        self.backoff_max_seconds = _env_float('BACKOFF_MAX_SECONDS', 3600.0)

        # Registrar
        self.registrar_base_url = os.getenv('REGISTRAR_BASE_URL', 'https://api.ote-godaddy.com')
        self.registrar_api_key = os.getenv('REGISTRAR_API_KEY', '')
        self.registrar_api_secret = os.getenv('REGISTRAR_API_SECRET', '')
        self.registrar_timeout_seconds = _env_float('REGISTRAR_TIMEOUT_SECONDS', 30.0)

        # Renewals and transfers
        self.renewal_lead_days = _env_int('RENEWAL_LEAD_DAYS', 30)
        self.renewal_scan_interval = _env_float('RENEWAL_SCAN_INTERVAL', 3600.0)
        self.transfer_poll_seconds = _env_float('TRANSFER_POLL_SECONDS', 3600.0)
        self.transfer_max_polls = _env_int('TRANSFER_MAX_POLLS', 168)  # one week of hourly polls

        # Worker pool
        self.worker_concurrency = _env_int('WORKER_CONCURRENCY', 2)
        self.queue_poll_interval = _env_float('QUEUE_POLL_INTERVAL', 1.0)
        self.shutdown_grace_seconds = _env_float('SHUTDOWN_GRACE_SECONDS', 30.0)
        self.job_lease_seconds = _env_float('JOB_LEASE_SECONDS', 900.0)

        # Wallet
        self.wallet_currency = os.getenv('WALLET_CURRENCY', 'INR').upper()

        # Notifications
        self.telegram_bot_token = os.getenv('TELEGRAM_BOT_TOKEN', '')
        self.notifications_enabled = _env_bool('NOTIFICATIONS_ENABLED', True)

        self.rate_limits = self._load_rate_limits()

        logger.info(f"✅ Pipeline config: backend={self.store_backend}, max_attempts={self.max_attempts}, "
                    f"concurrency={self.worker_concurrency}, renewal_lead={self.renewal_lead_days}d")

    def _load_rate_limits(self) -> Dict[str, RateLimitPolicy]:
        return {
            'api': RateLimitPolicy(
                limit=_env_int('RATE_LIMIT_MAX_REQUESTS', 100),
                window_ms=_env_int('RATE_LIMIT_WINDOW_MS', 15 * 60 * 1000),
                prefix='rl:api:',
            ),
            'domain_search': RateLimitPolicy(
                limit=_env_int('RATE_LIMIT_DOMAIN_SEARCH', 10),
                window_ms=60 * 1000,
                prefix='rl:search:',
            ),
            'auth': RateLimitPolicy(
                limit=_env_int('RATE_LIMIT_AUTH_MAX', 5),
                window_ms=15 * 60 * 1000,
                prefix='rl:auth:',
            ),
            'registrar': RateLimitPolicy(
                limit=_env_int('REGISTRAR_RATE_LIMIT', 60),
                window_ms=_env_int('REGISTRAR_RATE_WINDOW_MS', 60 * 1000),
                prefix='rl:registrar:',
            ),
        }


class AdminAlertConfig:
    """Configuration for admin alert system"""

    def __init__(self):
        # Rate limiting settings
        self.rate_limit_window = _env_int('ALERT_RATE_LIMIT_WINDOW', 300)  # 5 minutes
        self.max_alerts_per_window = _env_int('ALERT_MAX_PER_WINDOW', 10)

        # Alert suppression settings
        self.suppression_window = _env_int('ALERT_SUPPRESSION_WINDOW', 3600)  # 1 hour

        self.admin_user_ids = self._parse_admin_users()
        self.min_severity = os.getenv('ALERT_MIN_SEVERITY', 'WARNING').upper()
        self.alerts_enabled = _env_bool('ADMIN_ALERTS_ENABLED', True)

        logger.info(f"✅ Admin Alert Config: enabled={self.alerts_enabled}, "
                    f"admins={len(self.admin_user_ids)}, min_severity={self.min_severity}")

    def _parse_admin_users(self) -> List[int]:
        """Parse admin user IDs from environment variables"""
        admin_ids = []

        primary_admin = os.getenv('ADMIN_USER_ID')
        if primary_admin:
            try:
                admin_ids.append(int(primary_admin))
            except ValueError:
                logger.warning(f"Invalid ADMIN_USER_ID format: {primary_admin}")

        # Additional admin users (comma-separated)
        additional_admins = os.getenv('ADDITIONAL_ADMIN_USER_IDS', '')
        for admin_id in additional_admins.split(','):
            admin_id = admin_id.strip()
            if admin_id:
                try:
                    admin_ids.append(int(admin_id))
                except ValueError:
                    logger.warning(f"Invalid additional admin ID format: {admin_id}")

        if not admin_ids:
            logger.warning("⚠️ No admin user IDs configured - alerts will be logged only")

        return admin_ids
