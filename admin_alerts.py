"""
Operator alerts for the DomainBay lifecycle workers

Permanent job failures, uncommitted registrar side effects and worker crashes
are pushed to every configured admin over Telegram (ADMIN_USER_ID plus
ADDITIONAL_ADMIN_USER_IDS). Identical alerts are held back for a quiet period
and the total volume per window is capped so a failing registrar cannot flood
the admin chats.
"""

import json
import hashlib
import logging
from collections import Counter
from dataclasses import dataclass, asdict, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from telegram.error import TelegramError

from config import AdminAlertConfig
from message_utils import escape_html
from models import utcnow

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 500


class AlertSeverity(Enum):
    CRITICAL = "CRITICAL"
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    AlertSeverity.INFO: 0,
    AlertSeverity.WARNING: 1,
    AlertSeverity.ERROR: 2,
    AlertSeverity.CRITICAL: 3,
}


class AlertCategory(Enum):
    """Which part of the pipeline raised the alert"""
    DOMAIN_REGISTRATION = "domain_registration"
    DOMAIN_RENEWAL = "domain_renewal"
    DNS = "dns"
    TRANSFER = "transfer"
    WALLET = "wallet"
    JOB_QUEUE = "job_queue"
    EXTERNAL_API = "external_api"
    NOTIFICATION = "notification"


SEVERITY_ICONS = {
    AlertSeverity.CRITICAL: "🔴",
    AlertSeverity.ERROR: "🟠",
    AlertSeverity.WARNING: "🟡",
    AlertSeverity.INFO: "🔵",
}

CATEGORY_ICONS = {
    AlertCategory.DOMAIN_REGISTRATION: "🌐",
    AlertCategory.DOMAIN_RENEWAL: "🔄",
    AlertCategory.DNS: "📡",
    AlertCategory.TRANSFER: "🔀",
    AlertCategory.WALLET: "💰",
    AlertCategory.JOB_QUEUE: "📋",
    AlertCategory.EXTERNAL_API: "🔗",
    AlertCategory.NOTIFICATION: "✉️",
}


@dataclass
class Alert:
    severity: AlertSeverity
    category: AlertCategory
    component: str
    message: str
    details: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def fingerprint(self) -> str:
        """Alerts with the same severity, origin and text count as duplicates"""
        key = "|".join((self.severity.value, self.category.value, self.component, self.message))
        return hashlib.md5(key.encode()).hexdigest()

    def as_record(self, sent: bool) -> Dict[str, Any]:
        record = asdict(self)
        record.update(
            severity=self.severity.value,
            category=self.category.value,
            timestamp=self.timestamp.isoformat(),
            fingerprint=self.fingerprint,
            sent=sent,
        )
        return record

    def render(self) -> str:
        """Telegram HTML body"""
        category_label = self.category.value.replace('_', ' ').title()
        lines = [
            f"{SEVERITY_ICONS[self.severity]} <b>ADMIN ALERT - {self.severity.value}</b>",
            f"{CATEGORY_ICONS[self.category]} <b>Category:</b> {category_label}",
            f"🔧 <b>Component:</b> {escape_html(self.component)}",
            f"📝 <b>Message:</b> {escape_html(self.message)}",
            f"🕐 <b>Time:</b> {self.timestamp:%Y-%m-%d %H:%M:%S} UTC",
        ]
        if self.details:
            lines.append("📊 <b>Details:</b>")
            for name, raw in self.details.items():
                if isinstance(raw, dict):
                    shown = json.dumps(raw, indent=2, default=str)
                elif isinstance(raw, (list, tuple)):
                    shown = ", ".join(map(str, raw))
                else:
                    shown = str(raw)
                lines.append(f"   • <b>{escape_html(str(name))}:</b> {escape_html(shown)}")
        return "\n".join(lines)


class AdminAlertSystem:
    """Deduplicating, volume-capped alert fan-out to admin chats"""

    def __init__(self, config: Optional[AdminAlertConfig] = None, bot=None):
        self.config = config or AdminAlertConfig()
        self.bot = bot
        self._history: List[Dict[str, Any]] = []
        self._quiet_until: Dict[str, datetime] = {}
        self._delivery_times: List[datetime] = []

    @property
    def history(self) -> List[Dict[str, Any]]:
        return list(self._history)

    @property
    def min_severity(self) -> AlertSeverity:
        try:
            return AlertSeverity(self.config.min_severity)
        except ValueError:
            return AlertSeverity.WARNING

    def _window_full(self, now: datetime) -> bool:
        window_start = now - timedelta(seconds=self.config.rate_limit_window)
        self._delivery_times = [sent_at for sent_at in self._delivery_times if sent_at > window_start]
        return len(self._delivery_times) >= self.config.max_alerts_per_window

    def _is_duplicate(self, fingerprint: str, now: datetime) -> bool:
        quiet_until = self._quiet_until.get(fingerprint)
        if quiet_until is None:
            return False
        if now > quiet_until:
            self._quiet_until.pop(fingerprint)
            return False
        return True

    def _remember(self, alert: Alert, sent: bool) -> None:
        self._history.append(alert.as_record(sent))
        del self._history[:-HISTORY_LIMIT]

    async def _deliver(self, chat_id: int, text: str) -> bool:
        try:
            await self.bot.send_message(chat_id=chat_id, text=text, parse_mode='HTML')
        except TelegramError as e:
            logger.error(f"❌ Admin alert to {chat_id} failed: {e}")
            return False
        return True

    async def send_alert(
        self,
        severity: Union[AlertSeverity, str],
        category: Union[AlertCategory, str],
        component: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Fan an alert out to every admin chat

        Severity and category may be given as enum members or their string
        values. Returns True when at least one admin received it; alerts that
        are filtered, duplicated, throttled or undeliverable return False.
        """
        if not self.config.alerts_enabled:
            logger.debug(f"Admin alerts off, dropping [{component}] {message}")
            return False

        severity = AlertSeverity(severity.upper()) if isinstance(severity, str) else severity
        category = AlertCategory(category.lower()) if isinstance(category, str) else category

        if severity.rank < self.min_severity.rank:
            logger.debug(f"Alert under {self.min_severity.value} threshold: [{component}] {message}")
            return False

        alert = Alert(severity=severity, category=category, component=component,
                      message=message, details=details)
        logger.log(getattr(logging, severity.value, logging.WARNING),
                   f"🚨 ADMIN ALERT ({severity.value}): [{component}] {message}")

        now = utcnow()
        if self._is_duplicate(alert.fingerprint, now):
            logger.debug(f"Repeat alert held back: [{component}] {message}")
            self._remember(alert, sent=False)
            return False
        if self._window_full(now):
            logger.warning(f"⚠️ Alert budget exhausted, dropping [{component}] {message}")
            self._remember(alert, sent=False)
            return False

        delivered = 0
        if self.bot is not None:
            text = alert.render()
            for chat_id in self.config.admin_user_ids:
                delivered += await self._deliver(chat_id, text)

        self._delivery_times.append(now)
        self._quiet_until[alert.fingerprint] = now + timedelta(seconds=self.config.suppression_window)
        self._remember(alert, sent=delivered > 0)

        if delivered:
            logger.info(f"✅ Admin alert {severity.value} from {component} reached {delivered} admin(s)")
        elif self.config.admin_user_ids:
            logger.error(f"❌ No admin received alert: [{component}] {message}")
        return delivered > 0

    async def send_critical_alert(self, component: str, message: str, category: Union[AlertCategory, str],
                                  details: Optional[Dict[str, Any]] = None) -> bool:
        return await self.send_alert(AlertSeverity.CRITICAL, category, component, message, details)

    async def send_error_alert(self, component: str, message: str, category: Union[AlertCategory, str],
                               details: Optional[Dict[str, Any]] = None) -> bool:
        return await self.send_alert(AlertSeverity.ERROR, category, component, message, details)

    async def send_warning_alert(self, component: str, message: str, category: Union[AlertCategory, str],
                                 details: Optional[Dict[str, Any]] = None) -> bool:
        return await self.send_alert(AlertSeverity.WARNING, category, component, message, details)

    def get_alert_stats(self) -> Dict[str, Any]:
        return {
            'total': len(self._history),
            'sent': sum(1 for record in self._history if record['sent']),
            'by_severity': dict(Counter(record['severity'] for record in self._history)),
            'by_category': dict(Counter(record['category'] for record in self._history)),
        }
