"""
Admin alert system tests
Delivery to admins, severity filtering, deduplication and rate limiting
"""

import pytest
from telegram.error import NetworkError

from admin_alerts import AdminAlertSystem, AlertCategory, AlertSeverity
from config import AdminAlertConfig


@pytest.fixture
def alert_config():
    config = AdminAlertConfig()
    config.admin_user_ids = [999, 1000]
    return config


class TestAdminAlerts:

    async def test_alert_sent_to_every_admin(self, alert_config, admin_bot):
        alerts = AdminAlertSystem(alert_config, bot=admin_bot)

        sent = await alerts.send_error_alert('registration_worker', 'Registrar returned 500',
                                             AlertCategory.DOMAIN_REGISTRATION, {'job_id': 'job-1'})

        assert sent is True
        assert admin_bot.send_message.await_count == 2
        chat_ids = [call.kwargs['chat_id'] for call in admin_bot.send_message.await_args_list]
        assert chat_ids == [999, 1000]
        text = admin_bot.send_message.await_args.kwargs['text']
        assert 'ADMIN ALERT - ERROR' in text
        assert 'job-1' in text

    async def test_alert_text_is_html_escaped(self, alert_config, admin_bot):
        alerts = AdminAlertSystem(alert_config, bot=admin_bot)

        await alerts.send_warning_alert('dns_worker', 'Bad record <script>', AlertCategory.DNS)

        text = admin_bot.send_message.await_args.kwargs['text']
        assert '&lt;script&gt;' in text
        assert admin_bot.send_message.await_args.kwargs['parse_mode'] == 'HTML'

    async def test_below_min_severity_skipped(self, alert_config, admin_bot):
        alerts = AdminAlertSystem(alert_config, bot=admin_bot)

        sent = await alerts.send_alert(AlertSeverity.INFO, AlertCategory.JOB_QUEUE, 'worker_pool', 'Started')

        assert sent is False
        admin_bot.send_message.assert_not_awaited()
        assert alerts.history == []

    async def test_duplicate_alert_suppressed(self, alert_config, admin_bot):
        alerts = AdminAlertSystem(alert_config, bot=admin_bot)

        first = await alerts.send_critical_alert('wallet', 'Refund required', AlertCategory.WALLET)
        second = await alerts.send_critical_alert('wallet', 'Refund required', AlertCategory.WALLET)

        assert first is True
        assert second is False
        assert admin_bot.send_message.await_count == 2
        assert [a['sent'] for a in alerts.history] == [True, False]

    async def test_rate_limit_caps_alert_volume(self, alert_config, admin_bot):
        alert_config.max_alerts_per_window = 3
        alerts = AdminAlertSystem(alert_config, bot=admin_bot)

        results = [await alerts.send_error_alert('worker', f"Failure {i}", 'job_queue') for i in range(5)]

        assert results == [True, True, True, False, False]
        assert len(alerts.history) == 5

    async def test_telegram_failure_reported_as_not_sent(self, alert_config, admin_bot):
        admin_bot.send_message.side_effect = NetworkError('Connection reset')
        alerts = AdminAlertSystem(alert_config, bot=admin_bot)

        sent = await alerts.send_error_alert('worker', 'Something broke', AlertCategory.EXTERNAL_API)

        assert sent is False
        assert alerts.history[-1]['sent'] is False

    async def test_without_bot_alerts_are_only_recorded(self, alert_config):
        alerts = AdminAlertSystem(alert_config)

        sent = await alerts.send_critical_alert('worker', 'No bot configured', AlertCategory.JOB_QUEUE)

        assert sent is False
        assert alerts.history[0]['message'] == 'No bot configured'

    async def test_disabled_alerts(self, alert_config, admin_bot):
        alert_config.alerts_enabled = False
        alerts = AdminAlertSystem(alert_config, bot=admin_bot)

        assert await alerts.send_critical_alert('worker', 'Ignored', AlertCategory.JOB_QUEUE) is False
        admin_bot.send_message.assert_not_awaited()

    async def test_alert_stats(self, alert_config, admin_bot):
        alerts = AdminAlertSystem(alert_config, bot=admin_bot)
        await alerts.send_error_alert('a', 'one', AlertCategory.DNS)
        await alerts.send_critical_alert('b', 'two', AlertCategory.WALLET)

        stats = alerts.get_alert_stats()

        assert stats['total'] == 2
        assert stats['sent'] == 2
        assert stats['by_severity'] == {'ERROR': 1, 'CRITICAL': 1}
        assert stats['by_category'] == {'dns': 1, 'wallet': 1}
