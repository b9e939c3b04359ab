"""
Alert delivery to a webhook and email recipients.

Delivery failures are logged and never raised. A cooldown per alert type
keeps a persisting problem from flooding the channels.
"""

import asyncio
import smtplib
from datetime import datetime, timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Callable, Dict, List, Optional, Sequence

import aiohttp

from ..shared.config import AlertSettings
from ..shared.logging_config import get_logger
from .models import PerformanceAlert


class AlertNotifier:
    """Sends newly raised PerformanceAlerts to the configured channels."""

    def __init__(
        self,
        settings: AlertSettings,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.settings = settings
        self.session = session
        self.clock = clock
        self.logger = get_logger(__name__, 'alert_notifier')

        self._owns_session = False
        self.last_notification: Dict[str, datetime] = {}
        self.stats = {
            'webhook_sent': 0,
            'webhook_failed': 0,
            'email_sent': 0,
            'email_failed': 0,
            'throttled': 0,
        }

    @property
    def has_channels(self) -> bool:
        return bool(self.settings.webhook or self.settings.email)

    async def start(self):
        """Open the HTTP session used for webhook delivery."""
        if self.session is None and self.settings.webhook:
            self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10))
            self._owns_session = True
        self.logger.info("Alert notifier started", operation="start_notifier")

    async def stop(self):
        if self.session is not None and self._owns_session:
            await self.session.close()
            self.session = None
            self._owns_session = False
        self.logger.info("Alert notifier stopped", operation="stop_notifier")

    async def notify(self, alerts: Sequence[PerformanceAlert]) -> List[PerformanceAlert]:
        """Deliver alerts outside their cooldown. Returns the alerts that were sent."""
        if not self.settings.enabled or not self.has_channels or not alerts:
            return []

        due = self._filter_cooldown(alerts)
        if not due:
            return []

        delivered = False
        if self.settings.webhook:
            delivered = await self._send_webhook(due) or delivered
        if self.settings.email:
            delivered = await self._send_email(due) or delivered

        if delivered:
            now = self.clock()
            for alert in due:
                self.last_notification[alert.alert_type.value] = now
            return due
        return []

    def _filter_cooldown(self, alerts: Sequence[PerformanceAlert]) -> List[PerformanceAlert]:
        now = self.clock()
        cooldown = timedelta(minutes=self.settings.cooldown_minutes)
        due = []
        for alert in alerts:
            last = self.last_notification.get(alert.alert_type.value)
            if last is not None and now - last < cooldown:
                self.stats['throttled'] += 1
                continue
            due.append(alert)

        if len(due) < len(alerts):
            self.logger.info(
                f"Skipped {len(alerts) - len(due)} alerts within cooldown",
                operation="notify",
            )
        return due

    async def _send_webhook(self, alerts: Sequence[PerformanceAlert]) -> bool:
        if self.session is None:
            self.logger.warning("Webhook configured but notifier not started", operation="send_webhook")
            return False

        payload = {
            'alerts': [alert.to_dict() for alert in alerts],
            'timestamp': self.clock().isoformat(),
            'source': 'db-monitor',
        }

        try:
            async with self.session.post(self.settings.webhook, json=payload) as response:
                if 200 <= response.status < 300:
                    self.stats['webhook_sent'] += 1
                    return True
                self.stats['webhook_failed'] += 1
                self.logger.error(
                    f"Webhook returned status {response.status}",
                    operation="send_webhook",
                    status=response.status,
                )
                return False
        except Exception as e:
            self.stats['webhook_failed'] += 1
            self.logger.error(f"Error sending webhook notification: {e}", operation="send_webhook")
            return False

    def build_email(self, alerts: Sequence[PerformanceAlert]) -> MIMEMultipart:
        highest = 'CRITICAL' if any(a.severity.value == 'CRITICAL' for a in alerts) else 'WARNING'

        msg = MIMEMultipart()
        msg['From'] = self.settings.from_email or 'db-monitor@localhost'
        msg['To'] = ', '.join(self.settings.email)
        msg['Subject'] = f"[{highest}] Database performance: {len(alerts)} new alert(s)"

        lines = []
        for alert in alerts:
            lines.append(
                f"{alert.severity.value} {alert.alert_type.value}: {alert.message}\n"
                f"  Alert ID: {alert.alert_id}\n"
                f"  Created: {alert.created_at.isoformat()}"
            )
        msg.attach(MIMEText('\n\n'.join(lines), 'plain'))
        return msg

    async def _send_email(self, alerts: Sequence[PerformanceAlert]) -> bool:
        msg = self.build_email(alerts)
        try:
            await asyncio.to_thread(self._deliver_email, msg)
            self.stats['email_sent'] += 1
            return True
        except Exception as e:
            self.stats['email_failed'] += 1
            self.logger.error(f"Error sending email: {e}", operation="send_email")
            return False

    def _deliver_email(self, msg: MIMEMultipart) -> None:
        with smtplib.SMTP(self.settings.smtp_server, self.settings.smtp_port, timeout=10) as server:
            if self.settings.smtp_username and self.settings.smtp_password:
                server.starttls()
                server.login(self.settings.smtp_username, self.settings.smtp_password)
            server.send_message(msg)
