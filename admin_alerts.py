"""
Operator alerts for the fulfillment service

Alerts go to Telegram chats through python-telegram-bot with:
- Severity levels (CRITICAL, ERROR, WARNING, INFO) and a minimum severity filter
- Rate limiting per time window
- Duplicate suppression by fingerprint
- Log-only mode when no bot token or chat is configured
"""

import os
import logging
import hashlib
import html
import json
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Any, Union
from enum import Enum
from dataclasses import dataclass, asdict

from telegram import Bot
from telegram.error import TelegramError

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    """Alert severity levels"""
    CRITICAL = "CRITICAL"
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"


SEVERITY_ORDER = [AlertSeverity.INFO, AlertSeverity.WARNING, AlertSeverity.ERROR, AlertSeverity.CRITICAL]


class AlertCategory(Enum):
    PAYMENT_PROCESSING = "payment_processing"
    DOMAIN_REGISTRATION = "domain_registration"
    HOSTING = "hosting"
    EMAIL = "email"
    SSL = "ssl"
    EXTERNAL_API = "external_api"
    DATABASE = "database"
    WEBHOOK = "webhook"
    SYSTEM_HEALTH = "system_health"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Alert:
    """Structured alert data"""
    severity: AlertSeverity
    category: AlertCategory
    component: str
    message: str
    details: Optional[Dict[str, Any]] = None
    timestamp: Optional[datetime] = None
    fingerprint: Optional[str] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = _utc_now()
        if self.fingerprint is None:
            content = f"{self.severity.value}:{self.category.value}:{self.component}:{self.message}"
            self.fingerprint = hashlib.md5(content.encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['severity'] = self.severity.value
        data['category'] = self.category.value
        data['timestamp'] = self.timestamp.isoformat() if self.timestamp else None
        return data


class AdminAlertConfig:
    """Alert settings read from the environment"""

    def __init__(self):
        self.rate_limit_window = int(os.getenv('ALERT_RATE_LIMIT_WINDOW', '300'))
        self.max_alerts_per_window = int(os.getenv('ALERT_MAX_PER_WINDOW', '10'))
        self.suppression_window = int(os.getenv('ALERT_SUPPRESSION_WINDOW', '3600'))
        self.min_severity = AlertSeverity(os.getenv('ALERT_MIN_SEVERITY', 'WARNING').upper())
        self.alerts_enabled = os.getenv('ADMIN_ALERTS_ENABLED', 'true').lower() == 'true'
        self.bot_token = os.getenv('TELEGRAM_BOT_TOKEN', '')
        self.admin_chat_ids = self._parse_chat_ids(os.getenv('ADMIN_CHAT_IDS', ''))

        logger.info(f"✅ Admin Alert Config: enabled={self.alerts_enabled}, "
                    f"chats={len(self.admin_chat_ids)}, min_severity={self.min_severity.value}")

    @staticmethod
    def _parse_chat_ids(raw: str) -> List[int]:
        chat_ids = []
        for chat_id in raw.split(','):
            chat_id = chat_id.strip()
            if not chat_id:
                continue
            try:
                chat_ids.append(int(chat_id))
            except ValueError:
                logger.warning(f"Invalid admin chat id format: {chat_id}")
        return chat_ids

    @property
    def delivery_configured(self) -> bool:
        return bool(self.bot_token and self.admin_chat_ids)


class AdminAlertSystem:
    """Rate-limited, de-duplicated alert delivery"""

    def __init__(self, config: Optional[AdminAlertConfig] = None, bot: Optional[Bot] = None):
        self.config = config or AdminAlertConfig()
        self._suppressed_alerts: Dict[str, datetime] = {}
        self._rate_limit_tracker: List[datetime] = []
        self._bot = bot
        if self._bot is None and self.config.bot_token:
            self._bot = Bot(self.config.bot_token)
        if not self.config.delivery_configured:
            logger.warning("⚠️ No Telegram bot token or admin chats configured - alerts will be logged only")

    def _is_rate_limited(self) -> bool:
        cutoff = _utc_now() - timedelta(seconds=self.config.rate_limit_window)
        self._rate_limit_tracker = [ts for ts in self._rate_limit_tracker if ts > cutoff]
        return len(self._rate_limit_tracker) >= self.config.max_alerts_per_window

    def _is_suppressed(self, fingerprint: str) -> bool:
        suppressed_until = self._suppressed_alerts.get(fingerprint)
        if suppressed_until is None:
            return False
        if _utc_now() > suppressed_until:
            del self._suppressed_alerts[fingerprint]
            return False
        return True

    def _suppress_alert(self, fingerprint: str):
        self._suppressed_alerts[fingerprint] = _utc_now() + timedelta(seconds=self.config.suppression_window)

    @staticmethod
    def format_alert_message(alert: Alert) -> str:
        """Format alert as Telegram HTML"""
        severity_icons = {
            AlertSeverity.CRITICAL: "🔴",
            AlertSeverity.ERROR: "🟠",
            AlertSeverity.WARNING: "🟡",
            AlertSeverity.INFO: "🔵",
        }
        timestamp_str = alert.timestamp.strftime("%Y-%m-%d %H:%M:%S UTC") if alert.timestamp else "Unknown"

        message_parts = [
            f"{severity_icons.get(alert.severity, '⚠️')} <b>ADMIN ALERT - {alert.severity.value}</b>",
            f"📋 <b>Category:</b> {alert.category.value.replace('_', ' ').title()}",
            f"🔧 <b>Component:</b> {html.escape(alert.component)}",
            f"📝 <b>Message:</b> {html.escape(alert.message)}",
            f"🕐 <b>Time:</b> {timestamp_str}",
        ]
        if alert.details:
            message_parts.append("📊 <b>Details:</b>")
            for key, value in alert.details.items():
                if isinstance(value, dict):
                    value = json.dumps(value, default=str)
                elif isinstance(value, (list, tuple)):
                    value = ", ".join(str(v) for v in value)
                message_parts.append(f"   • <b>{html.escape(str(key))}:</b> {html.escape(str(value))}")

        return "\n".join(message_parts)

    async def _send_to_chat(self, chat_id: int, alert: Alert) -> bool:
        try:
            await self._bot.send_message(chat_id=chat_id, text=self.format_alert_message(alert), parse_mode='HTML')
        except TelegramError as e:
            logger.error(f"❌ Failed to send admin alert to {chat_id}: {e}")
            return False
        logger.info(f"✅ Admin alert sent to {chat_id}: {alert.severity.value} - {alert.component}")
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
        Send an operator alert.

        Returns True when at least one chat received it. Alerts below the
        minimum severity, duplicates inside the suppression window and alerts
        over the rate limit are dropped.
        """
        if not self.config.alerts_enabled:
            logger.debug(f"Admin alerts disabled - skipping: {component}: {message}")
            return False

        if isinstance(severity, str):
            severity = AlertSeverity(severity.upper())
        if isinstance(category, str):
            category = AlertCategory(category.lower())

        if SEVERITY_ORDER.index(severity) < SEVERITY_ORDER.index(self.config.min_severity):
            logger.debug(f"Alert below minimum severity ({self.config.min_severity.value}) - skipping: {message}")
            return False

        alert = Alert(severity=severity, category=category, component=component, message=message, details=details)
        log_level = getattr(logging, severity.value, logging.WARNING)

        if self._is_suppressed(alert.fingerprint):
            logger.debug(f"Alert suppressed (duplicate): {component}: {message}")
            return False

        if self._is_rate_limited():
            logger.warning(f"⚠️ Admin alerts rate limited - dropping: {component}: {message}")
            return False

        self._rate_limit_tracker.append(_utc_now())
        self._suppress_alert(alert.fingerprint)

        if not self.config.delivery_configured or self._bot is None:
            logger.log(log_level, f"🚨 ADMIN ALERT ({severity.value}): [{component}] {message}")
            return False

        sent_count = 0
        for chat_id in self.config.admin_chat_ids:
            if await self._send_to_chat(chat_id, alert):
                sent_count += 1

        if sent_count == 0:
            logger.error(f"❌ Failed to send admin alert to any chat: {component}: {message}")
            return False

        logger.log(log_level, f"🚨 ADMIN ALERT ({severity.value}): [{component}] {message}")
        return True


_admin_alert_system: Optional[AdminAlertSystem] = None


def get_admin_alert_system() -> AdminAlertSystem:
    global _admin_alert_system
    if _admin_alert_system is None:
        _admin_alert_system = AdminAlertSystem()
    return _admin_alert_system


def reset_admin_alert_system(system: Optional[AdminAlertSystem] = None) -> None:
    """Replace the process-wide alert system (None rebuilds from the environment on next use)"""
    global _admin_alert_system
    _admin_alert_system = system


async def send_error_alert(component: str, message: str, category: str = "payment_processing",
                           details: Optional[Dict[str, Any]] = None) -> bool:
    """Fire an ERROR alert through the process-wide alert system"""
    return await get_admin_alert_system().send_alert(AlertSeverity.ERROR, category, component, message, details)
