"""
Meltdown Controller - Alerting.

============================================================
PURPOSE
============================================================
Notify admins about meltdown transitions, manual pauses and
resumes, and degraded conditions.

ON A MELTDOWN TRANSITION:
1. Trading state is paused (state store)
2. "Meltdown Detected" alert goes to every sender (this module)

DEGRADED CONDITIONS:
Only the conditions listed in AlertingConfig.degraded_conditions
are sent. The rest are logged only.

Alert delivery is best effort. A failing sender is logged
and never aborts a transition.

============================================================
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Dict, Any, List

import aiohttp

from .clock import ClockProtocol, SystemClock
from .config import AlertingConfig, DegradedCondition
from .interfaces import AlertDispatcher
from .types import Actor, MeltdownDecision, TradingState


logger = logging.getLogger(__name__)


# ============================================================
# ALERT TYPES
# ============================================================

class AlertPriority(Enum):
    """Alert priority levels."""

    LOW = "low"
    """Informational only."""

    MEDIUM = "medium"
    """Warning, requires attention."""

    HIGH = "high"
    """Critical, requires immediate attention."""

    URGENT = "urgent"
    """Emergency, requires immediate action."""


@dataclass
class Alert:
    """Alert to be sent."""

    priority: AlertPriority
    """Alert priority."""

    title: str
    """Alert title."""

    message: str
    """Alert message."""

    details: Dict[str, Any] = field(default_factory=dict)
    """Additional details."""

    timestamp: Optional[datetime] = None
    """When alert was created."""


# ============================================================
# ALERT FORMATTERS
# ============================================================

def format_meltdown_alert(decision: MeltdownDecision) -> Alert:
    """
    Format a meltdown transition as an alert.

    Args:
        decision: The triggering decision

    Returns:
        Formatted alert
    """
    lines = [f"Reason: {reason}" for reason in decision.reasons]
    lines.append("")
    lines.append("Auto-freeze trading has been enabled.")

    if decision.source_errors:
        lines.append("")
        lines.append("Degraded sources:")
        for source, error in decision.source_errors:
            lines.append(f"• {source.value}: {error}")

    return Alert(
        priority=AlertPriority.URGENT,
        title="🚨 Meltdown Detected",
        message="\n".join(lines),
        details={"reasons": list(decision.reasons)},
        timestamp=decision.evaluated_at,
    )


def format_pause_alert(reason: str, actor: Actor) -> Alert:
    """Format a manual pause as an alert."""
    return Alert(
        priority=AlertPriority.HIGH,
        title="🛑 Market Paused",
        message=f"Market paused: {reason}\nBy: {actor}",
        details={"reason": reason, "actor": str(actor)},
    )


def format_resume_alert(state: TradingState) -> Alert:
    """Format a resume as an alert."""
    return Alert(
        priority=AlertPriority.MEDIUM,
        title="✅ Trading Resumed",
        message=(
            f"Trading resumed by {state.changed_by}\n"
            f"Time: {state.changed_at.strftime('%Y-%m-%d %H:%M:%S UTC')}"
        ),
        details=state.to_dict(),
        timestamp=state.changed_at,
    )


_DEGRADED_TITLES = {
    DegradedCondition.SOURCE_ERROR: "⚠️ Signal Source Degraded",
    DegradedCondition.CYCLE_ABORTED: "⚠️ Meltdown Cycle Aborted",
    DegradedCondition.CYCLE_OVERRUN: "⏱️ Meltdown Cycle Overrun",
    DegradedCondition.HIGH_ERROR_RATE: "⚠️ Aggregator High Error Rate",
    DegradedCondition.QUEUE_BACKLOG: "🚨 Aggregator Queue Backlog",
    DegradedCondition.RPC_UNHEALTHY: "❌ Solana RPC Unhealthy",
}


def format_degraded_alert(condition: DegradedCondition, message: str) -> Alert:
    """Format a degraded condition as an alert."""
    return Alert(
        priority=AlertPriority.MEDIUM,
        title=_DEGRADED_TITLES.get(condition, f"⚠️ {condition.value}"),
        message=message,
        details={"condition": condition.value},
    )


# ============================================================
# ALERT SENDER INTERFACE
# ============================================================

class AlertSender(ABC):
    """Abstract interface for sending alerts."""

    @abstractmethod
    async def send(self, alert: Alert) -> bool:
        """
        Send an alert.

        Args:
            alert: Alert to send

        Returns:
            True if sent successfully
        """
        pass


# ============================================================
# TELEGRAM ALERT SENDER
# ============================================================

class TelegramAlertSender(AlertSender):
    """
    Sends alerts to the admin chat via the Telegram Bot API.
    """

    MAX_MESSAGE_LENGTH = 4096

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        parse_mode: str = "Markdown",
        timeout_seconds: float = 10.0,
    ):
        """
        Initialize Telegram sender.

        Args:
            bot_token: Telegram bot token
            chat_id: Admin chat ID
            parse_mode: Message parse mode
            timeout_seconds: Request timeout
        """
        self._chat_id = chat_id
        self._parse_mode = parse_mode
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._api_url = f"https://api.telegram.org/bot{bot_token}/sendMessage"

    async def send(self, alert: Alert) -> bool:
        """Send alert via Telegram."""
        text = f"*{alert.title}*\n\n{alert.message}"
        if len(text) > self.MAX_MESSAGE_LENGTH:
            text = text[:self.MAX_MESSAGE_LENGTH - 3] + "..."

        payload = {
            "chat_id": self._chat_id,
            "text": text,
            "parse_mode": self._parse_mode,
        }

        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(self._api_url, json=payload) as response:
                    if response.status == 200:
                        logger.info(f"Telegram alert sent: {alert.title}")
                        return True
                    error = await response.text()
                    logger.error(f"Telegram send failed ({response.status}): {error}")
                    return False

        except aiohttp.ClientError as e:
            logger.error(f"Telegram send error: {e}")
            return False


# ============================================================
# CONSOLE ALERT SENDER
# ============================================================

class ConsoleAlertSender(AlertSender):
    """
    Writes alerts to the log (development and dry runs).
    """

    async def send(self, alert: Alert) -> bool:
        logger.warning(
            f"ALERT [{alert.priority.value.upper()}] {alert.title}\n{alert.message}"
        )
        return True


# ============================================================
# ALERTING SERVICE
# ============================================================

class AlertingService(AlertDispatcher):
    """
    Alerting service for the Meltdown Controller.

    Manages alert sending with:
    - Deduplication of degraded and free-form alerts within the repeat window
    - Degraded condition filtering
    - Sender failure isolation
    """

    def __init__(
        self,
        config: Optional[AlertingConfig] = None,
        senders: Optional[List[AlertSender]] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        """
        Initialize alerting service.

        Args:
            config: Alerting configuration
            senders: List of alert senders
            clock: Time source for deduplication
        """
        self._config = config or AlertingConfig()
        self._senders: List[AlertSender] = list(senders or [])
        self._clock = clock or SystemClock()

        # Deduplication: alert key -> last sent
        self._recent_alerts: Dict[str, datetime] = {}

    def add_sender(self, sender: AlertSender) -> None:
        """Add an alert sender."""
        self._senders.append(sender)

    @property
    def senders(self) -> List[AlertSender]:
        return list(self._senders)

    # --------------------------------------------------------
    # ALERT DISPATCHER
    # --------------------------------------------------------

    async def notify_admins(self, title: str, message: str, priority: str = "high") -> None:
        """Send a free-form message to admins."""
        try:
            alert_priority = AlertPriority(priority)
        except ValueError:
            alert_priority = AlertPriority.HIGH

        await self._send_alert(
            Alert(priority=alert_priority, title=title, message=message)
        )

    # --------------------------------------------------------
    # DOMAIN ALERTS
    # --------------------------------------------------------

    async def alert_meltdown(
        self,
        decision: MeltdownDecision,
        deduplicate: bool = False,
    ) -> None:
        """
        Send alert for a meltdown.

        Args:
            decision: Decision behind the pause
            deduplicate: Apply the repeat window (reason updates on an
                existing pause); a fresh pause is always sent
        """
        await self._send_alert(format_meltdown_alert(decision), deduplicate=deduplicate)

    async def alert_pause(self, reason: str, actor: Actor) -> None:
        """Send alert for a manual pause."""
        await self._send_alert(format_pause_alert(reason, actor), deduplicate=False)

    async def alert_resume(self, state: TradingState) -> None:
        """Send alert for a resume."""
        await self._send_alert(format_resume_alert(state), deduplicate=False)

    async def alert_degraded(self, condition: DegradedCondition, message: str) -> bool:
        """
        Send alert for a degraded condition.

        Returns:
            True if the condition is configured for alerting
        """
        if condition not in self._config.degraded_conditions:
            logger.debug(f"Degraded condition {condition.value} not alerted: {message}")
            return False

        await self._send_alert(format_degraded_alert(condition, message))
        return True

    # --------------------------------------------------------
    # DELIVERY
    # --------------------------------------------------------

    async def _send_alert(self, alert: Alert, deduplicate: bool = True) -> None:
        """Send alert through all configured senders."""
        if not self._config.enabled:
            return

        now = self._clock.now()
        if alert.timestamp is None:
            alert.timestamp = now

        alert_key = f"{alert.title}:{alert.message[:100]}"
        last_sent = self._recent_alerts.get(alert_key)
        if deduplicate and last_sent is not None:
            min_interval = timedelta(minutes=self._config.repeat_alert_minutes)
            if now - last_sent < min_interval:
                logger.debug(f"Skipping duplicate alert: {alert.title}")
                return

        for sender in self._senders:
            try:
                await sender.send(alert)
            except Exception as e:
                logger.error(f"Alert sender {type(sender).__name__} failed: {e}")

        self._recent_alerts[alert_key] = now
        self._cleanup_recent_alerts(now)

    def _cleanup_recent_alerts(self, now: datetime) -> None:
        """Remove old entries from deduplication cache."""
        expiry = timedelta(hours=1)

        expired = [
            key for key, timestamp in self._recent_alerts.items()
            if now - timestamp > expiry
        ]

        for key in expired:
            del self._recent_alerts[key]


def create_alerting_service(
    config: AlertingConfig,
    clock: Optional[ClockProtocol] = None,
) -> AlertingService:
    """
    Build the alerting service from configuration.

    Telegram is used when configured, the log otherwise.
    """
    senders: List[AlertSender] = []

    if config.telegram_enabled and config.telegram_bot_token and config.telegram_chat_id:
        senders.append(
            TelegramAlertSender(
                bot_token=config.telegram_bot_token,
                chat_id=config.telegram_chat_id,
            )
        )
    else:
        senders.append(ConsoleAlertSender())

    return AlertingService(config=config, senders=senders, clock=clock)
