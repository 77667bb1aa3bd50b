import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import aiohttp
from pydantic import BaseModel, ConfigDict, Field

from access_governance.config import NotificationConfig
from access_governance.events import EventSystem
from access_governance.models import new_id, utc_now

logger = logging.getLogger(__name__)


class NotificationChannel(BaseModel):
    """Base class for notification channels."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    enabled: bool = True


class SlackChannel(NotificationChannel):
    """Slack incoming-webhook channel."""
    webhook_url: str
    channel: Optional[str] = None
    username: Optional[str] = None
    icon_emoji: Optional[str] = None


class WebhookChannel(NotificationChannel):
    """Generic webhook notification channel."""
    url: str
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)


class Notification(BaseModel):
    """Represents a notification."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(default_factory=new_id)
    tenant_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    level: str  # info, warning, error, critical
    title: str
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    channels: List[str] = Field(default_factory=list)
    status: str = "pending"  # pending, sent, failed


EVENT_TITLES = {
    "sod.critical_violation": "Critical Segregation of Duties violation",
    "access_request.high_risk": "High-risk access request submitted",
    "access_request.overdue": "Access request past its SLA",
    "anomaly.detected": "Suspicious activity detected",
    "jit_access.high_risk_request": "High-risk JIT access requested",
    "jit_access.auto_revoked": "JIT access automatically revoked",
}


class NotificationManager:
    """Turns governance events into notifications on configured channels."""

    def __init__(self, config: Optional[NotificationConfig] = None):
        self.channels: Dict[str, NotificationChannel] = {}
        self.timeout = aiohttp.ClientTimeout(total=(config or NotificationConfig()).timeout_seconds)
        if config:
            for index, url in enumerate(config.webhook_urls):
                self.setup_channel(WebhookChannel(name=f"webhook-{index}", url=url))
            if config.slack_webhook_url:
                self.setup_channel(SlackChannel(name="slack", webhook_url=config.slack_webhook_url))

    def setup_channel(self, channel: NotificationChannel) -> None:
        """Set up a notification channel."""
        self.channels[channel.name] = channel

    def attach(self, event_system: EventSystem) -> None:
        """Subscribe to every event published on ``event_system``."""
        event_system.on("*", self.handle_event)

    def build_notification(self, event_name: str, payload: Dict[str, Any]) -> Notification:
        severity = payload.get("severity") or payload.get("risk_level") or "info"
        if event_name == "sod.critical_violation":
            severity = "critical"
        elif event_name == "access_request.overdue":
            severity = "medium"

        summary = ", ".join(
            f"{key}={value}" for key, value in payload.items()
            if key != "tenant_id" and value is not None
        )
        return Notification(
            tenant_id=payload.get("tenant_id", ""),
            level=self._get_notification_level(str(severity)),
            title=EVENT_TITLES.get(event_name, event_name),
            message=summary,
            data={"event": event_name, **payload},
            channels=list(self.channels),
        )

    async def handle_event(self, event_name: str, payload: Dict[str, Any]) -> Notification:
        notification = self.build_notification(event_name, payload)
        await self.send_notification(notification)
        return notification

    async def send_notification(self, notification: Notification) -> None:
        """Send a notification through configured channels."""
        failures = 0
        for channel_name in notification.channels:
            channel = self.channels.get(channel_name)
            if channel is None or not channel.enabled:
                continue
            try:
                await self.deliver(channel, notification)
            except Exception:
                failures += 1
                logger.exception("Error sending notification through %s", channel_name)
        notification.status = "failed" if failures else "sent"

    async def deliver(self, channel: NotificationChannel, notification: Notification) -> None:
        if isinstance(channel, SlackChannel):
            await self._send_slack(channel, notification)
        elif isinstance(channel, WebhookChannel):
            await self._send_webhook(channel, notification)

    async def _send_slack(self, channel: SlackChannel, notification: Notification) -> None:
        body: Dict[str, Any] = {"text": f"*{notification.title}*\n{notification.message}"}
        if channel.channel:
            body["channel"] = channel.channel
        if channel.username:
            body["username"] = channel.username
        if channel.icon_emoji:
            body["icon_emoji"] = channel.icon_emoji
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(channel.webhook_url, json=body) as response:
                response.raise_for_status()

    async def _send_webhook(self, channel: WebhookChannel, notification: Notification) -> None:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.request(
                channel.method,
                channel.url,
                json=notification.model_dump(mode="json"),
                headers=channel.headers,
            ) as response:
                response.raise_for_status()

    def _get_notification_level(self, risk_level: str) -> str:
        """Convert risk level to notification level."""
        level_map = {
            "low": "info",
            "medium": "warning",
            "high": "error",
            "critical": "critical"
        }
        return level_map.get(risk_level.lower(), "info")
