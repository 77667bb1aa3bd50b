import pytest

from access_governance.config import NotificationConfig
from access_governance.events import EventSystem
from access_governance.notifications import (
    NotificationManager,
    SlackChannel,
    WebhookChannel,
)


class RecordingManager(NotificationManager):
    """Delivers into a list instead of over HTTP."""

    def __init__(self, config=None, fail_on=()):
        super().__init__(config)
        self.delivered = []
        self.fail_on = set(fail_on)

    async def deliver(self, channel, notification):
        if channel.name in self.fail_on:
            raise ConnectionError(f"{channel.name} unreachable")
        self.delivered.append((channel.name, notification))


def test_channels_come_from_config():
    manager = NotificationManager(
        NotificationConfig(
            webhook_urls=["https://hooks.example.com/a", "https://hooks.example.com/b"],
            slack_webhook_url="https://hooks.slack.com/services/T000/B000/XXX",
        )
    )

    assert set(manager.channels) == {"webhook-0", "webhook-1", "slack"}
    assert isinstance(manager.channels["slack"], SlackChannel)
    assert manager.channels["webhook-1"].url == "https://hooks.example.com/b"


def test_no_channels_by_default():
    assert NotificationManager().channels == {}


@pytest.mark.parametrize(
    "event_name,payload,level",
    [
        ("sod.critical_violation", {"tenant_id": "t"}, "critical"),
        ("access_request.high_risk", {"tenant_id": "t", "risk_level": "high"}, "error"),
        ("access_request.overdue", {"tenant_id": "t"}, "warning"),
        ("anomaly.detected", {"tenant_id": "t", "severity": "critical"}, "critical"),
        ("jit_access.auto_revoked", {"tenant_id": "t"}, "info"),
    ],
)
def test_notification_level(event_name, payload, level):
    notification = NotificationManager().build_notification(event_name, payload)

    assert notification.level == level
    assert notification.tenant_id == "t"
    assert notification.data["event"] == event_name


def test_notification_message_summarises_payload():
    notification = NotificationManager().build_notification(
        "access_request.overdue",
        {"tenant_id": "t", "request_id": "r1", "approver_name": None, "app_name": "GitHub"},
    )

    assert notification.title == "Access request past its SLA"
    assert notification.message == "request_id=r1, app_name=GitHub"


@pytest.mark.asyncio
async def test_failed_channel_does_not_raise():
    manager = RecordingManager(fail_on={"broken"})
    manager.setup_channel(WebhookChannel(name="broken", url="https://broken.example.com"))
    manager.setup_channel(WebhookChannel(name="ok", url="https://ok.example.com"))

    notification = await manager.handle_event("sod.critical_violation", {"tenant_id": "t"})

    assert notification.status == "failed"
    assert [name for name, _ in manager.delivered] == ["ok"]


@pytest.mark.asyncio
async def test_disabled_channel_is_skipped():
    manager = RecordingManager()
    manager.setup_channel(WebhookChannel(name="muted", url="https://muted.example.com", enabled=False))

    notification = await manager.handle_event("anomaly.detected", {"tenant_id": "t"})

    assert notification.status == "sent"
    assert manager.delivered == []


@pytest.mark.asyncio
async def test_attached_manager_receives_governance_events():
    events = EventSystem()
    manager = RecordingManager()
    manager.setup_channel(SlackChannel(name="slack", webhook_url="https://hooks.slack.com/x"))
    manager.attach(events)

    await events.emit("jit_access.high_risk_request", {"tenant_id": "t", "app_name": "AWS Console"})

    assert len(manager.delivered) == 1
    channel_name, notification = manager.delivered[0]
    assert channel_name == "slack"
    assert notification.title == "High-risk JIT access requested"
