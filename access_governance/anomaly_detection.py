"""Behavioural anomaly detection.

Every incoming activity event is checked against a fixed catalog of rules.
Some rules compare the event with a per-user baseline that is recomputed from
the last 30 days of activity on every call; others count recent events in a
trailing window. A detection is suppressed while an open detection of the
same type for the same user was raised within the dedup window.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import numpy as np
from pydantic import BaseModel

from access_governance.config import AnomalyConfig
from access_governance.events import ANOMALY_DETECTED, EventSink
from access_governance.exceptions import NotFound
from access_governance.models import (
    ADMIN_ACCESS_TYPES,
    ActivityEvent,
    ActivityEventType,
    AnomalyDetection,
    AnomalyStatus,
    AnomalyType,
    Severity,
    TenantContext,
    UserBaseline,
    utc_now,
)
from access_governance.reporting import AnomalyStatistics, build_anomaly_statistics
from access_governance.storage.base import GovernanceStore

logger = logging.getLogger(__name__)

WEEKEND_DAYS = (5, 6)


class AnomalyRule(BaseModel):
    """A single entry of the anomaly rule catalog."""
    type: AnomalyType
    name: str
    description: str
    severity: Severity
    confidence: int
    threshold: Optional[int] = None
    window_minutes: Optional[int] = None


ANOMALY_RULES: List[AnomalyRule] = [
    AnomalyRule(
        type=AnomalyType.AFTER_HOURS_ACCESS,
        name="After-Hours Access",
        description="User accessed system outside business hours (8am-6pm)",
        severity=Severity.MEDIUM,
        confidence=60,
    ),
    AnomalyRule(
        type=AnomalyType.WEEKEND_ACCESS,
        name="Weekend Access",
        description="User accessed system during weekend",
        severity=Severity.LOW,
        confidence=55,
    ),
    AnomalyRule(
        type=AnomalyType.GEOGRAPHIC_ANOMALY,
        name="Geographic Anomaly",
        description="User accessed from unusual geographic location",
        severity=Severity.HIGH,
        confidence=80,
    ),
    AnomalyRule(
        type=AnomalyType.BULK_DOWNLOAD,
        name="Bulk Data Download",
        description="User downloaded excessive amount of data",
        severity=Severity.CRITICAL,
        confidence=90,
        threshold=100,
        window_minutes=60,
    ),
    AnomalyRule(
        type=AnomalyType.RAPID_APP_SWITCHING,
        name="Rapid App Switching",
        description="User accessed many apps in short time period",
        severity=Severity.MEDIUM,
        confidence=70,
        threshold=10,
        window_minutes=60,
    ),
    AnomalyRule(
        type=AnomalyType.PRIVILEGE_ESCALATION,
        name="Privilege Escalation",
        description="User gained admin access to new application",
        severity=Severity.HIGH,
        confidence=85,
    ),
    AnomalyRule(
        type=AnomalyType.FAILED_LOGIN_SPIKE,
        name="Failed Login Spike",
        description="Multiple failed login attempts detected",
        severity=Severity.HIGH,
        confidence=95,
        threshold=5,
        window_minutes=10,
    ),
]


def normal_hours_window(login_hours: List[int], config: AnomalyConfig) -> tuple:
    """10th/90th percentile of login hours, clamped; business hours when data is thin."""
    if len(login_hours) < config.baseline_min_samples:
        return config.business_hours_start, config.business_hours_end

    hours = np.sort(np.asarray(login_hours, dtype=int))
    p10 = int(hours[int(len(hours) * 0.1)])
    p90 = int(hours[int(len(hours) * 0.9)])
    return max(config.normal_hours_floor, p10), min(config.normal_hours_ceiling, p90)


def normal_days_of_week(login_days: List[int], config: AnomalyConfig) -> List[int]:
    """Weekdays holding at least the configured share of login samples."""
    default = [0, 1, 2, 3, 4]
    if len(login_days) < config.baseline_min_samples:
        return default

    counts = np.bincount(np.asarray(login_days, dtype=int), minlength=7)
    days = [int(day) for day in np.flatnonzero(counts >= len(login_days) * config.normal_day_share)]
    return days or default


class AnomalyEvaluator:
    """Evaluates activity events against the anomaly rule catalog."""

    def __init__(
        self,
        store: GovernanceStore,
        events: EventSink,
        config: Optional[AnomalyConfig] = None,
        rules: Optional[List[AnomalyRule]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.events = events
        self.config = config or AnomalyConfig()
        self.rules = rules if rules is not None else ANOMALY_RULES
        self.clock = clock

    async def compute_baseline(
        self, ctx: TenantContext, user_id: str, as_of: Optional[datetime] = None
    ) -> UserBaseline:
        """Derive a user's behavioural baseline from the last 30 days."""
        as_of = as_of or self.clock()
        since = as_of - timedelta(days=self.config.baseline_days)

        entitlements = await self.store.list_user_entitlements(ctx, user_id)
        admin_app_ids = {e.app_id for e in entitlements if e.access_type in ADMIN_ACCESS_TYPES}

        logins = await self.store.list_activity_timestamps(
            ctx, user_id, ActivityEventType.LOGIN, since, as_of,
            limit=self.config.baseline_login_limit,
        )
        start, end = normal_hours_window([ts.hour for ts in logins], self.config)
        days = normal_days_of_week([ts.weekday() for ts in logins], self.config)

        locations = await self.store.distinct_activity_locations(
            ctx, user_id, since, as_of, limit=self.config.baseline_location_limit
        )

        return UserBaseline(
            user_id=user_id,
            normal_hours_start=start,
            normal_hours_end=end,
            normal_days=days,
            normal_locations=locations,
            average_apps_per_day=min(len(entitlements), 10) if entitlements else 5,
            admin_app_ids=admin_app_ids,
        )

    async def _recent_count(
        self, ctx: TenantContext, event: ActivityEvent, event_type: ActivityEventType, minutes: int
    ) -> int:
        # The event under evaluation is not in the log yet; count it here.
        prior = await self.store.count_activity(
            ctx, event.user_id, event_type, event.timestamp - timedelta(minutes=minutes), event.timestamp
        )
        return prior + (1 if event.event_type == event_type else 0)

    async def _check_rule(
        self, ctx: TenantContext, rule: AnomalyRule, event: ActivityEvent, baseline: UserBaseline
    ) -> bool:
        hour = event.timestamp.hour

        if rule.type == AnomalyType.AFTER_HOURS_ACCESS:
            return hour < self.config.business_hours_start or hour >= self.config.business_hours_end

        if rule.type == AnomalyType.WEEKEND_ACCESS:
            return event.timestamp.weekday() in WEEKEND_DAYS

        if rule.type == AnomalyType.GEOGRAPHIC_ANOMALY:
            if not event.location or not baseline.normal_locations:
                return False
            return event.location not in baseline.normal_locations

        if rule.type == AnomalyType.BULK_DOWNLOAD:
            if event.event_type != ActivityEventType.DOWNLOAD:
                return False
            count = await self._recent_count(ctx, event, ActivityEventType.DOWNLOAD, rule.window_minutes)
            return count >= rule.threshold

        if rule.type == AnomalyType.RAPID_APP_SWITCHING:
            apps = set(
                await self.store.distinct_activity_apps(
                    ctx, event.user_id,
                    event.timestamp - timedelta(minutes=rule.window_minutes),
                    event.timestamp,
                )
            )
            apps.add(event.app_id)
            return len(apps) >= rule.threshold

        if rule.type == AnomalyType.PRIVILEGE_ESCALATION:
            if event.event_type != ActivityEventType.ADMIN_ACCESS:
                return False
            return event.app_id not in baseline.admin_app_ids

        if rule.type == AnomalyType.FAILED_LOGIN_SPIKE:
            if event.event_type != ActivityEventType.FAILED_LOGIN:
                return False
            count = await self._recent_count(ctx, event, ActivityEventType.FAILED_LOGIN, rule.window_minutes)
            return count >= rule.threshold

        return False

    def _describe(self, rule: AnomalyRule, event: ActivityEvent) -> str:
        app = event.metadata.get("app_name", event.app_id)
        descriptions = {
            AnomalyType.AFTER_HOURS_ACCESS: (
                f"User accessed {app} at {event.timestamp:%H:%M} (outside business hours "
                f"{self.config.business_hours_start}:00-{self.config.business_hours_end}:00)"
            ),
            AnomalyType.WEEKEND_ACCESS: f"User accessed {app} on {event.timestamp:%Y-%m-%d} (weekend)",
            AnomalyType.GEOGRAPHIC_ANOMALY: f"User accessed {app} from {event.location} (new location)",
            AnomalyType.BULK_DOWNLOAD: f"User performed excessive downloads from {app}",
            AnomalyType.RAPID_APP_SWITCHING: "User accessed multiple applications in short time period",
            AnomalyType.PRIVILEGE_ESCALATION: f"User gained admin access to {app}",
            AnomalyType.FAILED_LOGIN_SPIKE: f"Multiple failed login attempts to {app}",
        }
        return descriptions.get(rule.type, rule.description)

    async def _is_duplicate(self, ctx: TenantContext, rule: AnomalyRule, event: ActivityEvent) -> bool:
        cutoff = event.timestamp - timedelta(minutes=self.config.dedup_window_minutes)
        open_anomalies = await self.store.list_anomalies(
            ctx, user_id=event.user_id, status=AnomalyStatus.OPEN
        )
        return any(a.anomaly_type == rule.type and a.detected_at > cutoff for a in open_anomalies)

    async def _create_anomaly(
        self, ctx: TenantContext, rule: AnomalyRule, event: ActivityEvent, baseline: UserBaseline
    ) -> Optional[AnomalyDetection]:
        if await self._is_duplicate(ctx, rule, event):
            logger.warning("Similar %s anomaly already open for user %s, skipping", rule.type.value, event.user_id)
            return None

        anomaly = AnomalyDetection(
            tenant_id=ctx.tenant_id,
            user_id=event.user_id,
            app_id=event.app_id,
            anomaly_type=rule.type,
            anomaly_name=rule.name,
            severity=rule.severity,
            confidence=min(rule.confidence, 100),
            description=self._describe(rule, event),
            detected_at=event.timestamp,
            event_data={
                "timestamp": event.timestamp.isoformat(),
                "ip_address": event.ip_address,
                "location": event.location,
                "event_type": event.event_type.value,
                **event.metadata,
            },
            baseline_data={
                "normal_hours": {
                    "start": baseline.normal_hours_start,
                    "end": baseline.normal_hours_end,
                },
                "normal_days": baseline.normal_days,
                "normal_locations": baseline.normal_locations,
            },
        )
        created = await self.store.create_anomaly(ctx, anomaly)
        logger.info("Created anomaly %s (%s) for user %s", created.id, rule.name, event.user_id)

        if rule.severity in (Severity.HIGH, Severity.CRITICAL):
            await self.events.emit(
                ANOMALY_DETECTED,
                {
                    "tenant_id": ctx.tenant_id,
                    "anomaly_id": created.id,
                    "user_id": event.user_id,
                    "anomaly_type": rule.type.value,
                    "severity": rule.severity.value,
                    "confidence": created.confidence,
                },
            )
        return created

    async def analyze_event(
        self, ctx: TenantContext, event: ActivityEvent, record: bool = True
    ) -> List[AnomalyDetection]:
        """Evaluate one activity event and return the detections it created.

        The event is appended to the activity log after evaluation when
        ``record`` is set, so it counts towards later evaluations but not
        towards its own baseline.
        """
        logger.debug("Analyzing %s event for user %s", event.event_type.value, event.user_id)
        baseline = await self.compute_baseline(ctx, event.user_id, as_of=event.timestamp)

        detections = []
        for rule in self.rules:
            if await self._check_rule(ctx, rule, event, baseline):
                created = await self._create_anomaly(ctx, rule, event, baseline)
                if created is not None:
                    detections.append(created)

        if record:
            await self.store.record_activity(ctx, event)
        return detections

    # Triage

    async def _require_anomaly(self, ctx: TenantContext, anomaly_id: str) -> AnomalyDetection:
        anomaly = await self.store.get_anomaly(ctx, anomaly_id)
        if anomaly is None:
            raise NotFound("Anomaly", anomaly_id)
        return anomaly

    async def investigate_anomaly(
        self, ctx: TenantContext, anomaly_id: str, actor_id: str, notes: str = ""
    ) -> AnomalyDetection:
        anomaly = await self._require_anomaly(ctx, anomaly_id)
        anomaly.status = AnomalyStatus.INVESTIGATING
        anomaly.investigated_by = actor_id
        anomaly.investigated_at = self.clock()
        anomaly.investigation_notes = notes
        logger.info("Anomaly %s marked as investigating", anomaly_id)
        return await self.store.update_anomaly(ctx, anomaly)

    async def resolve_anomaly(
        self,
        ctx: TenantContext,
        anomaly_id: str,
        actor_id: str,
        is_false_positive: bool,
        notes: str = "",
    ) -> AnomalyDetection:
        anomaly = await self._require_anomaly(ctx, anomaly_id)
        anomaly.status = AnomalyStatus.FALSE_POSITIVE if is_false_positive else AnomalyStatus.CONFIRMED
        anomaly.resolved_by = actor_id
        anomaly.resolved_at = self.clock()
        anomaly.resolution_notes = notes
        logger.info("Anomaly %s resolved as %s", anomaly_id, anomaly.status.value)
        return await self.store.update_anomaly(ctx, anomaly)

    async def get_user_anomalies(self, ctx: TenantContext, user_id: str) -> List[AnomalyDetection]:
        return await self.store.list_anomalies(ctx, user_id=user_id, status=AnomalyStatus.OPEN)

    async def get_open_anomalies(
        self, ctx: TenantContext, severity: Optional[Severity] = None
    ) -> List[AnomalyDetection]:
        return await self.store.list_anomalies(ctx, status=AnomalyStatus.OPEN, severity=severity)

    async def get_statistics(self, ctx: TenantContext, days: int = 30) -> AnomalyStatistics:
        anomalies = await self.store.list_anomalies(ctx)
        return build_anomaly_statistics(anomalies, self.clock(), days)
