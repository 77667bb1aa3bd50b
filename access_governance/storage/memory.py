"""In-process implementation of ``GovernanceStore``.

Backs the FastAPI app when no database adapter is configured and seeds the
test-suite. Records are deep-copied on the way in and out so callers see
database-like semantics.
"""

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from access_governance.exceptions import DuplicateOpenViolation, InvalidState, NotFound
from access_governance.models import (
    AccessRequest,
    AccessRequestStatus,
    ActivityEvent,
    ActivityEventType,
    AnomalyDetection,
    AnomalyStatus,
    Entitlement,
    JitAccessSession,
    JitSessionStatus,
    SaasApp,
    Severity,
    SodRule,
    SodViolation,
    TenantContext,
    User,
    ViolationStatus,
)
from access_governance.storage.base import GovernanceStore


def _copy(record):
    return record.model_copy(deep=True) if record is not None else None


class InMemoryGovernanceStore(GovernanceStore):
    """Dictionary-backed store, partitioned by tenant id."""

    def __init__(self):
        self.users: Dict[str, Dict[str, User]] = defaultdict(dict)
        self.apps: Dict[str, Dict[str, SaasApp]] = defaultdict(dict)
        self.entitlements: Dict[str, Dict[Tuple[str, str], Entitlement]] = defaultdict(dict)
        self.sod_rules: Dict[str, Dict[str, SodRule]] = defaultdict(dict)
        self.sod_violations: Dict[str, Dict[str, SodViolation]] = defaultdict(dict)
        self.access_requests: Dict[str, Dict[str, AccessRequest]] = defaultdict(dict)
        self.anomalies: Dict[str, Dict[str, AnomalyDetection]] = defaultdict(dict)
        self.activity: Dict[str, List[ActivityEvent]] = defaultdict(list)
        self.jit_sessions: Dict[str, Dict[str, JitAccessSession]] = defaultdict(dict)
        self._violation_lock = asyncio.Lock()

    # Seeding helpers

    def add_user(self, user: User) -> User:
        self.users[user.tenant_id][user.id] = _copy(user)
        return user

    def add_app(self, app: SaasApp) -> SaasApp:
        self.apps[app.tenant_id][app.id] = _copy(app)
        return app

    def add_entitlement(self, entitlement: Entitlement) -> Entitlement:
        key = (entitlement.user_id, entitlement.app_id)
        self.entitlements[entitlement.tenant_id][key] = _copy(entitlement)
        return entitlement

    # Directory

    async def get_user(self, ctx: TenantContext, user_id: str) -> Optional[User]:
        return _copy(self.users[ctx.tenant_id].get(user_id))

    async def list_users(self, ctx: TenantContext) -> List[User]:
        return [_copy(u) for u in self.users[ctx.tenant_id].values()]

    async def get_app(self, ctx: TenantContext, app_id: str) -> Optional[SaasApp]:
        return _copy(self.apps[ctx.tenant_id].get(app_id))

    # Entitlements

    async def list_user_entitlements(self, ctx: TenantContext, user_id: str) -> List[Entitlement]:
        return [
            _copy(e) for (uid, _), e in self.entitlements[ctx.tenant_id].items()
            if uid == user_id
        ]

    async def get_entitlement(
        self, ctx: TenantContext, user_id: str, app_id: str
    ) -> Optional[Entitlement]:
        return _copy(self.entitlements[ctx.tenant_id].get((user_id, app_id)))

    async def grant_entitlement(self, ctx: TenantContext, entitlement: Entitlement) -> Entitlement:
        key = (entitlement.user_id, entitlement.app_id)
        if key in self.entitlements[ctx.tenant_id]:
            raise InvalidState(
                f"User {entitlement.user_id} already has access to app {entitlement.app_id}"
            )
        stored = entitlement.model_copy(update={"tenant_id": ctx.tenant_id}, deep=True)
        self.entitlements[ctx.tenant_id][key] = stored
        return _copy(stored)

    async def update_entitlement_type(
        self, ctx: TenantContext, user_id: str, app_id: str, access_type: str
    ) -> Entitlement:
        existing = self.entitlements[ctx.tenant_id].get((user_id, app_id))
        if existing is None:
            raise NotFound("Entitlement", f"{user_id}/{app_id}")
        existing.access_type = access_type
        return _copy(existing)

    async def revoke_entitlement(self, ctx: TenantContext, user_id: str, app_id: str) -> None:
        self.entitlements[ctx.tenant_id].pop((user_id, app_id), None)

    # SoD rules and violations

    async def create_sod_rule(self, ctx: TenantContext, rule: SodRule) -> SodRule:
        self.sod_rules[ctx.tenant_id][rule.id] = _copy(rule)
        return _copy(rule)

    async def get_sod_rule(self, ctx: TenantContext, rule_id: str) -> Optional[SodRule]:
        return _copy(self.sod_rules[ctx.tenant_id].get(rule_id))

    async def list_sod_rules(
        self,
        ctx: TenantContext,
        is_active: Optional[bool] = None,
        compliance_framework: Optional[str] = None,
    ) -> List[SodRule]:
        rules = self.sod_rules[ctx.tenant_id].values()
        return [
            _copy(r) for r in rules
            if (is_active is None or r.is_active == is_active)
            and (compliance_framework is None or r.compliance_framework == compliance_framework)
        ]

    async def update_sod_rule(self, ctx: TenantContext, rule: SodRule) -> SodRule:
        if rule.id not in self.sod_rules[ctx.tenant_id]:
            raise NotFound("SoD rule", rule.id)
        self.sod_rules[ctx.tenant_id][rule.id] = _copy(rule)
        return _copy(rule)

    async def delete_sod_rule(self, ctx: TenantContext, rule_id: str) -> None:
        self.sod_rules[ctx.tenant_id].pop(rule_id, None)

    async def create_sod_violation(self, ctx: TenantContext, violation: SodViolation) -> SodViolation:
        async with self._violation_lock:
            if violation.status == ViolationStatus.OPEN:
                for existing in self.sod_violations[ctx.tenant_id].values():
                    if (
                        existing.status == ViolationStatus.OPEN
                        and existing.user_id == violation.user_id
                        and existing.sod_rule_id == violation.sod_rule_id
                    ):
                        raise DuplicateOpenViolation(
                            ctx.tenant_id, violation.user_id, violation.sod_rule_id
                        )
            self.sod_violations[ctx.tenant_id][violation.id] = _copy(violation)
        return _copy(violation)

    async def get_sod_violation(self, ctx: TenantContext, violation_id: str) -> Optional[SodViolation]:
        return _copy(self.sod_violations[ctx.tenant_id].get(violation_id))

    async def list_sod_violations(
        self,
        ctx: TenantContext,
        user_id: Optional[str] = None,
        sod_rule_id: Optional[str] = None,
        status: Optional[ViolationStatus] = None,
        severity: Optional[Severity] = None,
    ) -> List[SodViolation]:
        return [
            _copy(v) for v in self.sod_violations[ctx.tenant_id].values()
            if (user_id is None or v.user_id == user_id)
            and (sod_rule_id is None or v.sod_rule_id == sod_rule_id)
            and (status is None or v.status == status)
            and (severity is None or v.severity == severity)
        ]

    async def update_sod_violation(self, ctx: TenantContext, violation: SodViolation) -> SodViolation:
        if violation.id not in self.sod_violations[ctx.tenant_id]:
            raise NotFound("SoD violation", violation.id)
        self.sod_violations[ctx.tenant_id][violation.id] = _copy(violation)
        return _copy(violation)

    async def delete_sod_violation(self, ctx: TenantContext, violation_id: str) -> None:
        self.sod_violations[ctx.tenant_id].pop(violation_id, None)

    # Access requests

    async def create_access_request(self, ctx: TenantContext, request: AccessRequest) -> AccessRequest:
        self.access_requests[ctx.tenant_id][request.id] = _copy(request)
        return _copy(request)

    async def get_access_request(self, ctx: TenantContext, request_id: str) -> Optional[AccessRequest]:
        return _copy(self.access_requests[ctx.tenant_id].get(request_id))

    async def list_access_requests(
        self,
        ctx: TenantContext,
        status: Optional[AccessRequestStatus] = None,
        requester_id: Optional[str] = None,
        approver_id: Optional[str] = None,
    ) -> List[AccessRequest]:
        return [
            _copy(r) for r in self.access_requests[ctx.tenant_id].values()
            if (status is None or r.status == status)
            and (requester_id is None or r.requester_id == requester_id)
            and (approver_id is None or r.approver_id == approver_id)
        ]

    async def update_access_request(self, ctx: TenantContext, request: AccessRequest) -> AccessRequest:
        if request.id not in self.access_requests[ctx.tenant_id]:
            raise NotFound("Access request", request.id)
        self.access_requests[ctx.tenant_id][request.id] = _copy(request)
        return _copy(request)

    # Anomalies and activity log

    async def create_anomaly(self, ctx: TenantContext, anomaly: AnomalyDetection) -> AnomalyDetection:
        self.anomalies[ctx.tenant_id][anomaly.id] = _copy(anomaly)
        return _copy(anomaly)

    async def get_anomaly(self, ctx: TenantContext, anomaly_id: str) -> Optional[AnomalyDetection]:
        return _copy(self.anomalies[ctx.tenant_id].get(anomaly_id))

    async def list_anomalies(
        self,
        ctx: TenantContext,
        user_id: Optional[str] = None,
        status: Optional[AnomalyStatus] = None,
        severity: Optional[Severity] = None,
    ) -> List[AnomalyDetection]:
        return [
            _copy(a) for a in self.anomalies[ctx.tenant_id].values()
            if (user_id is None or a.user_id == user_id)
            and (status is None or a.status == status)
            and (severity is None or a.severity == severity)
        ]

    async def update_anomaly(self, ctx: TenantContext, anomaly: AnomalyDetection) -> AnomalyDetection:
        if anomaly.id not in self.anomalies[ctx.tenant_id]:
            raise NotFound("Anomaly", anomaly.id)
        self.anomalies[ctx.tenant_id][anomaly.id] = _copy(anomaly)
        return _copy(anomaly)

    async def record_activity(self, ctx: TenantContext, event: ActivityEvent) -> None:
        self.activity[ctx.tenant_id].append(_copy(event))

    def _user_activity(
        self, ctx: TenantContext, user_id: str, since: datetime, until: Optional[datetime]
    ) -> List[ActivityEvent]:
        return [
            e for e in self.activity[ctx.tenant_id]
            if e.user_id == user_id
            and e.timestamp >= since
            and (until is None or e.timestamp <= until)
        ]

    async def count_activity(
        self,
        ctx: TenantContext,
        user_id: str,
        event_type: ActivityEventType,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> int:
        return sum(
            1 for e in self._user_activity(ctx, user_id, since, until)
            if e.event_type == event_type
        )

    async def distinct_activity_apps(
        self, ctx: TenantContext, user_id: str, since: datetime, until: Optional[datetime] = None
    ) -> List[str]:
        apps: List[str] = []
        for event in self._user_activity(ctx, user_id, since, until):
            if event.app_id not in apps:
                apps.append(event.app_id)
        return apps

    async def distinct_activity_locations(
        self,
        ctx: TenantContext,
        user_id: str,
        since: datetime,
        until: Optional[datetime] = None,
        limit: int = 20,
    ) -> List[str]:
        locations: List[str] = []
        for event in self._user_activity(ctx, user_id, since, until):
            if event.location and event.location not in locations:
                locations.append(event.location)
                if len(locations) >= limit:
                    break
        return locations

    async def list_activity_timestamps(
        self,
        ctx: TenantContext,
        user_id: str,
        event_type: ActivityEventType,
        since: datetime,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[datetime]:
        timestamps = sorted(
            (e.timestamp for e in self._user_activity(ctx, user_id, since, until)
             if e.event_type == event_type),
            reverse=True,
        )
        return timestamps[:limit]

    # JIT sessions

    async def create_jit_session(self, ctx: TenantContext, session: JitAccessSession) -> JitAccessSession:
        self.jit_sessions[ctx.tenant_id][session.id] = _copy(session)
        return _copy(session)

    async def get_jit_session(self, ctx: TenantContext, session_id: str) -> Optional[JitAccessSession]:
        return _copy(self.jit_sessions[ctx.tenant_id].get(session_id))

    async def list_jit_sessions(
        self,
        ctx: TenantContext,
        user_id: Optional[str] = None,
        status: Optional[JitSessionStatus] = None,
        approver_id: Optional[str] = None,
    ) -> List[JitAccessSession]:
        return [
            _copy(s) for s in self.jit_sessions[ctx.tenant_id].values()
            if (user_id is None or s.user_id == user_id)
            and (status is None or s.status == status)
            and (approver_id is None or s.approver_id == approver_id)
        ]

    async def update_jit_session(self, ctx: TenantContext, session: JitAccessSession) -> JitAccessSession:
        if session.id not in self.jit_sessions[ctx.tenant_id]:
            raise NotFound("JIT access session", session.id)
        self.jit_sessions[ctx.tenant_id][session.id] = _copy(session)
        return _copy(session)

    async def list_expired_jit_sessions(self, ctx: TenantContext, now: datetime) -> List[JitAccessSession]:
        return [
            _copy(s) for s in self.jit_sessions[ctx.tenant_id].values()
            if s.status == JitSessionStatus.ACTIVE and s.expires_at <= now
        ]
