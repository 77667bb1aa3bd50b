from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

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


class GovernanceStore(ABC):
    """Persistent record store used by the governance engine.

    Every method is scoped by the ``TenantContext`` it receives; an
    implementation must never return or modify records of another tenant.
    Records are returned as copies; changes are persisted through the
    ``update_*`` methods.
    """

    # Directory

    @abstractmethod
    async def get_user(self, ctx: TenantContext, user_id: str) -> Optional[User]:
        """Fetch a single user."""
        pass

    @abstractmethod
    async def list_users(self, ctx: TenantContext) -> List[User]:
        """Fetch all users of the tenant."""
        pass

    @abstractmethod
    async def get_app(self, ctx: TenantContext, app_id: str) -> Optional[SaasApp]:
        """Fetch a single SaaS application."""
        pass

    # Entitlements

    @abstractmethod
    async def list_user_entitlements(self, ctx: TenantContext, user_id: str) -> List[Entitlement]:
        """Get the active entitlements held by a user."""
        pass

    @abstractmethod
    async def get_entitlement(
        self, ctx: TenantContext, user_id: str, app_id: str
    ) -> Optional[Entitlement]:
        """Get the active entitlement of a user on an app."""
        pass

    @abstractmethod
    async def grant_entitlement(self, ctx: TenantContext, entitlement: Entitlement) -> Entitlement:
        """Create an entitlement. At most one per (tenant, user, app)."""
        pass

    @abstractmethod
    async def update_entitlement_type(
        self, ctx: TenantContext, user_id: str, app_id: str, access_type: str
    ) -> Entitlement:
        """Change the access type of an existing entitlement."""
        pass

    @abstractmethod
    async def revoke_entitlement(self, ctx: TenantContext, user_id: str, app_id: str) -> None:
        """Remove a user's entitlement on an app. Missing entitlements are ignored."""
        pass

    # SoD rules and violations

    @abstractmethod
    async def create_sod_rule(self, ctx: TenantContext, rule: SodRule) -> SodRule:
        pass

    @abstractmethod
    async def get_sod_rule(self, ctx: TenantContext, rule_id: str) -> Optional[SodRule]:
        pass

    @abstractmethod
    async def list_sod_rules(
        self,
        ctx: TenantContext,
        is_active: Optional[bool] = None,
        compliance_framework: Optional[str] = None,
    ) -> List[SodRule]:
        pass

    @abstractmethod
    async def update_sod_rule(self, ctx: TenantContext, rule: SodRule) -> SodRule:
        pass

    @abstractmethod
    async def delete_sod_rule(self, ctx: TenantContext, rule_id: str) -> None:
        pass

    @abstractmethod
    async def create_sod_violation(self, ctx: TenantContext, violation: SodViolation) -> SodViolation:
        """Persist a violation.

        Raises:
            DuplicateOpenViolation: an open violation already exists for the
                same (tenant, user, rule). Implementations must make this
                check atomic with the insert.
        """
        pass

    @abstractmethod
    async def get_sod_violation(self, ctx: TenantContext, violation_id: str) -> Optional[SodViolation]:
        pass

    @abstractmethod
    async def list_sod_violations(
        self,
        ctx: TenantContext,
        user_id: Optional[str] = None,
        sod_rule_id: Optional[str] = None,
        status: Optional[ViolationStatus] = None,
        severity: Optional[Severity] = None,
    ) -> List[SodViolation]:
        pass

    @abstractmethod
    async def update_sod_violation(self, ctx: TenantContext, violation: SodViolation) -> SodViolation:
        pass

    @abstractmethod
    async def delete_sod_violation(self, ctx: TenantContext, violation_id: str) -> None:
        pass

    # Access requests

    @abstractmethod
    async def create_access_request(self, ctx: TenantContext, request: AccessRequest) -> AccessRequest:
        pass

    @abstractmethod
    async def get_access_request(self, ctx: TenantContext, request_id: str) -> Optional[AccessRequest]:
        pass

    @abstractmethod
    async def list_access_requests(
        self,
        ctx: TenantContext,
        status: Optional[AccessRequestStatus] = None,
        requester_id: Optional[str] = None,
        approver_id: Optional[str] = None,
    ) -> List[AccessRequest]:
        pass

    @abstractmethod
    async def update_access_request(self, ctx: TenantContext, request: AccessRequest) -> AccessRequest:
        pass

    # Anomalies and activity log

    @abstractmethod
    async def create_anomaly(self, ctx: TenantContext, anomaly: AnomalyDetection) -> AnomalyDetection:
        pass

    @abstractmethod
    async def get_anomaly(self, ctx: TenantContext, anomaly_id: str) -> Optional[AnomalyDetection]:
        pass

    @abstractmethod
    async def list_anomalies(
        self,
        ctx: TenantContext,
        user_id: Optional[str] = None,
        status: Optional[AnomalyStatus] = None,
        severity: Optional[Severity] = None,
    ) -> List[AnomalyDetection]:
        pass

    @abstractmethod
    async def update_anomaly(self, ctx: TenantContext, anomaly: AnomalyDetection) -> AnomalyDetection:
        pass

    @abstractmethod
    async def record_activity(self, ctx: TenantContext, event: ActivityEvent) -> None:
        """Append an event to the tenant's activity log."""
        pass

    @abstractmethod
    async def count_activity(
        self,
        ctx: TenantContext,
        user_id: str,
        event_type: ActivityEventType,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> int:
        """Count events of one type by a user in [since, until]."""
        pass

    @abstractmethod
    async def distinct_activity_apps(
        self, ctx: TenantContext, user_id: str, since: datetime, until: Optional[datetime] = None
    ) -> List[str]:
        """Distinct app ids a user touched in [since, until]."""
        pass

    @abstractmethod
    async def distinct_activity_locations(
        self,
        ctx: TenantContext,
        user_id: str,
        since: datetime,
        until: Optional[datetime] = None,
        limit: int = 20,
    ) -> List[str]:
        """Distinct locations seen for a user in [since, until]."""
        pass

    @abstractmethod
    async def list_activity_timestamps(
        self,
        ctx: TenantContext,
        user_id: str,
        event_type: ActivityEventType,
        since: datetime,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[datetime]:
        """Most recent event timestamps of one type by a user."""
        pass

    # JIT sessions

    @abstractmethod
    async def create_jit_session(self, ctx: TenantContext, session: JitAccessSession) -> JitAccessSession:
        pass

    @abstractmethod
    async def get_jit_session(self, ctx: TenantContext, session_id: str) -> Optional[JitAccessSession]:
        pass

    @abstractmethod
    async def list_jit_sessions(
        self,
        ctx: TenantContext,
        user_id: Optional[str] = None,
        status: Optional[JitSessionStatus] = None,
        approver_id: Optional[str] = None,
    ) -> List[JitAccessSession]:
        pass

    @abstractmethod
    async def update_jit_session(self, ctx: TenantContext, session: JitAccessSession) -> JitAccessSession:
        pass

    @abstractmethod
    async def list_expired_jit_sessions(self, ctx: TenantContext, now: datetime) -> List[JitAccessSession]:
        """Active sessions whose ``expires_at`` is at or before ``now``."""
        pass
