from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class Severity(str, Enum):
    """Severity of an SoD rule, violation or anomaly."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RiskLevel(str, Enum):
    """Risk levels for access requests."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


ADMIN_ACCESS_TYPES = frozenset({"admin", "owner"})


class ViolationStatus(str, Enum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    REMEDIATED = "remediated"
    ACCEPTED = "accepted"
    EXEMPTED = "exempted"
    RESOLVED = "resolved"


class DurationType(str, Enum):
    PERMANENT = "permanent"
    TEMPORARY = "temporary"


class AccessRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    CANCELLED = "cancelled"
    PROVISIONED = "provisioned"


class ReviewDecision(str, Enum):
    APPROVED = "approved"
    DENIED = "denied"


class ProvisioningStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class AnomalyType(str, Enum):
    """Types of behavioural anomalies."""
    AFTER_HOURS_ACCESS = "after_hours_access"
    WEEKEND_ACCESS = "weekend_access"
    GEOGRAPHIC_ANOMALY = "geographic_anomaly"
    BULK_DOWNLOAD = "bulk_download"
    RAPID_APP_SWITCHING = "rapid_app_switching"
    PRIVILEGE_ESCALATION = "privilege_escalation"
    FAILED_LOGIN_SPIKE = "failed_login_spike"


class AnomalyStatus(str, Enum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    CONFIRMED = "confirmed"
    FALSE_POSITIVE = "false_positive"


class ActivityEventType(str, Enum):
    LOGIN = "login"
    ACCESS = "access"
    DOWNLOAD = "download"
    ADMIN_ACCESS = "admin_access"
    FAILED_LOGIN = "failed_login"


class JitSessionStatus(str, Enum):
    PENDING_APPROVAL = "pending_approval"
    PENDING_MFA = "pending_mfa"
    ACTIVE = "active"
    DENIED = "denied"
    EXPIRED = "expired"
    REVOKED = "revoked"


class TenantContext(BaseModel):
    """Tenant scope threaded through every governance call."""
    model_config = ConfigDict(frozen=True)

    tenant_id: str


class User(BaseModel):
    """Represents a user in a tenant directory."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(default_factory=new_id)
    tenant_id: str
    name: str
    email: str
    department: Optional[str] = None
    manager_id: Optional[str] = None


class SaasApp(BaseModel):
    """Represents a SaaS application with its own 0-100 risk rating."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(default_factory=new_id)
    tenant_id: str
    name: str
    risk_score: int = Field(default=0, ge=0, le=100)


class Entitlement(BaseModel):
    """A user's access to an application."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    tenant_id: str
    user_id: str
    app_id: str
    access_type: str = "member"
    granted_at: datetime = Field(default_factory=utc_now)
    expires_at: Optional[datetime] = None
    business_justification: Optional[str] = None


class SodRule(BaseModel):
    """A symmetric conflict between two applications."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(default_factory=new_id)
    tenant_id: str
    name: str
    severity: Severity
    app_id1: str
    app_name1: str = ""
    app_id2: str
    app_name2: str = ""
    rationale: str = ""
    compliance_framework: Optional[str] = None
    exempted_user_ids: Set[str] = Field(default_factory=set)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def other_side(self, app_id: str) -> Optional[str]:
        if app_id == self.app_id1:
            return self.app_id2
        if app_id == self.app_id2:
            return self.app_id1
        return None

    def app_name(self, app_id: str) -> str:
        return self.app_name1 if app_id == self.app_id1 else self.app_name2


class SodRuleDefinition(BaseModel):
    """Input for creating an SoD rule."""
    name: str
    app_id1: str
    app_id2: str
    severity: Severity
    rationale: str = ""
    compliance_framework: Optional[str] = None
    exempted_user_ids: Set[str] = Field(default_factory=set)


class SodRuleUpdate(BaseModel):
    """Partial update of an SoD rule; unset fields are left alone."""
    name: Optional[str] = None
    severity: Optional[Severity] = None
    rationale: Optional[str] = None
    compliance_framework: Optional[str] = None
    exempted_user_ids: Optional[Set[str]] = None


class SodViolation(BaseModel):
    """A user holding both sides of an active SoD rule."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(default_factory=new_id)
    tenant_id: str
    user_id: str
    user_name: Optional[str] = None
    sod_rule_id: str
    sod_rule_name: str = ""
    app_id1: str
    app_name1: str = ""
    app_id2: str
    app_name2: str = ""
    severity: Severity
    rationale: str = ""
    compliance_framework: Optional[str] = None
    status: ViolationStatus = ViolationStatus.OPEN
    detected_at: datetime = Field(default_factory=utc_now)
    resolved_at: Optional[datetime] = None
    remediated_by: Optional[str] = None
    remediation_action: Optional[str] = None
    accepted_by: Optional[str] = None
    acceptance_justification: Optional[str] = None
    resolution_notes: Optional[str] = None


class ConflictFinding(BaseModel):
    """A conflict a candidate grant would create with an app already held."""
    rule_id: str
    rule_name: str
    severity: Severity
    conflicting_app_id: str
    conflicting_app: str
    rationale: str = ""
    compliance_framework: Optional[str] = None


class ScanResult(BaseModel):
    total_users: int = 0
    violations_found: int = 0
    counts_by_severity: Dict[Severity, int] = Field(
        default_factory=lambda: {severity: 0 for severity in Severity}
    )
    failed_users: int = 0


class RiskAssessment(BaseModel):
    """Risk score for a requested access action."""
    score: int = Field(ge=0, le=100)
    level: RiskLevel
    factors: List[str] = Field(default_factory=list)


class AccessRequestSubmission(BaseModel):
    requester_id: str
    app_id: str
    access_type: str = "member"
    justification: str = ""
    duration_type: DurationType = DurationType.PERMANENT
    duration_hours: Optional[int] = None


class AccessRequest(BaseModel):
    """A self-service request for application access."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(default_factory=new_id)
    tenant_id: str
    requester_id: str
    requester_name: Optional[str] = None
    app_id: str
    app_name: Optional[str] = None
    access_type: str
    justification: str = ""
    duration_type: DurationType = DurationType.PERMANENT
    duration_hours: Optional[int] = None
    expires_at: Optional[datetime] = None
    status: AccessRequestStatus = AccessRequestStatus.PENDING
    approver_id: Optional[str] = None
    approver_name: Optional[str] = None
    approval_notes: Optional[str] = None
    risk_score: int = 0
    risk_level: RiskLevel = RiskLevel.LOW
    risk_factors: List[str] = Field(default_factory=list)
    sod_conflicts: List[ConflictFinding] = Field(default_factory=list)
    submitted_at: datetime = Field(default_factory=utc_now)
    sla_due_at: datetime
    is_overdue: bool = False
    reviewed_at: Optional[datetime] = None
    provisioning_status: Optional[ProvisioningStatus] = None
    provisioning_error: Optional[str] = None
    provisioned_at: Optional[datetime] = None


class ActivityEvent(BaseModel):
    """An observed user activity, also stored as an activity-log record."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    user_id: str
    app_id: str
    event_type: ActivityEventType
    timestamp: datetime = Field(default_factory=utc_now)
    ip_address: Optional[str] = None
    location: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class UserBaseline(BaseModel):
    """Behavioural baseline derived from recent activity. Never persisted."""
    user_id: str
    normal_hours_start: int = 8
    normal_hours_end: int = 18
    # Python weekday numbering: Monday is 0.
    normal_days: List[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4])
    normal_locations: List[str] = Field(default_factory=list)
    average_apps_per_day: int = 5
    admin_app_ids: Set[str] = Field(default_factory=set)

    @property
    def has_admin_access(self) -> bool:
        return bool(self.admin_app_ids)


class AnomalyDetection(BaseModel):
    """A recorded behavioural anomaly."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(default_factory=new_id)
    tenant_id: str
    user_id: str
    app_id: str
    anomaly_type: AnomalyType
    anomaly_name: str = ""
    severity: Severity
    confidence: int = Field(ge=0, le=100)
    description: str = ""
    detected_at: datetime
    event_data: Dict[str, Any] = Field(default_factory=dict)
    baseline_data: Dict[str, Any] = Field(default_factory=dict)
    status: AnomalyStatus = AnomalyStatus.OPEN
    investigated_by: Optional[str] = None
    investigated_at: Optional[datetime] = None
    investigation_notes: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None


class JitAccessSubmission(BaseModel):
    user_id: str
    app_id: str
    access_type: str = "admin"
    justification: str = ""
    duration_hours: int = Field(default=4, gt=0)
    requires_mfa: bool = True


class JitAccessSession(BaseModel):
    """A temporary privilege elevation."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(default_factory=new_id)
    tenant_id: str
    user_id: str
    user_name: Optional[str] = None
    app_id: str
    app_name: Optional[str] = None
    access_type: str
    previous_access_type: Optional[str] = None
    justification: str = ""
    duration_hours: int
    starts_at: datetime
    expires_at: datetime
    requires_approval: bool = False
    requires_mfa: bool = True
    mfa_verified: bool = False
    status: JitSessionStatus
    approver_id: Optional[str] = None
    approval_notes: Optional[str] = None
    approved_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    provisioning_status: Optional[ProvisioningStatus] = None
    provisioning_error: Optional[str] = None
    extension_justification: Optional[str] = None
    extended_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    revocation_reason: Optional[str] = None
