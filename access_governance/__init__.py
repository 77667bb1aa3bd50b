"""Access Governance - SoD, access-request risk and anomaly detection for SaaS access."""

from access_governance.exceptions import (
    GovernanceError,
    InvalidArgument,
    InvalidState,
    NotFound,
    PermissionDenied,
)
from access_governance.models import (
    AccessRequest,
    AccessRequestSubmission,
    ActivityEvent,
    AnomalyDetection,
    Entitlement,
    JitAccessSession,
    RiskAssessment,
    RiskLevel,
    SaasApp,
    Severity,
    SodRule,
    SodViolation,
    TenantContext,
    User,
)
from access_governance.service import GovernanceService

__version__ = "1.0.0"
__all__ = [
    "AccessRequest",
    "AccessRequestSubmission",
    "ActivityEvent",
    "AnomalyDetection",
    "Entitlement",
    "JitAccessSession",
    "RiskAssessment",
    "RiskLevel",
    "SaasApp",
    "Severity",
    "SodRule",
    "SodViolation",
    "TenantContext",
    "User",
    "GovernanceError",
    "InvalidArgument",
    "InvalidState",
    "NotFound",
    "PermissionDenied",
    "GovernanceService",
]
