from datetime import datetime, timedelta
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from access_governance.models import (
    AnomalyDetection,
    AnomalyStatus,
    Severity,
    SodRule,
    SodViolation,
    ViolationStatus,
)

COMPLIANT = "Compliant"
NON_COMPLIANT = "Non-Compliant"


class ComplianceReport(BaseModel):
    """Aggregate SoD posture, optionally for one compliance framework."""
    framework: str = "All"
    total_rules: int
    active_rules: int
    total_violations: int
    open_violations: int
    violations_by_severity: Dict[Severity, int]
    remediated_violations: int
    accepted_violations: int
    compliance_status: str


class AnomalyStatistics(BaseModel):
    period: str
    total_detected: int
    by_status: Dict[AnomalyStatus, int]
    by_severity: Dict[Severity, int]
    by_type: Dict[str, int] = Field(default_factory=dict)
    false_positive_rate: str


def build_compliance_report(
    rules: List[SodRule],
    violations: List[SodViolation],
    framework: Optional[str] = None,
) -> ComplianceReport:
    """Build the compliance report.

    Only open high and critical violations make a tenant non-compliant;
    open medium and low violations are reported but do not affect status.
    """
    if framework:
        rules = [r for r in rules if r.compliance_framework == framework]
        violations = [v for v in violations if v.compliance_framework == framework]

    open_violations = [v for v in violations if v.status == ViolationStatus.OPEN]
    by_severity = {severity: 0 for severity in Severity}
    for violation in open_violations:
        by_severity[violation.severity] += 1

    compliant = by_severity[Severity.CRITICAL] == 0 and by_severity[Severity.HIGH] == 0

    return ComplianceReport(
        framework=framework or "All",
        total_rules=len(rules),
        active_rules=sum(1 for r in rules if r.is_active),
        total_violations=len(violations),
        open_violations=len(open_violations),
        violations_by_severity=by_severity,
        remediated_violations=sum(1 for v in violations if v.status == ViolationStatus.REMEDIATED),
        accepted_violations=sum(
            1 for v in violations
            if v.status in (ViolationStatus.ACCEPTED, ViolationStatus.EXEMPTED)
        ),
        compliance_status=COMPLIANT if compliant else NON_COMPLIANT,
    )


def build_anomaly_statistics(
    anomalies: List[AnomalyDetection], now: datetime, days: int = 30
) -> AnomalyStatistics:
    """Summarise detections from the last ``days`` days."""
    cutoff = now - timedelta(days=days)
    recent = [a for a in anomalies if a.detected_at >= cutoff]

    by_status = {status: 0 for status in AnomalyStatus}
    by_severity = {severity: 0 for severity in Severity}
    by_type: Dict[str, int] = {}
    for anomaly in recent:
        by_status[anomaly.status] += 1
        by_severity[anomaly.severity] += 1
        by_type[anomaly.anomaly_type.value] = by_type.get(anomaly.anomaly_type.value, 0) + 1

    resolved = by_status[AnomalyStatus.CONFIRMED] + by_status[AnomalyStatus.FALSE_POSITIVE]
    rate = (by_status[AnomalyStatus.FALSE_POSITIVE] / resolved) * 100 if resolved else 0.0

    return AnomalyStatistics(
        period=f"Last {days} days",
        total_detected=len(recent),
        by_status=by_status,
        by_severity=by_severity,
        by_type=by_type,
        false_positive_rate=f"{rate:.2f}%",
    )
