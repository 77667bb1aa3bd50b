from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from access_governance.config import AccessRequestConfig, RiskScoringConfig
from access_governance.models import (
    ADMIN_ACCESS_TYPES,
    ConflictFinding,
    RiskAssessment,
    RiskLevel,
    SaasApp,
    Severity,
    TenantContext,
)
from access_governance.storage.base import GovernanceStore


class RiskEvaluator:
    """Scores requested access actions on a 0-100 scale."""

    def __init__(
        self,
        store: GovernanceStore,
        config: Optional[RiskScoringConfig] = None,
        sla_config: Optional[AccessRequestConfig] = None,
    ):
        self.store = store
        self.config = config or RiskScoringConfig()
        self.sla_config = sla_config or AccessRequestConfig()

        # Risk level thresholds, checked from the top down
        self.risk_thresholds = [
            (RiskLevel.CRITICAL, self.config.level_thresholds["critical"]),
            (RiskLevel.HIGH, self.config.level_thresholds["high"]),
            (RiskLevel.MEDIUM, self.config.level_thresholds["medium"]),
        ]

    def _calculate_app_risk(self, app: Optional[SaasApp]) -> Tuple[int, List[str]]:
        """Scale the app's own 0-100 rating down to 0-20."""
        if app is None:
            return 0, []
        factors = []
        if app.risk_score >= self.config.high_risk_app_threshold:
            factors.append(f"High-risk application: {app.name}")
        return app.risk_score // self.config.app_risk_divisor, factors

    def _calculate_access_type_risk(self, access_type: str) -> Tuple[int, List[str]]:
        if access_type in ADMIN_ACCESS_TYPES:
            return self.config.admin_access_points, ["Requesting admin access"]
        return 0, []

    def _calculate_conflict_risk(self, sod_conflicts: List[ConflictFinding]) -> Tuple[int, List[str]]:
        if not sod_conflicts:
            return 0, []

        score = len(sod_conflicts) * self.config.sod_conflict_points
        factors = [f"{len(sod_conflicts)} Segregation of Duties conflict(s)"]

        critical = sum(1 for c in sod_conflicts if c.severity == Severity.CRITICAL)
        if critical:
            score += critical * self.config.critical_conflict_points
            factors.append(f"{critical} critical SoD violation(s)")
        return score, factors

    def _calculate_entitlement_count_risk(self, entitlement_count: int) -> Tuple[int, List[str]]:
        if entitlement_count > self.config.entitlement_count_threshold:
            return (
                self.config.entitlement_count_points,
                [f"User has access to {entitlement_count} apps"],
            )
        return 0, []

    def level_for(self, score: int) -> RiskLevel:
        for level, threshold in self.risk_thresholds:
            if score >= threshold:
                return level
        return RiskLevel.LOW

    def compute(
        self,
        app: Optional[SaasApp],
        access_type: str,
        sod_conflicts: List[ConflictFinding],
        entitlement_count: int,
    ) -> RiskAssessment:
        """Additive score over the four factors, capped at the maximum."""
        score = 0
        factors: List[str] = []
        for points, reasons in (
            self._calculate_app_risk(app),
            self._calculate_access_type_risk(access_type),
            self._calculate_conflict_risk(sod_conflicts),
            self._calculate_entitlement_count_risk(entitlement_count),
        ):
            score += points
            factors.extend(reasons)

        score = max(0, min(score, self.config.max_score))
        return RiskAssessment(score=score, level=self.level_for(score), factors=factors)

    async def score(
        self,
        ctx: TenantContext,
        user_id: str,
        app_id: str,
        access_type: str,
        sod_conflicts: List[ConflictFinding],
    ) -> RiskAssessment:
        """Score a requested access action against the store's current state."""
        app = await self.store.get_app(ctx, app_id)
        entitlements = await self.store.list_user_entitlements(ctx, user_id)
        return self.compute(app, access_type, sod_conflicts, len(entitlements))

    def sla_due_at(self, level: RiskLevel, submitted_at: datetime) -> datetime:
        """High and critical requests get the longer review window."""
        if level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            hours = self.sla_config.high_risk_sla_hours
        else:
            hours = self.sla_config.standard_sla_hours
        return submitted_at + timedelta(hours=hours)
