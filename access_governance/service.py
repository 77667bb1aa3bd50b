from datetime import datetime
from typing import Callable, List, Optional

from pydantic import BaseModel

from access_governance.access_requests import AccessRequestWorkflow
from access_governance.anomaly_detection import AnomalyEvaluator
from access_governance.config import GovernanceConfig
from access_governance.events import EventSink, EventSystem
from access_governance.exceptions import InvalidArgument
from access_governance.jit_access import JitAccessService
from access_governance.models import (
    ConflictFinding,
    RiskAssessment,
    Severity,
    TenantContext,
    utc_now,
)
from access_governance.risk_evaluation import RiskEvaluator
from access_governance.sod import SodEngine
from access_governance.storage.base import GovernanceStore
from access_governance.storage.memory import InMemoryGovernanceStore


class AccessPreview(BaseModel):
    """Conflicts and risk of a grant, without creating a request."""
    sod_conflicts: List[ConflictFinding]
    risk: RiskAssessment
    sla_due_at: datetime


def parse_severity(value: Optional[str]) -> Optional[Severity]:
    if value is None:
        return None
    try:
        return Severity(value.lower())
    except ValueError:
        raise InvalidArgument(f"Unknown severity: {value}") from None


class GovernanceService:
    """Wires the governance components around one store and one event sink."""

    def __init__(
        self,
        store: Optional[GovernanceStore] = None,
        events: Optional[EventSink] = None,
        config: Optional[GovernanceConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config or GovernanceConfig()
        self.store = store or InMemoryGovernanceStore()
        self.events = events or EventSystem()
        self.clock = clock

        self.sod = SodEngine(self.store, self.events, clock=clock)
        self.risk_evaluator = RiskEvaluator(
            self.store, self.config.risk, self.config.access_requests
        )
        self.access_requests = AccessRequestWorkflow(
            self.store, self.events, self.sod, self.risk_evaluator, clock=clock
        )
        self.anomalies = AnomalyEvaluator(
            self.store, self.events, self.config.anomaly, clock=clock
        )
        self.jit = JitAccessService(self.store, self.events, self.config.jit, clock=clock)

    async def preview_access(
        self, ctx: TenantContext, user_id: str, app_id: str, access_type: str
    ) -> AccessPreview:
        """Score a prospective grant the same way a submitted request is scored."""
        conflicts = await self.sod.check_violation(ctx, user_id, app_id)
        risk = await self.risk_evaluator.score(ctx, user_id, app_id, access_type, conflicts)
        return AccessPreview(
            sod_conflicts=conflicts,
            risk=risk,
            sla_due_at=self.risk_evaluator.sla_due_at(risk.level, self.clock()),
        )
