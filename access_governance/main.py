import logging
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, Path, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from access_governance.config import load_config
from access_governance.events import EventSystem
from access_governance.exceptions import GovernanceError
from access_governance.models import (
    AccessRequest,
    AccessRequestSubmission,
    ActivityEvent,
    AnomalyDetection,
    ConflictFinding,
    JitAccessSession,
    JitAccessSubmission,
    ScanResult,
    SodRule,
    SodRuleDefinition,
    SodRuleUpdate,
    SodViolation,
    TenantContext,
    utc_now,
)
from access_governance.notifications import NotificationManager
from access_governance.reporting import AnomalyStatistics, ComplianceReport
from access_governance.service import AccessPreview, GovernanceService, parse_severity

logger = logging.getLogger(__name__)


class CheckViolationBody(BaseModel):
    user_id: str
    app_id: str


class PreviewBody(BaseModel):
    user_id: str
    app_id: str
    access_type: str = "member"


class ToggleBody(BaseModel):
    is_active: bool


class RemediateBody(BaseModel):
    revoke_app_id: str
    actor_id: str
    notes: str = ""


class AcceptBody(BaseModel):
    actor_id: str
    justification: str


class ReviewBody(BaseModel):
    decision: str
    approver_id: str
    notes: Optional[str] = None


class ActorBody(BaseModel):
    actor_id: str


class InvestigateBody(BaseModel):
    actor_id: str
    notes: str = ""


class ResolveBody(BaseModel):
    actor_id: str
    is_false_positive: bool
    notes: str = ""


class ActivateBody(BaseModel):
    user_id: str


class ExtendBody(BaseModel):
    user_id: str
    additional_hours: int
    justification: str = ""


class RevokeBody(BaseModel):
    actor_id: str
    reason: str = ""


async def get_tenant(tenant_id: str = Path(...)) -> TenantContext:
    """Build the tenant context from the path."""
    return TenantContext(tenant_id=tenant_id)


def get_service(request: Request) -> GovernanceService:
    return request.app.state.service


def create_app(service: Optional[GovernanceService] = None) -> FastAPI:
    app = FastAPI(
        title="Access Governance Service",
        description="Segregation-of-duties, access-request risk and anomaly detection for SaaS access",
        version="1.0.0",
    )
    if service is None:
        config = load_config()
        service = GovernanceService(config=config)
        notifications = NotificationManager(config.notifications)
        if notifications.channels and isinstance(service.events, EventSystem):
            notifications.attach(service.events)
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(GovernanceError)
    async def governance_error_handler(request: Request, exc: GovernanceError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Unhandled governance error on %s: %s", request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.error_type, "message": exc.message},
        )

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "timestamp": utc_now().isoformat()}

    # Segregation of duties

    @app.post("/tenants/{tenant_id}/sod/rules", response_model=SodRule, status_code=201)
    async def create_sod_rule(
        definition: SodRuleDefinition,
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ):
        return await service.sod.create_rule(ctx, definition)

    @app.get("/tenants/{tenant_id}/sod/rules", response_model=List[SodRule])
    async def list_sod_rules(
        is_active: Optional[bool] = None,
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ):
        return await service.sod.list_rules(ctx, is_active=is_active)

    @app.patch("/tenants/{tenant_id}/sod/rules/{rule_id}", response_model=SodRule)
    async def update_sod_rule(
        rule_id: str,
        updates: SodRuleUpdate,
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ):
        return await service.sod.update_rule(ctx, rule_id, updates)

    @app.post("/tenants/{tenant_id}/sod/rules/{rule_id}/toggle", response_model=SodRule)
    async def toggle_sod_rule(
        rule_id: str,
        body: ToggleBody,
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ):
        return await service.sod.toggle_rule(ctx, rule_id, body.is_active)

    @app.delete("/tenants/{tenant_id}/sod/rules/{rule_id}")
    async def delete_sod_rule(
        rule_id: str,
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ) -> Dict[str, int]:
        deleted = await service.sod.delete_rule(ctx, rule_id)
        return {"deleted_violations": deleted}

    @app.post("/tenants/{tenant_id}/sod/check", response_model=List[ConflictFinding])
    async def check_sod_violation(
        body: CheckViolationBody,
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ):
        return await service.sod.check_violation(ctx, body.user_id, body.app_id)

    @app.post("/tenants/{tenant_id}/sod/scan", response_model=ScanResult)
    async def scan_sod_violations(
        rule_id: Optional[str] = None,
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ):
        return await service.sod.scan_for_violations(ctx, rule_id)

    @app.get("/tenants/{tenant_id}/sod/violations", response_model=List[SodViolation])
    async def list_sod_violations(
        severity: Optional[str] = None,
        user_id: Optional[str] = None,
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ):
        if user_id:
            return await service.sod.get_user_violations(ctx, user_id)
        return await service.sod.get_active_violations(ctx, parse_severity(severity))

    @app.post("/tenants/{tenant_id}/sod/violations/{violation_id}/remediate", response_model=SodViolation)
    async def remediate_sod_violation(
        violation_id: str,
        body: RemediateBody,
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ):
        return await service.sod.remediate_violation(
            ctx, violation_id, body.revoke_app_id, body.actor_id, body.notes
        )

    @app.post("/tenants/{tenant_id}/sod/violations/{violation_id}/accept", response_model=SodViolation)
    async def accept_sod_violation(
        violation_id: str,
        body: AcceptBody,
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ):
        return await service.sod.accept_violation(ctx, violation_id, body.actor_id, body.justification)

    @app.get("/tenants/{tenant_id}/sod/compliance-report", response_model=ComplianceReport)
    async def get_compliance_report(
        framework: Optional[str] = None,
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ):
        return await service.sod.get_compliance_report(ctx, framework)

    # Access requests

    @app.post("/tenants/{tenant_id}/access-requests/preview", response_model=AccessPreview)
    async def preview_access_request(
        body: PreviewBody,
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ):
        return await service.preview_access(ctx, body.user_id, body.app_id, body.access_type)

    @app.post("/tenants/{tenant_id}/access-requests", response_model=AccessRequest, status_code=201)
    async def submit_access_request(
        submission: AccessRequestSubmission,
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ):
        return await service.access_requests.submit_request(ctx, submission)

    @app.get("/tenants/{tenant_id}/access-requests", response_model=List[AccessRequest])
    async def list_access_requests(
        approver_id: Optional[str] = None,
        requester_id: Optional[str] = None,
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ):
        if approver_id:
            return await service.access_requests.get_pending_requests(ctx, approver_id)
        if requester_id:
            return await service.access_requests.get_user_requests(ctx, requester_id)
        return await service.store.list_access_requests(ctx)

    @app.post("/tenants/{tenant_id}/access-requests/{request_id}/review", response_model=AccessRequest)
    async def review_access_request(
        request_id: str,
        body: ReviewBody,
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ):
        return await service.access_requests.review_request(
            ctx, request_id, body.decision, body.approver_id, body.notes
        )

    @app.post("/tenants/{tenant_id}/access-requests/{request_id}/cancel", response_model=AccessRequest)
    async def cancel_access_request(
        request_id: str,
        body: ActorBody,
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ):
        return await service.access_requests.cancel_request(ctx, request_id, body.actor_id)

    @app.post("/tenants/{tenant_id}/access-requests/check-overdue")
    async def check_overdue_requests(
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ) -> Dict[str, int]:
        return {"marked_overdue": await service.access_requests.check_overdue_requests(ctx)}

    # Anomalies

    @app.post("/tenants/{tenant_id}/anomalies/events", response_model=List[AnomalyDetection])
    async def analyze_activity_event(
        event: ActivityEvent,
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ):
        return await service.anomalies.analyze_event(ctx, event)

    @app.get("/tenants/{tenant_id}/anomalies", response_model=List[AnomalyDetection])
    async def list_anomalies(
        severity: Optional[str] = None,
        user_id: Optional[str] = None,
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ):
        if user_id:
            return await service.anomalies.get_user_anomalies(ctx, user_id)
        return await service.anomalies.get_open_anomalies(ctx, parse_severity(severity))

    @app.get("/tenants/{tenant_id}/anomalies/statistics", response_model=AnomalyStatistics)
    async def get_anomaly_statistics(
        days: int = 30,
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ):
        return await service.anomalies.get_statistics(ctx, days)

    @app.post("/tenants/{tenant_id}/anomalies/{anomaly_id}/investigate", response_model=AnomalyDetection)
    async def investigate_anomaly(
        anomaly_id: str,
        body: InvestigateBody,
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ):
        return await service.anomalies.investigate_anomaly(ctx, anomaly_id, body.actor_id, body.notes)

    @app.post("/tenants/{tenant_id}/anomalies/{anomaly_id}/resolve", response_model=AnomalyDetection)
    async def resolve_anomaly(
        anomaly_id: str,
        body: ResolveBody,
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ):
        return await service.anomalies.resolve_anomaly(
            ctx, anomaly_id, body.actor_id, body.is_false_positive, body.notes
        )

    # Just-in-time access

    @app.post("/tenants/{tenant_id}/jit", response_model=JitAccessSession, status_code=201)
    async def request_jit_access(
        submission: JitAccessSubmission,
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ):
        return await service.jit.request_access(ctx, submission)

    @app.get("/tenants/{tenant_id}/jit", response_model=List[JitAccessSession])
    async def list_jit_sessions(
        user_id: Optional[str] = None,
        approver_id: Optional[str] = None,
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ):
        if approver_id:
            return await service.jit.get_pending_approvals(ctx, approver_id)
        if user_id:
            return await service.jit.get_user_active_sessions(ctx, user_id)
        return await service.store.list_jit_sessions(ctx)

    @app.post("/tenants/{tenant_id}/jit/revoke-expired")
    async def revoke_expired_jit_sessions(
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ) -> Dict[str, int]:
        return {"revoked": await service.jit.revoke_expired_sessions(ctx)}

    @app.post("/tenants/{tenant_id}/jit/{session_id}/review", response_model=JitAccessSession)
    async def review_jit_session(
        session_id: str,
        body: ReviewBody,
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ):
        return await service.jit.review_request(ctx, session_id, body.decision, body.approver_id, body.notes)

    @app.post("/tenants/{tenant_id}/jit/{session_id}/activate", response_model=JitAccessSession)
    async def activate_jit_session(
        session_id: str,
        body: ActivateBody,
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ):
        return await service.jit.verify_mfa_and_activate(ctx, session_id, body.user_id)

    @app.post("/tenants/{tenant_id}/jit/{session_id}/extend", response_model=JitAccessSession)
    async def extend_jit_session(
        session_id: str,
        body: ExtendBody,
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ):
        return await service.jit.extend_session(
            ctx, session_id, body.user_id, body.additional_hours, body.justification
        )

    @app.post("/tenants/{tenant_id}/jit/{session_id}/revoke", response_model=JitAccessSession)
    async def revoke_jit_session(
        session_id: str,
        body: RevokeBody,
        ctx: TenantContext = Depends(get_tenant),
        service: GovernanceService = Depends(get_service),
    ):
        return await service.jit.revoke_session(ctx, session_id, body.actor_id, body.reason)

    return app


app = create_app()
