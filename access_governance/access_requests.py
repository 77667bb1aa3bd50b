"""Self-service access-request workflow.

pending -> approved | denied | cancelled; approval provisions access in the
same call and moves the request to provisioned. A provisioning failure is
recorded on the request, which stays approved.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from access_governance.events import (
    ACCESS_REQUEST_HIGH_RISK,
    ACCESS_REQUEST_OVERDUE,
    EventSink,
)
from access_governance.exceptions import InvalidArgument, InvalidState, NotFound, PermissionDenied
from access_governance.models import (
    AccessRequest,
    AccessRequestStatus,
    AccessRequestSubmission,
    DurationType,
    Entitlement,
    ProvisioningStatus,
    ReviewDecision,
    RiskLevel,
    TenantContext,
    utc_now,
)
from access_governance.risk_evaluation import RiskEvaluator
from access_governance.sod import SodEngine
from access_governance.storage.base import GovernanceStore

logger = logging.getLogger(__name__)


class AccessRequestWorkflow:
    """Orchestrates submit, risk assessment, review and provisioning."""

    def __init__(
        self,
        store: GovernanceStore,
        events: EventSink,
        sod_engine: SodEngine,
        risk_evaluator: RiskEvaluator,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.events = events
        self.sod_engine = sod_engine
        self.risk_evaluator = risk_evaluator
        self.clock = clock

    async def _require_request(self, ctx: TenantContext, request_id: str) -> AccessRequest:
        request = await self.store.get_access_request(ctx, request_id)
        if request is None:
            raise NotFound("Access request", request_id)
        return request

    async def submit_request(self, ctx: TenantContext, submission: AccessRequestSubmission) -> AccessRequest:
        """Create a pending request with its SoD conflicts, risk and SLA."""
        if submission.duration_type == DurationType.TEMPORARY and not (
            submission.duration_hours and submission.duration_hours > 0
        ):
            raise InvalidArgument("Temporary access requires a positive duration_hours")

        user = await self.store.get_user(ctx, submission.requester_id)
        if user is None:
            raise NotFound("User", submission.requester_id)
        app = await self.store.get_app(ctx, submission.app_id)
        if app is None:
            raise NotFound("Application", submission.app_id)

        sod_conflicts = await self.sod_engine.check_violation(ctx, user.id, app.id)
        assessment = await self.risk_evaluator.score(
            ctx, user.id, app.id, submission.access_type, sod_conflicts
        )

        now = self.clock()
        approver = await self.store.get_user(ctx, user.manager_id) if user.manager_id else None
        if user.manager_id is None:
            logger.warning("Requester %s has no manager; request will have no approver", user.id)

        expires_at = None
        if submission.duration_type == DurationType.TEMPORARY:
            expires_at = now + timedelta(hours=submission.duration_hours)

        request = AccessRequest(
            tenant_id=ctx.tenant_id,
            requester_id=user.id,
            requester_name=user.name,
            app_id=app.id,
            app_name=app.name,
            access_type=submission.access_type,
            justification=submission.justification,
            duration_type=submission.duration_type,
            duration_hours=submission.duration_hours,
            expires_at=expires_at,
            status=AccessRequestStatus.PENDING,
            approver_id=user.manager_id,
            approver_name=approver.name if approver else None,
            risk_score=assessment.score,
            risk_level=assessment.level,
            risk_factors=assessment.factors,
            sod_conflicts=sod_conflicts,
            submitted_at=now,
            sla_due_at=self.risk_evaluator.sla_due_at(assessment.level, now),
        )
        created = await self.store.create_access_request(ctx, request)

        if assessment.level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            await self.events.emit(
                ACCESS_REQUEST_HIGH_RISK,
                {
                    "tenant_id": ctx.tenant_id,
                    "request_id": created.id,
                    "requester_name": user.name,
                    "app_name": app.name,
                    "risk_level": assessment.level.value,
                    "risk_score": assessment.score,
                },
            )

        logger.info("Created access request %s with risk level %s", created.id, assessment.level.value)
        return created

    async def review_request(
        self,
        ctx: TenantContext,
        request_id: str,
        decision: ReviewDecision,
        approver_id: str,
        notes: Optional[str] = None,
    ) -> AccessRequest:
        """Approve or deny a pending request; approval provisions immediately."""
        try:
            decision = ReviewDecision(decision)
        except ValueError:
            raise InvalidArgument(f"Unknown review decision: {decision}") from None

        request = await self._require_request(ctx, request_id)
        if request.status != AccessRequestStatus.PENDING:
            raise InvalidState(f"Request already {request.status.value}")

        approver = await self.store.get_user(ctx, approver_id)
        if approver is None:
            raise NotFound("Approver", approver_id)

        request.status = AccessRequestStatus(decision.value)
        request.approver_id = approver.id
        request.approver_name = approver.name
        request.approval_notes = notes
        request.reviewed_at = self.clock()
        request = await self.store.update_access_request(ctx, request)
        logger.info("Request %s %s by %s", request_id, decision.value, approver_id)

        if decision == ReviewDecision.APPROVED:
            request = await self._provision_access(ctx, request)
        return request

    async def _provision_access(self, ctx: TenantContext, request: AccessRequest) -> AccessRequest:
        try:
            existing = await self.store.get_entitlement(ctx, request.requester_id, request.app_id)
            if existing is not None:
                if existing.access_type != request.access_type:
                    await self.store.update_entitlement_type(
                        ctx, request.requester_id, request.app_id, request.access_type
                    )
            else:
                await self.store.grant_entitlement(
                    ctx,
                    Entitlement(
                        tenant_id=ctx.tenant_id,
                        user_id=request.requester_id,
                        app_id=request.app_id,
                        access_type=request.access_type,
                        granted_at=self.clock(),
                        expires_at=request.expires_at,
                        business_justification=request.justification,
                    ),
                )
        except Exception as e:
            logger.exception("Provisioning failed for request %s", request.id)
            request.provisioning_status = ProvisioningStatus.FAILED
            request.provisioning_error = str(e) or e.__class__.__name__
            return await self.store.update_access_request(ctx, request)

        request.status = AccessRequestStatus.PROVISIONED
        request.provisioning_status = ProvisioningStatus.COMPLETED
        request.provisioned_at = self.clock()
        logger.info("Access provisioned for request %s", request.id)
        return await self.store.update_access_request(ctx, request)

    async def cancel_request(self, ctx: TenantContext, request_id: str, actor_id: str) -> AccessRequest:
        """Cancel a pending request. Only its requester may cancel it."""
        request = await self._require_request(ctx, request_id)
        if request.requester_id != actor_id:
            raise PermissionDenied("Only the requester can cancel this request")
        if request.status != AccessRequestStatus.PENDING:
            raise InvalidState(f"Cannot cancel {request.status.value} request")

        request.status = AccessRequestStatus.CANCELLED
        logger.info("Request %s cancelled", request_id)
        return await self.store.update_access_request(ctx, request)

    async def check_overdue_requests(self, ctx: TenantContext) -> int:
        """Flag pending requests past their SLA. Already-flagged requests are skipped."""
        now = self.clock()
        pending = await self.store.list_access_requests(ctx, status=AccessRequestStatus.PENDING)

        overdue_count = 0
        for request in pending:
            if request.is_overdue or request.sla_due_at >= now:
                continue
            try:
                request.is_overdue = True
                await self.store.update_access_request(ctx, request)
                await self.events.emit(
                    ACCESS_REQUEST_OVERDUE,
                    {
                        "tenant_id": ctx.tenant_id,
                        "request_id": request.id,
                        "requester_name": request.requester_name,
                        "app_name": request.app_name,
                        "approver_name": request.approver_name,
                    },
                )
            except Exception:
                logger.exception("Failed to mark request %s overdue", request.id)
                continue
            overdue_count += 1

        if overdue_count:
            logger.info("Marked %d requests as overdue in tenant %s", overdue_count, ctx.tenant_id)
        return overdue_count

    async def get_pending_requests(self, ctx: TenantContext, approver_id: str) -> List[AccessRequest]:
        return await self.store.list_access_requests(
            ctx, status=AccessRequestStatus.PENDING, approver_id=approver_id
        )

    async def get_user_requests(self, ctx: TenantContext, requester_id: str) -> List[AccessRequest]:
        return await self.store.list_access_requests(ctx, requester_id=requester_id)
