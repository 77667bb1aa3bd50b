"""Just-in-time privilege elevation with automatic revocation."""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from access_governance.config import JitAccessConfig
from access_governance.events import JIT_AUTO_REVOKED, JIT_HIGH_RISK_REQUEST, EventSink
from access_governance.exceptions import InvalidArgument, InvalidState, NotFound, PermissionDenied
from access_governance.models import (
    Entitlement,
    JitAccessSession,
    JitAccessSubmission,
    JitSessionStatus,
    ProvisioningStatus,
    ReviewDecision,
    TenantContext,
    utc_now,
)
from access_governance.storage.base import GovernanceStore

logger = logging.getLogger(__name__)


class JitAccessService:
    """Grants temporary elevated access and restores the previous level on expiry."""

    def __init__(
        self,
        store: GovernanceStore,
        events: EventSink,
        config: Optional[JitAccessConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.events = events
        self.config = config or JitAccessConfig()
        self.clock = clock

    def requires_approval(self, app_risk_score: int, access_type: str) -> bool:
        """Owner access always needs approval; admin access only on high-risk apps."""
        if access_type == "owner":
            return True
        return access_type == "admin" and app_risk_score >= self.config.high_risk_app_threshold

    async def _require_session(self, ctx: TenantContext, session_id: str) -> JitAccessSession:
        session = await self.store.get_jit_session(ctx, session_id)
        if session is None:
            raise NotFound("JIT access session", session_id)
        return session

    async def request_access(self, ctx: TenantContext, submission: JitAccessSubmission) -> JitAccessSession:
        user = await self.store.get_user(ctx, submission.user_id)
        if user is None:
            raise NotFound("User", submission.user_id)
        app = await self.store.get_app(ctx, submission.app_id)
        if app is None:
            raise NotFound("Application", submission.app_id)

        current = await self.store.get_entitlement(ctx, user.id, app.id)
        needs_approval = self.requires_approval(app.risk_score, submission.access_type)
        now = self.clock()

        session = JitAccessSession(
            tenant_id=ctx.tenant_id,
            user_id=user.id,
            user_name=user.name,
            app_id=app.id,
            app_name=app.name,
            access_type=submission.access_type,
            previous_access_type=current.access_type if current else None,
            justification=submission.justification,
            duration_hours=submission.duration_hours,
            starts_at=now,
            expires_at=now + timedelta(hours=submission.duration_hours),
            requires_approval=needs_approval,
            requires_mfa=submission.requires_mfa,
            status=JitSessionStatus.PENDING_APPROVAL if needs_approval else JitSessionStatus.PENDING_MFA,
            approver_id=user.manager_id if needs_approval else None,
        )
        created = await self.store.create_jit_session(ctx, session)

        if app.risk_score >= self.config.high_risk_app_threshold or submission.access_type == "owner":
            await self.events.emit(
                JIT_HIGH_RISK_REQUEST,
                {
                    "tenant_id": ctx.tenant_id,
                    "session_id": created.id,
                    "user_name": user.name,
                    "app_name": app.name,
                    "access_type": submission.access_type,
                    "duration_hours": submission.duration_hours,
                },
            )

        logger.info("Created JIT session %s, status: %s", created.id, created.status.value)
        return created

    async def review_request(
        self,
        ctx: TenantContext,
        session_id: str,
        decision: ReviewDecision,
        approver_id: str,
        notes: Optional[str] = None,
    ) -> JitAccessSession:
        try:
            decision = ReviewDecision(decision)
        except ValueError:
            raise InvalidArgument(f"Unknown review decision: {decision}") from None

        session = await self._require_session(ctx, session_id)
        if session.status != JitSessionStatus.PENDING_APPROVAL:
            raise InvalidState(f"Session not pending approval (status: {session.status.value})")
        if await self.store.get_user(ctx, approver_id) is None:
            raise NotFound("Approver", approver_id)

        session.approver_id = approver_id
        session.approval_notes = notes
        if decision == ReviewDecision.APPROVED:
            session.approved_at = self.clock()
            session.status = JitSessionStatus.PENDING_MFA if session.requires_mfa else JitSessionStatus.ACTIVE
        else:
            session.status = JitSessionStatus.DENIED
        session = await self.store.update_jit_session(ctx, session)

        if session.status == JitSessionStatus.ACTIVE:
            session.activated_at = self.clock()
            session = await self._grant_access(ctx, session)

        logger.info("JIT session %s %s", session_id, decision.value)
        return session

    async def verify_mfa_and_activate(self, ctx: TenantContext, session_id: str, user_id: str) -> JitAccessSession:
        session = await self._require_session(ctx, session_id)
        if session.user_id != user_id:
            raise PermissionDenied("Session belongs to a different user")
        if session.status != JitSessionStatus.PENDING_MFA:
            raise InvalidState(f"Session not pending MFA (status: {session.status.value})")

        session.status = JitSessionStatus.ACTIVE
        session.mfa_verified = True
        session.activated_at = self.clock()
        session = await self.store.update_jit_session(ctx, session)

        logger.info("JIT session %s activated with MFA", session_id)
        return await self._grant_access(ctx, session)

    async def _grant_access(self, ctx: TenantContext, session: JitAccessSession) -> JitAccessSession:
        try:
            existing = await self.store.get_entitlement(ctx, session.user_id, session.app_id)
            # Base access may have changed since the request; restore what is held now.
            session.previous_access_type = existing.access_type if existing else None
            if existing is not None:
                await self.store.update_entitlement_type(
                    ctx, session.user_id, session.app_id, session.access_type
                )
            else:
                await self.store.grant_entitlement(
                    ctx,
                    Entitlement(
                        tenant_id=ctx.tenant_id,
                        user_id=session.user_id,
                        app_id=session.app_id,
                        access_type=session.access_type,
                        granted_at=self.clock(),
                        expires_at=session.expires_at,
                        business_justification=f"JIT Access: {session.justification}",
                    ),
                )
        except Exception as e:
            logger.exception("Failed to grant access for JIT session %s", session.id)
            session.provisioning_status = ProvisioningStatus.FAILED
            session.provisioning_error = str(e) or e.__class__.__name__
            await self.store.update_jit_session(ctx, session)
            raise

        session.provisioning_status = ProvisioningStatus.COMPLETED
        return await self.store.update_jit_session(ctx, session)

    async def _restore_access(self, ctx: TenantContext, session: JitAccessSession) -> None:
        if session.previous_access_type and await self.store.get_entitlement(
            ctx, session.user_id, session.app_id
        ):
            await self.store.update_entitlement_type(
                ctx, session.user_id, session.app_id, session.previous_access_type
            )
        else:
            await self.store.revoke_entitlement(ctx, session.user_id, session.app_id)

    async def revoke_expired_sessions(self, ctx: TenantContext) -> int:
        """Restore access for every expired active session; failures are skipped."""
        now = self.clock()
        expired = await self.store.list_expired_jit_sessions(ctx, now)

        revoked = 0
        for session in expired:
            try:
                await self._restore_access(ctx, session)
                session.status = JitSessionStatus.EXPIRED
                session.revoked_at = now
                await self.store.update_jit_session(ctx, session)
                await self.events.emit(
                    JIT_AUTO_REVOKED,
                    {
                        "tenant_id": ctx.tenant_id,
                        "session_id": session.id,
                        "user_name": session.user_name,
                        "app_name": session.app_name,
                        "access_type": session.access_type,
                    },
                )
            except Exception:
                logger.exception("Failed to revoke JIT session %s", session.id)
                continue
            revoked += 1

        if revoked:
            logger.info("Revoked %d expired JIT sessions in tenant %s", revoked, ctx.tenant_id)
        return revoked

    async def extend_session(
        self,
        ctx: TenantContext,
        session_id: str,
        user_id: str,
        additional_hours: int,
        justification: str,
    ) -> JitAccessSession:
        if additional_hours <= 0:
            raise InvalidArgument("additional_hours must be positive")

        session = await self._require_session(ctx, session_id)
        if session.user_id != user_id:
            raise PermissionDenied("Session belongs to a different user")
        if session.status != JitSessionStatus.ACTIVE:
            raise InvalidState(f"Cannot extend {session.status.value} session")

        now = self.clock()
        if now > session.expires_at:
            raise InvalidState("Session already expired")

        session.expires_at = session.expires_at + timedelta(hours=additional_hours)
        session.extension_justification = justification
        session.extended_at = now
        logger.info("JIT session %s extended until %s", session_id, session.expires_at.isoformat())
        return await self.store.update_jit_session(ctx, session)

    async def revoke_session(self, ctx: TenantContext, session_id: str, actor_id: str, reason: str) -> JitAccessSession:
        session = await self._require_session(ctx, session_id)
        if session.status != JitSessionStatus.ACTIVE:
            raise InvalidState(f"Cannot revoke {session.status.value} session")

        await self._restore_access(ctx, session)
        session.status = JitSessionStatus.REVOKED
        session.revoked_at = self.clock()
        session.revoked_by = actor_id
        session.revocation_reason = reason
        logger.info("JIT session %s revoked by %s", session_id, actor_id)
        return await self.store.update_jit_session(ctx, session)

    async def get_user_active_sessions(self, ctx: TenantContext, user_id: str) -> List[JitAccessSession]:
        return await self.store.list_jit_sessions(ctx, user_id=user_id, status=JitSessionStatus.ACTIVE)

    async def get_pending_approvals(self, ctx: TenantContext, approver_id: str) -> List[JitAccessSession]:
        return await self.store.list_jit_sessions(
            ctx, status=JitSessionStatus.PENDING_APPROVAL, approver_id=approver_id
        )
