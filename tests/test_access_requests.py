from datetime import timedelta

import pytest

from access_governance.exceptions import InvalidArgument, InvalidState, NotFound, PermissionDenied
from access_governance.models import (
    AccessRequestStatus,
    AccessRequestSubmission,
    DurationType,
    ProvisioningStatus,
    RiskLevel,
    Severity,
    SodRuleDefinition,
)
from access_governance.service import GovernanceService
from access_governance.storage.memory import InMemoryGovernanceStore


async def add_payments_rule(service, ctx):
    return await service.sod.create_rule(
        ctx,
        SodRuleDefinition(
            name="Accounting & Payments",
            app_id1="quickbooks",
            app_id2="stripe",
            severity=Severity.CRITICAL,
        ),
    )


@pytest.mark.asyncio
async def test_submit_low_risk_request(service, ctx, clock):
    request = await service.access_requests.submit_request(
        ctx, AccessRequestSubmission(requester_id="erin", app_id="quickbooks", access_type="viewer")
    )

    assert request.status == AccessRequestStatus.PENDING
    assert request.risk_score == 16
    assert request.risk_level == RiskLevel.LOW
    assert request.sla_due_at == clock() + timedelta(hours=24)
    assert request.approver_id == "mgr"
    assert request.approver_name == "Morgan Manager"
    assert request.requester_name == "Erin"
    assert request.app_name == "QuickBooks"


@pytest.mark.asyncio
async def test_critical_conflict_raises_request_risk(service, ctx):
    await add_payments_rule(service, ctx)

    request = await service.access_requests.submit_request(
        ctx, AccessRequestSubmission(requester_id="erin", app_id="quickbooks", access_type="viewer")
    )

    # 16 for the app, 20 for the conflict, 10 more because it is critical
    assert request.risk_score == 46
    assert request.risk_level == RiskLevel.MEDIUM
    assert len(request.sod_conflicts) == 1
    assert request.sod_conflicts[0].conflicting_app == "Stripe"


@pytest.mark.asyncio
async def test_high_risk_request_emits_event_and_gets_long_sla(service, ctx, events, clock):
    await add_payments_rule(service, ctx)

    request = await service.access_requests.submit_request(
        ctx, AccessRequestSubmission(requester_id="erin", app_id="quickbooks", access_type="admin")
    )

    assert request.risk_score == 71
    assert request.risk_level == RiskLevel.HIGH
    assert request.sla_due_at == clock() + timedelta(hours=48)
    high_risk = [p for name, p in events.recorded if name == "access_request.high_risk"]
    assert len(high_risk) == 1
    assert high_risk[0]["request_id"] == request.id
    assert high_risk[0]["risk_level"] == "high"


@pytest.mark.asyncio
async def test_submit_validates_input(service, ctx):
    with pytest.raises(InvalidArgument):
        await service.access_requests.submit_request(
            ctx,
            AccessRequestSubmission(
                requester_id="erin", app_id="github", duration_type=DurationType.TEMPORARY
            ),
        )
    with pytest.raises(NotFound):
        await service.access_requests.submit_request(
            ctx, AccessRequestSubmission(requester_id="nobody", app_id="github")
        )
    with pytest.raises(NotFound):
        await service.access_requests.submit_request(
            ctx, AccessRequestSubmission(requester_id="erin", app_id="nothing")
        )


@pytest.mark.asyncio
async def test_requester_without_manager_has_no_approver(service, ctx):
    request = await service.access_requests.submit_request(
        ctx, AccessRequestSubmission(requester_id="carol", app_id="github")
    )

    assert request.approver_id is None
    assert request.approver_name is None


@pytest.mark.asyncio
async def test_approval_provisions_access(service, ctx, store, clock):
    request = await service.access_requests.submit_request(
        ctx,
        AccessRequestSubmission(
            requester_id="erin",
            app_id="github",
            justification="Code review",
            duration_type=DurationType.TEMPORARY,
            duration_hours=8,
        ),
    )

    reviewed = await service.access_requests.review_request(ctx, request.id, "approved", "mgr", "ok")

    assert reviewed.status == AccessRequestStatus.PROVISIONED
    assert reviewed.provisioning_status == ProvisioningStatus.COMPLETED
    assert reviewed.approval_notes == "ok"
    entitlement = await store.get_entitlement(ctx, "erin", "github")
    assert entitlement is not None
    assert entitlement.expires_at == clock() + timedelta(hours=8)
    assert entitlement.business_justification == "Code review"

    with pytest.raises(InvalidState, match="Request already provisioned"):
        await service.access_requests.review_request(ctx, request.id, "denied", "mgr")


@pytest.mark.asyncio
async def test_approval_upgrades_existing_entitlement(service, ctx, store):
    request = await service.access_requests.submit_request(
        ctx, AccessRequestSubmission(requester_id="alice", app_id="quickbooks", access_type="admin")
    )

    await service.access_requests.review_request(ctx, request.id, "approved", "mgr")

    entitlement = await store.get_entitlement(ctx, "alice", "quickbooks")
    assert entitlement.access_type == "admin"


@pytest.mark.asyncio
async def test_denial_does_not_provision(service, ctx, store):
    request = await service.access_requests.submit_request(
        ctx, AccessRequestSubmission(requester_id="erin", app_id="github")
    )

    reviewed = await service.access_requests.review_request(ctx, request.id, "denied", "mgr", "Not needed")

    assert reviewed.status == AccessRequestStatus.DENIED
    assert reviewed.reviewed_at is not None
    assert await store.get_entitlement(ctx, "erin", "github") is None


@pytest.mark.asyncio
async def test_review_rejects_bad_input(service, ctx):
    request = await service.access_requests.submit_request(
        ctx, AccessRequestSubmission(requester_id="erin", app_id="github")
    )

    with pytest.raises(InvalidArgument):
        await service.access_requests.review_request(ctx, request.id, "maybe", "mgr")
    with pytest.raises(NotFound):
        await service.access_requests.review_request(ctx, request.id, "approved", "ghost")
    with pytest.raises(NotFound):
        await service.access_requests.review_request(ctx, "missing", "approved", "mgr")


@pytest.mark.asyncio
async def test_provisioning_failure_is_recorded(ctx, store, events, clock):
    class FailingStore(InMemoryGovernanceStore):
        async def grant_entitlement(self, ctx, entitlement):
            raise RuntimeError("connector offline")

    failing = FailingStore()
    failing.users = store.users
    failing.apps = store.apps
    failing.entitlements = store.entitlements
    service = GovernanceService(store=failing, events=events, clock=clock)

    request = await service.access_requests.submit_request(
        ctx, AccessRequestSubmission(requester_id="erin", app_id="github")
    )
    reviewed = await service.access_requests.review_request(ctx, request.id, "approved", "mgr")

    assert reviewed.status == AccessRequestStatus.APPROVED
    assert reviewed.provisioning_status == ProvisioningStatus.FAILED
    assert reviewed.provisioning_error == "connector offline"


@pytest.mark.asyncio
async def test_cancel_request(service, ctx):
    request = await service.access_requests.submit_request(
        ctx, AccessRequestSubmission(requester_id="erin", app_id="github")
    )

    with pytest.raises(PermissionDenied):
        await service.access_requests.cancel_request(ctx, request.id, "alice")

    cancelled = await service.access_requests.cancel_request(ctx, request.id, "erin")
    assert cancelled.status == AccessRequestStatus.CANCELLED

    with pytest.raises(InvalidState, match="Cannot cancel cancelled request"):
        await service.access_requests.cancel_request(ctx, request.id, "erin")


@pytest.mark.asyncio
async def test_overdue_requests_are_flagged_once(service, ctx, events, clock):
    request = await service.access_requests.submit_request(
        ctx, AccessRequestSubmission(requester_id="erin", app_id="github")
    )

    assert await service.access_requests.check_overdue_requests(ctx) == 0

    clock.advance(hours=25)
    assert await service.access_requests.check_overdue_requests(ctx) == 1
    assert await service.access_requests.check_overdue_requests(ctx) == 0

    stored = await service.store.get_access_request(ctx, request.id)
    assert stored.is_overdue
    overdue = [p for name, p in events.recorded if name == "access_request.overdue"]
    assert len(overdue) == 1
    assert overdue[0]["approver_name"] == "Morgan Manager"


@pytest.mark.asyncio
async def test_request_queries(service, ctx):
    first = await service.access_requests.submit_request(
        ctx, AccessRequestSubmission(requester_id="erin", app_id="github")
    )
    second = await service.access_requests.submit_request(
        ctx, AccessRequestSubmission(requester_id="alice", app_id="slack")
    )
    await service.access_requests.cancel_request(ctx, second.id, "alice")

    pending = await service.access_requests.get_pending_requests(ctx, "mgr")
    assert [r.id for r in pending] == [first.id]

    mine = await service.access_requests.get_user_requests(ctx, "alice")
    assert [r.id for r in mine] == [second.id]


@pytest.mark.asyncio
async def test_preview_matches_submission(service, ctx):
    await add_payments_rule(service, ctx)

    preview = await service.preview_access(ctx, "erin", "quickbooks", "viewer")

    assert preview.risk.score == 46
    assert len(preview.sod_conflicts) == 1
    assert await service.store.list_access_requests(ctx) == []
