import pytest

from access_governance.exceptions import InvalidArgument, InvalidState, NotFound
from access_governance.models import (
    Entitlement,
    Severity,
    SodRule,
    SodRuleDefinition,
    SodRuleUpdate,
    ViolationStatus,
)
from access_governance.reporting import COMPLIANT, NON_COMPLIANT
from access_governance.service import GovernanceService
from access_governance.sod import PREBUILT_SOD_RULES, find_conflicts
from access_governance.storage.memory import InMemoryGovernanceStore


def payments_rule(severity=Severity.CRITICAL, **kwargs):
    return SodRuleDefinition(
        name="Accounting & Payments",
        app_id1="quickbooks",
        app_id2="stripe",
        severity=severity,
        rationale="Same user should not manage both accounting records and payment processing",
        compliance_framework="SOX",
        **kwargs,
    )


@pytest.mark.asyncio
async def test_create_rule_scans_existing_holders(service, ctx, events):
    rule = await service.sod.create_rule(ctx, payments_rule())

    assert rule.app_name1 == "QuickBooks"
    assert rule.app_name2 == "Stripe"
    assert rule.is_active

    violations = await service.sod.get_active_violations(ctx)
    assert [v.user_id for v in violations] == ["bob"]
    assert violations[0].severity == Severity.CRITICAL
    assert violations[0].sod_rule_name == "Accounting & Payments"

    critical_events = [p for name, p in events.recorded if name == "sod.critical_violation"]
    assert len(critical_events) == 1
    assert critical_events[0]["user_id"] == "bob"
    assert critical_events[0]["tenant_id"] == ctx.tenant_id


@pytest.mark.asyncio
async def test_check_violation_is_order_independent(service, ctx):
    await service.sod.create_rule(ctx, payments_rule())

    # alice holds app_id1 and asks for app_id2
    findings = await service.sod.check_violation(ctx, "alice", "stripe")
    assert len(findings) == 1
    assert findings[0].conflicting_app_id == "quickbooks"
    assert findings[0].conflicting_app == "QuickBooks"
    assert findings[0].compliance_framework == "SOX"

    # erin holds app_id2 and asks for app_id1
    findings = await service.sod.check_violation(ctx, "erin", "quickbooks")
    assert len(findings) == 1
    assert findings[0].conflicting_app == "Stripe"


@pytest.mark.asyncio
async def test_check_violation_ignores_unrelated_apps(service, ctx):
    await service.sod.create_rule(ctx, payments_rule())

    assert await service.sod.check_violation(ctx, "alice", "github") == []
    assert await service.sod.check_violation(ctx, "carol", "stripe") == []


@pytest.mark.asyncio
async def test_exempted_user_has_no_conflict(service, ctx):
    await service.sod.create_rule(ctx, payments_rule(exempted_user_ids={"alice", "bob"}))

    assert await service.sod.check_violation(ctx, "alice", "stripe") == []
    assert await service.sod.get_active_violations(ctx) == []


@pytest.mark.asyncio
async def test_rescan_does_not_duplicate_open_violations(service, ctx):
    rule = await service.sod.create_rule(ctx, payments_rule())

    first = await service.sod.scan_for_violations(ctx)
    second = await service.sod.scan_for_violations(ctx, rule.id)

    assert first.violations_found == 0
    assert second.violations_found == 0
    assert first.total_users == 5
    assert len(await service.store.list_sod_violations(ctx)) == 1


@pytest.mark.asyncio
async def test_scan_counts_new_violations_by_severity(service, ctx, store):
    rule = await service.sod.create_rule(ctx, payments_rule(severity=Severity.HIGH))
    store.add_entitlement(Entitlement(tenant_id=ctx.tenant_id, user_id="alice", app_id="stripe"))

    result = await service.sod.scan_for_violations(ctx, rule.id)

    assert result.violations_found == 1
    assert result.counts_by_severity[Severity.HIGH] == 1
    assert result.counts_by_severity[Severity.CRITICAL] == 0


@pytest.mark.asyncio
async def test_scan_skips_users_that_fail(ctx, events, clock, store):
    class FlakyStore(InMemoryGovernanceStore):
        async def list_user_entitlements(self, ctx, user_id):
            if user_id == "alice":
                raise RuntimeError("directory unavailable")
            return await super().list_user_entitlements(ctx, user_id)

    flaky = FlakyStore()
    flaky.users = store.users
    flaky.apps = store.apps
    flaky.entitlements = store.entitlements
    service = GovernanceService(store=flaky, events=events, clock=clock)

    await service.sod.create_rule(ctx, payments_rule())
    result = await service.sod.scan_for_violations(ctx)

    assert result.failed_users == 1
    assert result.total_users == 5
    assert len(await flaky.list_sod_violations(ctx)) == 1


@pytest.mark.asyncio
async def test_scan_of_inactive_rule_does_nothing(service, ctx):
    rule = await service.sod.create_rule(ctx, payments_rule())
    await service.sod.toggle_rule(ctx, rule.id, False)

    result = await service.sod.scan_for_violations(ctx, rule.id)

    assert result.violations_found == 0
    assert await service.sod.get_active_violations(ctx) == []


@pytest.mark.asyncio
async def test_create_rule_rejects_same_app_and_unknown_app(service, ctx):
    with pytest.raises(InvalidArgument):
        await service.sod.create_rule(
            ctx, SodRuleDefinition(name="Self", app_id1="stripe", app_id2="stripe", severity=Severity.LOW)
        )
    with pytest.raises(NotFound):
        await service.sod.create_rule(
            ctx, SodRuleDefinition(name="Ghost", app_id1="stripe", app_id2="nope", severity=Severity.LOW)
        )


@pytest.mark.asyncio
async def test_create_rule_from_template(service, ctx):
    template = PREBUILT_SOD_RULES[0]

    rule = await service.sod.create_rule_from_template(ctx, template, "quickbooks", "stripe")

    assert rule.name == template.name
    assert rule.severity == Severity.CRITICAL
    assert rule.compliance_framework == "SOX"
    assert len(await service.sod.get_user_violations(ctx, "bob")) == 1


@pytest.mark.asyncio
async def test_remediate_revokes_chosen_app(service, ctx, store):
    await service.sod.create_rule(ctx, payments_rule())
    violation = (await service.sod.get_user_violations(ctx, "bob"))[0]

    remediated = await service.sod.remediate_violation(ctx, violation.id, "stripe", "admin", "Moved to AP team")

    assert remediated.status == ViolationStatus.REMEDIATED
    assert remediated.remediation_action == "Revoked access to Stripe"
    assert remediated.remediated_by == "admin"
    assert remediated.resolved_at is not None
    assert await store.get_entitlement(ctx, "bob", "stripe") is None
    assert await store.get_entitlement(ctx, "bob", "quickbooks") is not None

    with pytest.raises(InvalidState, match="Violation already remediated"):
        await service.sod.remediate_violation(ctx, violation.id, "quickbooks", "admin")


@pytest.mark.asyncio
async def test_remediate_rejects_app_outside_violation(service, ctx):
    await service.sod.create_rule(ctx, payments_rule())
    violation = (await service.sod.get_user_violations(ctx, "bob"))[0]

    with pytest.raises(InvalidArgument):
        await service.sod.remediate_violation(ctx, violation.id, "github", "admin")

    with pytest.raises(NotFound):
        await service.sod.remediate_violation(ctx, "missing", "stripe", "admin")


@pytest.mark.asyncio
async def test_remediate_when_access_already_removed(service, ctx, store):
    await service.sod.create_rule(ctx, payments_rule(severity=Severity.HIGH))
    violation = (await service.sod.get_user_violations(ctx, "bob"))[0]
    await store.revoke_entitlement(ctx, "bob", "stripe")

    remediated = await service.sod.remediate_violation(ctx, violation.id, "stripe", "admin")

    assert remediated.status == ViolationStatus.REMEDIATED
    assert await store.get_entitlement(ctx, "bob", "stripe") is None
    report = await service.sod.get_compliance_report(ctx)
    assert report.compliance_status == COMPLIANT


@pytest.mark.asyncio
async def test_accept_violation(service, ctx):
    await service.sod.create_rule(ctx, payments_rule())
    violation = (await service.sod.get_user_violations(ctx, "bob"))[0]

    accepted = await service.sod.accept_violation(ctx, violation.id, "ciso", "Compensating control in place")

    assert accepted.status == ViolationStatus.ACCEPTED
    assert accepted.accepted_by == "ciso"
    assert accepted.acceptance_justification == "Compensating control in place"
    with pytest.raises(InvalidState):
        await service.sod.accept_violation(ctx, violation.id, "ciso", "again")


@pytest.mark.asyncio
async def test_deactivating_rule_resolves_violations(service, ctx):
    rule = await service.sod.create_rule(ctx, payments_rule())

    await service.sod.toggle_rule(ctx, rule.id, False)

    violations = await service.store.list_sod_violations(ctx, sod_rule_id=rule.id)
    assert [v.status for v in violations] == [ViolationStatus.RESOLVED]
    assert violations[0].resolution_notes == "Rule deactivated"
    assert await service.sod.check_violation(ctx, "alice", "stripe") == []

    await service.sod.toggle_rule(ctx, rule.id, True)
    assert len(await service.sod.get_active_violations(ctx)) == 1


@pytest.mark.asyncio
async def test_delete_rule_removes_its_violations(service, ctx):
    rule = await service.sod.create_rule(ctx, payments_rule())

    deleted = await service.sod.delete_rule(ctx, rule.id)

    assert deleted == 1
    assert await service.store.list_sod_violations(ctx) == []
    assert await service.sod.list_rules(ctx) == []
    with pytest.raises(NotFound):
        await service.sod.delete_rule(ctx, rule.id)


@pytest.mark.asyncio
async def test_exempting_user_closes_open_violation(service, ctx):
    rule = await service.sod.create_rule(ctx, payments_rule())

    updated = await service.sod.update_rule(ctx, rule.id, SodRuleUpdate(exempted_user_ids={"bob"}))

    assert updated.exempted_user_ids == {"bob"}
    violations = await service.store.list_sod_violations(ctx, user_id="bob")
    assert len(violations) == 1
    assert violations[0].status == ViolationStatus.EXEMPTED
    assert violations[0].resolution_notes == "User exempted from rule"
    assert await service.sod.get_active_violations(ctx) == []


@pytest.mark.asyncio
async def test_update_rule_keeps_unset_fields(service, ctx):
    rule = await service.sod.create_rule(ctx, payments_rule())

    updated = await service.sod.update_rule(ctx, rule.id, SodRuleUpdate(severity=Severity.HIGH))

    assert updated.severity == Severity.HIGH
    assert updated.name == rule.name
    assert updated.rationale == rule.rationale


@pytest.mark.asyncio
async def test_compliance_report_only_high_and_critical_block(service, ctx):
    rule = await service.sod.create_rule(ctx, payments_rule())

    report = await service.sod.get_compliance_report(ctx)
    assert report.compliance_status == NON_COMPLIANT
    assert report.open_violations == 1
    assert report.violations_by_severity[Severity.CRITICAL] == 1

    violation = (await service.sod.get_user_violations(ctx, "bob"))[0]
    await service.sod.accept_violation(ctx, violation.id, "ciso", "Approved by audit committee")

    report = await service.sod.get_compliance_report(ctx, framework="SOX")
    assert report.compliance_status == COMPLIANT
    assert report.framework == "SOX"
    assert report.accepted_violations == 1
    assert report.total_rules == 1
    assert report.active_rules == 1

    await service.sod.update_rule(ctx, rule.id, SodRuleUpdate(severity=Severity.MEDIUM))
    await service.sod.create_rule(
        ctx,
        SodRuleDefinition(
            name="Code & Production",
            app_id1="quickbooks",
            app_id2="stripe",
            severity=Severity.MEDIUM,
        ),
    )
    report = await service.sod.get_compliance_report(ctx)
    assert report.violations_by_severity[Severity.MEDIUM] == 1
    assert report.compliance_status == COMPLIANT


def test_find_conflicts_skips_inactive_rules(tenant_id):
    rule = SodRule(
        tenant_id=tenant_id,
        name="Accounting & Payments",
        severity=Severity.HIGH,
        app_id1="quickbooks",
        app_id2="stripe",
        is_active=False,
    )

    assert find_conflicts([rule], "alice", {"quickbooks"}, "stripe") == []
    rule.is_active = True
    assert len(find_conflicts([rule], "alice", {"quickbooks"}, "stripe")) == 1
