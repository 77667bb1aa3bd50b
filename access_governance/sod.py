"""Segregation-of-Duties rule engine.

A rule names two applications that a single user must not hold together.
The engine answers "would granting this app create a conflict?" for a single
user, scans every user of a tenant for held conflicts, and manages the
violation lifecycle (remediate, accept, resolve on rule deactivation).
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional, Set

from pydantic import BaseModel

from access_governance.events import SOD_CRITICAL_VIOLATION, EventSink
from access_governance.exceptions import (
    DuplicateOpenViolation,
    InvalidArgument,
    InvalidState,
    NotFound,
)
from access_governance.models import (
    ConflictFinding,
    ScanResult,
    Severity,
    SodRule,
    SodRuleDefinition,
    SodRuleUpdate,
    SodViolation,
    TenantContext,
    User,
    ViolationStatus,
    utc_now,
)
from access_governance.reporting import ComplianceReport, build_compliance_report
from access_governance.storage.base import GovernanceStore

logger = logging.getLogger(__name__)


class SodRuleTemplate(BaseModel):
    """A prebuilt rule waiting for its two applications."""
    name: str
    severity: Severity
    rationale: str
    compliance_framework: Optional[str] = None


PREBUILT_SOD_RULES: List[SodRuleTemplate] = [
    SodRuleTemplate(
        name="Financial Controls: Accounting & Payments",
        severity=Severity.CRITICAL,
        rationale="Same user should not manage both accounting records and payment processing",
        compliance_framework="SOX",
    ),
    SodRuleTemplate(
        name="Code & Production: Development & Production Access",
        severity=Severity.HIGH,
        rationale="Developers should not have direct production access without approval",
        compliance_framework="SOX",
    ),
    SodRuleTemplate(
        name="HR Data: Employee Records & Payroll",
        severity=Severity.HIGH,
        rationale="Same user should not manage both HR records and payroll",
        compliance_framework="SOX",
    ),
    SodRuleTemplate(
        name="Audit Independence: Audit Tools & Operational Access",
        severity=Severity.CRITICAL,
        rationale="Auditors should not have access to systems they audit",
        compliance_framework="SOX",
    ),
    SodRuleTemplate(
        name="Procurement: PO Approval & Vendor Management",
        severity=Severity.MEDIUM,
        rationale="Same user should not both approve POs and manage vendors",
        compliance_framework="SOX",
    ),
]


def find_conflicts(
    rules: List[SodRule], user_id: str, held_app_ids: Set[str], candidate_app_id: str
) -> List[ConflictFinding]:
    """Conflicts a grant of ``candidate_app_id`` would create.

    Matching is order-independent: a rule fires when the candidate is one side
    and the user already holds the other. Inactive rules and rules exempting
    the user never fire.
    """
    findings = []
    for rule in rules:
        if not rule.is_active or user_id in rule.exempted_user_ids:
            continue
        other = rule.other_side(candidate_app_id)
        if other is None or other not in held_app_ids:
            continue
        findings.append(
            ConflictFinding(
                rule_id=rule.id,
                rule_name=rule.name,
                severity=rule.severity,
                conflicting_app_id=other,
                conflicting_app=rule.app_name(other),
                rationale=rule.rationale,
                compliance_framework=rule.compliance_framework,
            )
        )
    return findings


def holds_both_sides(rule: SodRule, user_id: str, held_app_ids: Set[str]) -> bool:
    if user_id in rule.exempted_user_ids:
        return False
    return rule.app_id1 in held_app_ids and rule.app_id2 in held_app_ids


class SodEngine:
    """Detects and manages Segregation-of-Duties conflicts."""

    def __init__(
        self,
        store: GovernanceStore,
        events: EventSink,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.events = events
        self.clock = clock

    async def _held_app_ids(self, ctx: TenantContext, user_id: str) -> Set[str]:
        entitlements = await self.store.list_user_entitlements(ctx, user_id)
        return {e.app_id for e in entitlements}

    async def _require_rule(self, ctx: TenantContext, rule_id: str) -> SodRule:
        rule = await self.store.get_sod_rule(ctx, rule_id)
        if rule is None:
            raise NotFound("SoD rule", rule_id)
        return rule

    async def _require_open_violation(self, ctx: TenantContext, violation_id: str) -> SodViolation:
        violation = await self.store.get_sod_violation(ctx, violation_id)
        if violation is None:
            raise NotFound("SoD violation", violation_id)
        if violation.status != ViolationStatus.OPEN:
            raise InvalidState(f"Violation already {violation.status.value}")
        return violation

    # Rule management

    async def create_rule(self, ctx: TenantContext, definition: SodRuleDefinition) -> SodRule:
        """Create a rule and scan the tenant for users already in conflict."""
        if definition.app_id1 == definition.app_id2:
            raise InvalidArgument("An SoD rule must name two different applications")

        app1 = await self.store.get_app(ctx, definition.app_id1)
        app2 = await self.store.get_app(ctx, definition.app_id2)
        if app1 is None:
            raise NotFound("Application", definition.app_id1)
        if app2 is None:
            raise NotFound("Application", definition.app_id2)

        rule = SodRule(
            tenant_id=ctx.tenant_id,
            name=definition.name,
            severity=definition.severity,
            app_id1=app1.id,
            app_name1=app1.name,
            app_id2=app2.id,
            app_name2=app2.name,
            rationale=definition.rationale,
            compliance_framework=definition.compliance_framework,
            exempted_user_ids=set(definition.exempted_user_ids),
            is_active=True,
        )
        created = await self.store.create_sod_rule(ctx, rule)
        logger.info("Created SoD rule %s (%s) for tenant %s", created.id, created.name, ctx.tenant_id)

        await self.scan_for_violations(ctx, created.id)
        return created

    async def create_rule_from_template(
        self, ctx: TenantContext, template: SodRuleTemplate, app_id1: str, app_id2: str
    ) -> SodRule:
        return await self.create_rule(
            ctx,
            SodRuleDefinition(
                name=template.name,
                app_id1=app_id1,
                app_id2=app_id2,
                severity=template.severity,
                rationale=template.rationale,
                compliance_framework=template.compliance_framework,
            ),
        )

    async def update_rule(self, ctx: TenantContext, rule_id: str, updates: SodRuleUpdate) -> SodRule:
        """Update rule metadata; exemption changes are applied to open violations."""
        rule = await self._require_rule(ctx, rule_id)
        changes = updates.model_dump(exclude_unset=True, exclude_none=True)
        exemptions_changed = "exempted_user_ids" in changes

        for field, value in changes.items():
            setattr(rule, field, value)
        rule.updated_at = self.clock()
        updated = await self.store.update_sod_rule(ctx, rule)

        if exemptions_changed:
            await self._exempt_open_violations(ctx, updated)
            if updated.is_active:
                await self.scan_for_violations(ctx, rule_id)

        logger.info("Updated SoD rule %s", rule_id)
        return updated

    async def _exempt_open_violations(self, ctx: TenantContext, rule: SodRule) -> None:
        open_violations = await self.store.list_sod_violations(
            ctx, sod_rule_id=rule.id, status=ViolationStatus.OPEN
        )
        for violation in open_violations:
            if violation.user_id not in rule.exempted_user_ids:
                continue
            violation.status = ViolationStatus.EXEMPTED
            violation.resolution_notes = "User exempted from rule"
            violation.resolved_at = self.clock()
            await self.store.update_sod_violation(ctx, violation)

    async def toggle_rule(self, ctx: TenantContext, rule_id: str, is_active: bool) -> SodRule:
        """Activate (and scan) or deactivate (and resolve open violations)."""
        rule = await self._require_rule(ctx, rule_id)
        rule.is_active = is_active
        rule.updated_at = self.clock()
        updated = await self.store.update_sod_rule(ctx, rule)
        logger.info("%s SoD rule %s", "Activated" if is_active else "Deactivated", rule_id)

        if is_active:
            await self.scan_for_violations(ctx, rule_id)
        else:
            open_violations = await self.store.list_sod_violations(
                ctx, sod_rule_id=rule_id, status=ViolationStatus.OPEN
            )
            for violation in open_violations:
                violation.status = ViolationStatus.RESOLVED
                violation.resolution_notes = "Rule deactivated"
                violation.resolved_at = self.clock()
                await self.store.update_sod_violation(ctx, violation)

        return updated

    async def delete_rule(self, ctx: TenantContext, rule_id: str) -> int:
        """Delete a rule and, first, every violation recorded against it."""
        await self._require_rule(ctx, rule_id)
        violations = await self.store.list_sod_violations(ctx, sod_rule_id=rule_id)
        for violation in violations:
            await self.store.delete_sod_violation(ctx, violation.id)
        await self.store.delete_sod_rule(ctx, rule_id)
        logger.info("Deleted SoD rule %s and %d violations", rule_id, len(violations))
        return len(violations)

    async def list_rules(self, ctx: TenantContext, is_active: Optional[bool] = None) -> List[SodRule]:
        return await self.store.list_sod_rules(ctx, is_active=is_active)

    # Detection

    async def check_violation(
        self, ctx: TenantContext, user_id: str, candidate_app_id: str
    ) -> List[ConflictFinding]:
        """Check whether granting ``candidate_app_id`` to a user conflicts with held access."""
        held = await self._held_app_ids(ctx, user_id)
        rules = await self.store.list_sod_rules(ctx, is_active=True)
        findings = find_conflicts(rules, user_id, held, candidate_app_id)
        if findings:
            logger.info(
                "Found %d SoD conflict(s) for user %s requesting app %s",
                len(findings), user_id, candidate_app_id,
            )
        return findings

    async def scan_for_violations(self, ctx: TenantContext, rule_id: Optional[str] = None) -> ScanResult:
        """Scan every user of the tenant and record new violations.

        With ``rule_id`` only that rule is scanned (and only if active).
        Users that fail to load are logged and skipped.
        """
        if rule_id is not None:
            rule = await self._require_rule(ctx, rule_id)
            rules = [rule] if rule.is_active else []
        else:
            rules = await self.store.list_sod_rules(ctx, is_active=True)

        users = await self.store.list_users(ctx)
        result = ScanResult(total_users=len(users))
        logger.info(
            "Scanning %d users against %d SoD rule(s) in tenant %s",
            len(users), len(rules), ctx.tenant_id,
        )

        for user in users:
            try:
                created = await self._scan_user(ctx, user, rules)
            except Exception:
                logger.exception("SoD scan failed for user %s", user.id)
                result.failed_users += 1
                continue
            for violation in created:
                result.violations_found += 1
                result.counts_by_severity[violation.severity] += 1

        logger.info("SoD scan complete: %d new violations found", result.violations_found)
        return result

    async def _scan_user(self, ctx: TenantContext, user: User, rules: List[SodRule]) -> List[SodViolation]:
        held = await self._held_app_ids(ctx, user.id)
        created = []
        for rule in rules:
            if not holds_both_sides(rule, user.id, held):
                continue
            existing = await self.store.list_sod_violations(
                ctx, user_id=user.id, sod_rule_id=rule.id, status=ViolationStatus.OPEN
            )
            if existing:
                continue

            violation = SodViolation(
                tenant_id=ctx.tenant_id,
                user_id=user.id,
                user_name=user.name,
                sod_rule_id=rule.id,
                sod_rule_name=rule.name,
                app_id1=rule.app_id1,
                app_name1=rule.app_name1,
                app_id2=rule.app_id2,
                app_name2=rule.app_name2,
                severity=rule.severity,
                rationale=rule.rationale,
                compliance_framework=rule.compliance_framework,
                detected_at=self.clock(),
            )
            try:
                violation = await self.store.create_sod_violation(ctx, violation)
            except DuplicateOpenViolation:
                logger.info("Open violation for user %s and rule %s created concurrently", user.id, rule.id)
                continue
            created.append(violation)

            if rule.severity == Severity.CRITICAL:
                await self.events.emit(
                    SOD_CRITICAL_VIOLATION,
                    {
                        "tenant_id": ctx.tenant_id,
                        "violation_id": violation.id,
                        "user_id": user.id,
                        "user_name": user.name,
                        "rule_id": rule.id,
                        "rule_name": rule.name,
                        "app_name1": rule.app_name1,
                        "app_name2": rule.app_name2,
                    },
                )
        return created

    # Violation lifecycle

    async def remediate_violation(
        self,
        ctx: TenantContext,
        violation_id: str,
        revoke_app_id: str,
        actor_id: str,
        notes: str = "",
    ) -> SodViolation:
        """Revoke one side of the conflict and mark the violation remediated."""
        violation = await self._require_open_violation(ctx, violation_id)
        if revoke_app_id not in (violation.app_id1, violation.app_id2):
            raise InvalidArgument("Invalid app ID: must be one of the conflicting apps")

        await self.store.revoke_entitlement(ctx, violation.user_id, revoke_app_id)

        app_name = violation.app_name1 if revoke_app_id == violation.app_id1 else violation.app_name2
        now = self.clock()
        violation.status = ViolationStatus.REMEDIATED
        violation.remediated_by = actor_id
        violation.remediation_action = f"Revoked access to {app_name}"
        violation.resolution_notes = notes
        violation.resolved_at = now
        updated = await self.store.update_sod_violation(ctx, violation)
        logger.info("Violation %s remediated by %s", violation_id, actor_id)
        return updated

    async def accept_violation(
        self, ctx: TenantContext, violation_id: str, actor_id: str, justification: str
    ) -> SodViolation:
        """Accept the risk of an open violation with a justification."""
        violation = await self._require_open_violation(ctx, violation_id)
        violation.status = ViolationStatus.ACCEPTED
        violation.accepted_by = actor_id
        violation.acceptance_justification = justification
        violation.resolved_at = self.clock()
        updated = await self.store.update_sod_violation(ctx, violation)
        logger.info("Violation %s accepted by %s", violation_id, actor_id)
        return updated

    async def get_user_violations(self, ctx: TenantContext, user_id: str) -> List[SodViolation]:
        return await self.store.list_sod_violations(ctx, user_id=user_id, status=ViolationStatus.OPEN)

    async def get_active_violations(
        self, ctx: TenantContext, severity: Optional[Severity] = None
    ) -> List[SodViolation]:
        return await self.store.list_sod_violations(ctx, status=ViolationStatus.OPEN, severity=severity)

    async def get_compliance_report(
        self, ctx: TenantContext, framework: Optional[str] = None
    ) -> ComplianceReport:
        rules = await self.store.list_sod_rules(ctx)
        violations = await self.store.list_sod_violations(ctx)
        return build_compliance_report(rules, violations, framework)
