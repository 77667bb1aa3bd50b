from datetime import timedelta

import pytest

from access_governance.config import RiskScoringConfig
from access_governance.models import ConflictFinding, RiskLevel, SaasApp, Severity
from access_governance.risk_evaluation import RiskEvaluator


def make_app(risk_score, name="QuickBooks"):
    return SaasApp(id="app", tenant_id="test_tenant", name=name, risk_score=risk_score)


def make_conflict(severity=Severity.HIGH):
    return ConflictFinding(
        rule_id="rule",
        rule_name="Accounting & Payments",
        severity=severity,
        conflicting_app_id="stripe",
        conflicting_app="Stripe",
    )


@pytest.fixture
def evaluator(store):
    return RiskEvaluator(store)


def test_app_rating_is_scaled_down(evaluator):
    assessment = evaluator.compute(make_app(80), "viewer", [], 1)

    assert assessment.score == 16
    assert assessment.level == RiskLevel.LOW
    assert assessment.factors == ["High-risk application: QuickBooks"]


def test_low_risk_app_has_no_factor(evaluator):
    assessment = evaluator.compute(make_app(40, name="Slack"), "member", [], 1)

    assert assessment.score == 8
    assert assessment.factors == []


def test_admin_and_owner_access_add_points(evaluator):
    admin = evaluator.compute(make_app(0), "admin", [], 0)
    owner = evaluator.compute(make_app(0), "owner", [], 0)

    assert admin.score == 25
    assert owner.score == 25
    assert "Requesting admin access" in admin.factors


def test_conflicts_add_points_and_critical_bonus(evaluator):
    assessment = evaluator.compute(
        make_app(0), "member", [make_conflict(Severity.CRITICAL), make_conflict(Severity.HIGH)], 0
    )

    assert assessment.score == 50
    assert assessment.level == RiskLevel.HIGH
    assert "2 Segregation of Duties conflict(s)" in assessment.factors
    assert "1 critical SoD violation(s)" in assessment.factors


def test_entitlement_count_threshold_is_strict(evaluator):
    assert evaluator.compute(make_app(0), "member", [], 20).score == 0

    assessment = evaluator.compute(make_app(0), "member", [], 21)
    assert assessment.score == 10
    assert assessment.factors == ["User has access to 21 apps"]


def test_score_is_capped(evaluator):
    conflicts = [make_conflict(Severity.CRITICAL) for _ in range(3)]

    assessment = evaluator.compute(make_app(100), "owner", conflicts, 50)

    assert assessment.score == 100
    assert assessment.level == RiskLevel.CRITICAL


def test_adding_factors_never_lowers_score(evaluator):
    base = evaluator.compute(make_app(55), "member", [], 3).score
    with_admin = evaluator.compute(make_app(55), "admin", [], 3).score
    with_conflict = evaluator.compute(make_app(55), "admin", [make_conflict()], 3).score
    with_critical = evaluator.compute(make_app(55), "admin", [make_conflict(Severity.CRITICAL)], 3).score

    assert base <= with_admin <= with_conflict <= with_critical


@pytest.mark.parametrize(
    "score,level",
    [
        (0, RiskLevel.LOW),
        (24, RiskLevel.LOW),
        (25, RiskLevel.MEDIUM),
        (49, RiskLevel.MEDIUM),
        (50, RiskLevel.HIGH),
        (74, RiskLevel.HIGH),
        (75, RiskLevel.CRITICAL),
        (100, RiskLevel.CRITICAL),
    ],
)
def test_level_thresholds(evaluator, score, level):
    assert evaluator.level_for(score) == level


def test_sla_depends_on_level(evaluator, clock):
    now = clock()

    assert evaluator.sla_due_at(RiskLevel.LOW, now) == now + timedelta(hours=24)
    assert evaluator.sla_due_at(RiskLevel.MEDIUM, now) == now + timedelta(hours=24)
    assert evaluator.sla_due_at(RiskLevel.HIGH, now) == now + timedelta(hours=48)
    assert evaluator.sla_due_at(RiskLevel.CRITICAL, now) == now + timedelta(hours=48)


def test_custom_weights(store):
    evaluator = RiskEvaluator(store, RiskScoringConfig(admin_access_points=40))

    assert evaluator.compute(None, "admin", [], 0).score == 40


@pytest.mark.asyncio
async def test_score_reads_app_and_entitlements(evaluator, ctx):
    assessment = await evaluator.score(ctx, "bob", "quickbooks", "viewer", [])

    assert assessment.score == 16
    assert assessment.level == RiskLevel.LOW
