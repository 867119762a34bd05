import pytest

from engine.scoring import (
    DEFAULT_POLICY,
    ScoringPolicy,
    grade,
    most_impactful_findings,
    overall_score,
    policy_from_mapping,
    score_domain,
    severity_breakdown,
    top_recommendations,
)
from schemas.domain import NormalizedFindings, make_finding
from schemas.taxonomy import AssessmentDomain, Severity

DOMAIN = AssessmentDomain.IDENTITY_AND_ACCESS


def _finding(check_id, severity, compliant=False, remediation=None):
    return make_finding(
        check_id, check_id, f"title {check_id}", "desc", severity, compliant,
        remediation=remediation,
    )


def _findings(*items):
    out = NormalizedFindings(domain=DOMAIN)
    for f in items:
        out.add(f)
    return out


def test_empty_domain_scores_100():
    score = score_domain(_findings())
    assert score.score == 100
    assert score.grade == "A"
    assert score.total_checks == 0


def test_single_critical_deducts_15():
    score = score_domain(_findings(
        _finding("IAM-001", Severity.CRITICAL),
        _finding("IAM-002", Severity.HIGH, compliant=True),
    ))
    assert score.score == 85
    assert score.grade == "B"
    assert score.critical_count == 1
    assert score.passed_checks == 1
    assert score.failed_checks == 1
    assert score.total_checks == 2


def test_severity_bucket_is_capped():
    criticals = [_finding(f"IAM-{i:03d}", Severity.CRITICAL) for i in range(5)]
    assert score_domain(_findings(*criticals)).score == 60


def test_score_never_drops_below_zero():
    items = []
    for sev in (Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW):
        items += [_finding(f"X-{sev.value}-{i}", sev) for i in range(50)]
    policy = policy_from_mapping(max_category_deduction=100.0)
    score = score_domain(_findings(*items), policy)
    assert score.score == 0
    assert score.grade == "F"


def test_informational_findings_cost_nothing():
    score = score_domain(_findings(_finding("IAM-008", Severity.INFORMATIONAL)))
    assert score.score == 100
    assert score.failed_checks == 1


def test_adding_a_critical_never_raises_the_score():
    base = [_finding("IAM-001", Severity.HIGH), _finding("IAM-002", Severity.LOW)]
    before = score_domain(_findings(*base)).score
    after = score_domain(_findings(*base, _finding("IAM-003", Severity.CRITICAL))).score
    assert after <= before


def test_scoring_is_deterministic():
    items = [_finding("IAM-001", Severity.HIGH, remediation="fix a"),
             _finding("IAM-002", Severity.MEDIUM, remediation="fix b")]
    assert score_domain(_findings(*items)) == score_domain(_findings(*items))


@pytest.mark.parametrize("value,letter", [
    (100, "A"), (90, "A"), (89, "B"), (80, "B"), (79, "C"),
    (70, "C"), (69, "D"), (60, "D"), (59, "F"), (0, "F"),
])
def test_grade_thresholds(value, letter):
    assert grade(value) == letter


def test_top_recommendations_worst_first_and_unique():
    items = [
        _finding("A-1", Severity.LOW, remediation="low fix"),
        _finding("A-2", Severity.CRITICAL, remediation="critical fix"),
        _finding("A-3", Severity.HIGH, remediation="critical fix"),
        _finding("A-4", Severity.MEDIUM, remediation=None),
    ]
    assert top_recommendations(items) == ["critical fix", "low fix"]
    assert top_recommendations(items, limit=1) == ["critical fix"]


def test_overall_score_is_weighted_average():
    scores = [(AssessmentDomain.IDENTITY_AND_ACCESS, 100), (AssessmentDomain.AUDIT_LOGGING, 50)]
    # (100 * 1.5 + 50 * 1.0) / 2.5
    assert overall_score(scores) == 80


def test_overall_score_without_domains_is_zero():
    assert overall_score([]) == 0


def test_policy_rejects_negative_penalty():
    with pytest.raises(ValueError):
        ScoringPolicy(severity_penalties={Severity.HIGH: -1.0})


def test_policy_rejects_informational_penalty():
    with pytest.raises(ValueError):
        policy_from_mapping({Severity.INFORMATIONAL: 1.0})


def test_policy_overrides_merge_with_defaults():
    policy = policy_from_mapping({Severity.HIGH: 10.0}, {AssessmentDomain.AUDIT_LOGGING: 2.0})
    assert policy.penalty(Severity.HIGH) == 10.0
    assert policy.penalty(Severity.CRITICAL) == 15.0
    assert policy.weight(AssessmentDomain.AUDIT_LOGGING) == 2.0
    assert policy.weight(AssessmentDomain.IDENTITY_AND_ACCESS) == 1.5


def test_severity_breakdown_counts_both_states():
    breakdown = severity_breakdown([
        _finding("A", Severity.HIGH),
        _finding("B", Severity.HIGH, compliant=True),
    ])
    assert breakdown["High"] == {"compliant": 1, "non_compliant": 1}
    assert breakdown["Critical"] == {"compliant": 0, "non_compliant": 0}


def test_most_impactful_findings_weigh_domain():
    ranked = most_impactful_findings({
        AssessmentDomain.AUDIT_LOGGING: [_finding("AUD-001", Severity.HIGH)],
        AssessmentDomain.IDENTITY_AND_ACCESS: [_finding("IAM-001", Severity.HIGH)],
    }, DEFAULT_POLICY)
    assert [r["check_id"] for r in ranked] == ["IAM-001", "AUD-001"]
    assert ranked[0]["impact"] == 12.0
