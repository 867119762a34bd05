# engine/scoring.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional

from schemas.domain import DomainScore, NormalizedFinding, NormalizedFindings
from schemas.taxonomy import (
    DOMAIN_WEIGHTS,
    GRADE_THRESHOLDS,
    MAX_CATEGORY_DEDUCTION,
    SEVERITY_PENALTIES,
    AssessmentDomain,
    Severity,
)

LOGGER = logging.getLogger(__name__)

MAX_SCORE = 100


@dataclass(frozen=True)
class ScoringPolicy:
    """Tunable scoring weights.

    Penalties are per non-compliant finding; each severity bucket is capped
    at ``max_category_deduction`` so one noisy category cannot zero a domain
    on its own.  Penalties must be non-negative, which is what keeps the
    score monotonically non-increasing in non-compliant findings.
    """
    severity_penalties: Mapping[Severity, float] = field(
        default_factory=lambda: dict(SEVERITY_PENALTIES)
    )
    max_category_deduction: float = MAX_CATEGORY_DEDUCTION
    domain_weights: Mapping[AssessmentDomain, float] = field(
        default_factory=lambda: dict(DOMAIN_WEIGHTS)
    )
    max_recommendations: int = 5

    def __post_init__(self):
        for sev, penalty in self.severity_penalties.items():
            if penalty < 0:
                raise ValueError(f"Penalty for {sev.value} must be >= 0 (got {penalty})")
        if self.severity_penalties.get(Severity.INFORMATIONAL, 0) != 0:
            raise ValueError("Informational findings cannot carry a penalty")
        if self.max_category_deduction < 0:
            raise ValueError("max_category_deduction must be >= 0")
        for domain, weight in self.domain_weights.items():
            if weight <= 0:
                raise ValueError(f"Weight for {domain.value} must be > 0 (got {weight})")

    def penalty(self, severity: Severity) -> float:
        return self.severity_penalties.get(severity, 0.0)

    def weight(self, domain: AssessmentDomain) -> float:
        return self.domain_weights.get(domain, 1.0)


DEFAULT_POLICY = ScoringPolicy()


def grade(score: int) -> str:
    for threshold, letter in GRADE_THRESHOLDS:
        if score >= threshold:
            return letter
    return "F"


def top_recommendations(
    non_compliant: Iterable[NormalizedFinding],
    limit: int = 5,
) -> list[str]:
    """Remediation texts, worst severity first, first occurrence wins on ties."""
    ordered = sorted(non_compliant, key=lambda f: f.severity.rank)  # stable sort
    out: list[str] = []
    for f in ordered:
        if len(out) >= limit:
            break
        if f.remediation and f.remediation not in out:
            out.append(f.remediation)
    return out


def score_domain(
    findings: NormalizedFindings,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> DomainScore:
    """Bounded [0, 100] score for one domain.  Total and deterministic."""
    result = DomainScore(domain=findings.domain, total_checks=len(findings.findings))
    if not findings.findings:
        result.score = MAX_SCORE
        result.grade = grade(result.score)
        return result

    non_compliant = [f for f in findings.findings if not f.is_compliant]
    counts = {sev: 0 for sev in Severity}
    for f in non_compliant:
        counts[f.severity] += 1

    result.critical_count = counts[Severity.CRITICAL]
    result.high_count = counts[Severity.HIGH]
    result.medium_count = counts[Severity.MEDIUM]
    result.low_count = counts[Severity.LOW]
    result.passed_checks = len(findings.findings) - len(non_compliant)
    result.failed_checks = len(non_compliant)

    total_deduction = 0.0
    for sev, count in counts.items():
        total_deduction += min(count * policy.penalty(sev), policy.max_category_deduction)

    result.score = max(0, min(MAX_SCORE, int(MAX_SCORE - total_deduction)))
    result.grade = grade(result.score)
    result.top_recommendations = top_recommendations(non_compliant, policy.max_recommendations)

    LOGGER.debug(
        "Domain %s score %d (Critical: %d, High: %d, Medium: %d, Low: %d)",
        findings.domain.value, result.score, result.critical_count,
        result.high_count, result.medium_count, result.low_count,
    )
    return result


def overall_score(
    scores: Iterable[tuple[AssessmentDomain, int]],
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> int:
    """Weighted average of (domain, score) pairs; 0 when nothing was assessed."""
    total_weight = 0.0
    weighted_sum = 0.0
    for domain, score in scores:
        weight = policy.weight(domain)
        weighted_sum += score * weight
        total_weight += weight
    return int(weighted_sum / total_weight) if total_weight else 0


def severity_breakdown(findings: Iterable[NormalizedFinding]) -> dict[str, dict[str, int]]:
    """{severity: {"compliant": n, "non_compliant": n}} for reports."""
    out: dict[str, dict[str, int]] = {
        sev.value: {"compliant": 0, "non_compliant": 0} for sev in Severity
    }
    for f in findings:
        bucket = "compliant" if f.is_compliant else "non_compliant"
        out[f.severity.value][bucket] += 1
    return out


def most_impactful_findings(
    findings_by_domain: Mapping[AssessmentDomain, list[NormalizedFinding]],
    policy: ScoringPolicy = DEFAULT_POLICY,
    limit: int = 10,
) -> list[dict[str, object]]:
    """Non-compliant findings ranked by weighted impact (penalty × domain weight)."""
    ranked: list[tuple[float, int, str, dict[str, object]]] = []
    for domain, items in findings_by_domain.items():
        for f in items:
            if f.is_compliant:
                continue
            impact = policy.penalty(f.severity) * policy.weight(domain)
            if impact <= 0:
                continue
            ranked.append((
                -impact,
                f.severity.rank,
                f.check_id,
                {
                    "domain": domain.value,
                    "check_id": f.check_id,
                    "title": f.title,
                    "severity": f.severity.value,
                    "impact": round(impact, 1),
                    "remediation": f.remediation,
                },
            ))
    ranked.sort(key=lambda t: (t[0], t[1], t[2]))
    return [row for *_, row in ranked[:limit]]


def policy_from_mapping(
    penalties: Optional[Mapping[Severity, float]] = None,
    weights: Optional[Mapping[AssessmentDomain, float]] = None,
    *,
    max_category_deduction: float = MAX_CATEGORY_DEDUCTION,
    max_recommendations: int = 5,
) -> ScoringPolicy:
    """Overlay partial penalty / weight tables on the defaults."""
    merged_penalties = dict(SEVERITY_PENALTIES)
    merged_penalties.update(penalties or {})
    merged_weights = dict(DOMAIN_WEIGHTS)
    merged_weights.update(weights or {})
    return ScoringPolicy(
        severity_penalties=merged_penalties,
        max_category_deduction=max_category_deduction,
        domain_weights=merged_weights,
        max_recommendations=max_recommendations,
    )
