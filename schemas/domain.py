"""Core domain types: shared contracts used across the entire assessment system.

These are the canonical shapes that cross layer boundaries.
Collectors hand ``CollectionResult`` (see ``signals/types.py``) to the
domain modules; everything after normalization speaks the types below.
The ``*Dict`` TypedDicts describe the serialized run JSON consumed by
the run store, the delta engine and the reporting layer.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, TypedDict

from schemas.taxonomy import DOMAIN_DISPLAY_NAMES, AssessmentDomain, Severity

MAX_AFFECTED_RESOURCES = 20


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RunStateError(Exception):
    """Raised when an AssessmentRun is mutated outside its state machine."""


# ── Serialized shapes ─────────────────────────────────────────────
class FindingDict(TypedDict):
    domain: str
    check_id: str
    check_name: str
    title: str
    description: str
    severity: str
    is_compliant: bool
    category: Optional[str]
    evidence: Optional[str]
    remediation: Optional[str]
    references: Optional[str]
    affected_resources: List[str]


class DomainSummaryDict(TypedDict, total=False):
    domain: str
    display_name: str
    score: Optional[int]
    grade: str
    critical_count: int
    high_count: int
    medium_count: int
    low_count: int
    passed_checks: int
    failed_checks: int
    total_checks: int
    top_recommendations: List[str]
    is_available: bool
    skipped: bool
    unavailable_reason: Optional[str]
    warnings: List[str]
    summary: List[str]
    metrics: Dict[str, Any]


class RunPayload(TypedDict, total=False):
    run_id: str
    tenant_id: str
    tenant_name: str
    status: str
    started_at: Optional[str]
    completed_at: Optional[str]
    overall_score: Optional[int]
    overall_grade: Optional[str]
    error_message: Optional[str]
    domains: List[DomainSummaryDict]
    findings: List[FindingDict]
    severity_breakdown: Dict[str, Dict[str, int]]
    most_impactful: List[Dict[str, Any]]


# ── Findings ──────────────────────────────────────────────────────
@dataclass(frozen=True)
class NormalizedFinding:
    """One discrete, check-identified observation. Immutable once created."""
    check_id: str
    check_name: str
    title: str
    description: str
    severity: Severity
    is_compliant: bool
    category: Optional[str] = None
    evidence: Optional[str] = None
    remediation: Optional[str] = None
    references: Optional[str] = None
    affected_resources: tuple[str, ...] = ()

    def to_dict(self, domain: AssessmentDomain) -> FindingDict:
        return {
            "domain": domain.value,
            "check_id": self.check_id,
            "check_name": self.check_name,
            "title": self.title,
            "description": self.description,
            "severity": self.severity.value,
            "is_compliant": self.is_compliant,
            "category": self.category,
            "evidence": self.evidence,
            "remediation": self.remediation,
            "references": self.references,
            "affected_resources": list(self.affected_resources),
        }


def make_finding(
    check_id: str,
    check_name: str,
    title: str,
    description: str,
    severity: Severity,
    is_compliant: bool,
    category: Optional[str] = None,
    *,
    evidence: Any = None,
    remediation: Optional[str] = None,
    references: Optional[str] = None,
    affected: Optional[List[str]] = None,
) -> NormalizedFinding:
    """Build a finding; non-string evidence is serialized as JSON."""
    if evidence is not None and not isinstance(evidence, str):
        evidence = json.dumps(evidence, indent=2, default=str)
    resources = tuple(str(r) for r in (affected or [])[:MAX_AFFECTED_RESOURCES])
    return NormalizedFinding(
        check_id=check_id,
        check_name=check_name,
        title=title,
        description=description,
        severity=severity,
        is_compliant=is_compliant,
        category=category,
        evidence=evidence,
        remediation=remediation,
        references=references,
        affected_resources=resources,
    )


@dataclass
class NormalizedFindings:
    """Per-domain container produced by a module's normalize step."""
    domain: AssessmentDomain
    findings: list[NormalizedFinding] = field(default_factory=list)
    summary: list[str] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)

    def add(self, finding: NormalizedFinding) -> None:
        self.findings.append(finding)

    def check_ids(self) -> list[str]:
        return [f.check_id for f in self.findings]


# ── Scores ────────────────────────────────────────────────────────
@dataclass
class DomainScore:
    domain: AssessmentDomain
    score: int = 100
    max_score: int = 100
    grade: str = "A"
    critical_count: int = 0
    high_count: int = 0
    medium_count: int = 0
    low_count: int = 0
    passed_checks: int = 0
    failed_checks: int = 0
    total_checks: int = 0
    top_recommendations: list[str] = field(default_factory=list)


@dataclass
class DomainScoreSummary:
    """What a run keeps per domain, assessed or not."""
    domain: AssessmentDomain
    score: Optional[int] = None  # None until assessed
    grade: str = "N/A"
    critical_count: int = 0
    high_count: int = 0
    medium_count: int = 0
    low_count: int = 0
    passed_checks: int = 0
    failed_checks: int = 0
    total_checks: int = 0
    top_recommendations: list[str] = field(default_factory=list)
    is_available: bool = False
    skipped: bool = False
    unavailable_reason: Optional[str] = None
    warnings: list[str] = field(default_factory=list)
    summary: list[str] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return DOMAIN_DISPLAY_NAMES.get(self.domain, self.domain.value)

    @classmethod
    def from_score(
        cls,
        score: DomainScore,
        findings: NormalizedFindings,
        warnings: list[str],
    ) -> "DomainScoreSummary":
        return cls(
            domain=score.domain,
            score=score.score,
            grade=score.grade,
            critical_count=score.critical_count,
            high_count=score.high_count,
            medium_count=score.medium_count,
            low_count=score.low_count,
            passed_checks=score.passed_checks,
            failed_checks=score.failed_checks,
            total_checks=score.total_checks,
            top_recommendations=list(score.top_recommendations),
            is_available=True,
            warnings=list(warnings),
            summary=list(findings.summary),
            metrics=dict(findings.metrics),
        )

    @classmethod
    def unassessed(
        cls,
        domain: AssessmentDomain,
        reason: str,
        *,
        skipped: bool = False,
        warnings: Optional[list[str]] = None,
        summary: Optional[list[str]] = None,
    ) -> "DomainScoreSummary":
        return cls(
            domain=domain,
            is_available=False,
            skipped=skipped,
            unavailable_reason=reason,
            warnings=list(warnings or []),
            summary=list(summary or []),
        )

    def to_dict(self) -> DomainSummaryDict:
        return {
            "domain": self.domain.value,
            "display_name": self.display_name,
            "score": self.score,
            "grade": self.grade,
            "critical_count": self.critical_count,
            "high_count": self.high_count,
            "medium_count": self.medium_count,
            "low_count": self.low_count,
            "passed_checks": self.passed_checks,
            "failed_checks": self.failed_checks,
            "total_checks": self.total_checks,
            "top_recommendations": list(self.top_recommendations),
            "is_available": self.is_available,
            "skipped": self.skipped,
            "unavailable_reason": self.unavailable_reason,
            "warnings": list(self.warnings),
            "summary": list(self.summary),
            "metrics": dict(self.metrics),
        }


# ── Tenant / run ──────────────────────────────────────────────────
@dataclass(frozen=True)
class Tenant:
    tenant_id: str
    display_name: str = ""
    default_domain: str = ""

    @property
    def label(self) -> str:
        return f"{self.display_name} ({self.tenant_id})" if self.display_name else self.tenant_id


class RunStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


TERMINAL_STATUSES = {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}


@dataclass
class AssessmentRun:
    """One assessment execution for a tenant.

    State machine: Pending → Running → {Completed | Failed | Cancelled}.
    Terminal states are final; every mutator raises ``RunStateError``
    once one is reached.
    """
    run_id: str
    tenant: Tenant
    status: RunStatus = RunStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    domain_scores: list[DomainScoreSummary] = field(default_factory=list)
    findings: dict[AssessmentDomain, list[NormalizedFinding]] = field(default_factory=dict)
    overall_score: Optional[int] = None
    overall_grade: Optional[str] = None
    error_message: Optional[str] = None
    severity_breakdown: dict[str, dict[str, int]] = field(default_factory=dict)
    most_impactful: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def _require(self, *allowed: RunStatus) -> None:
        if self.status not in allowed:
            raise RunStateError(
                f"Run {self.run_id} is {self.status.value}; "
                f"expected one of {', '.join(s.value for s in allowed)}"
            )

    def start(self) -> None:
        self._require(RunStatus.PENDING)
        self.status = RunStatus.RUNNING
        self.started_at = utc_now()

    def record_domain(
        self,
        summary: DomainScoreSummary,
        findings: Optional[list[NormalizedFinding]] = None,
    ) -> None:
        self._require(RunStatus.RUNNING)
        self.domain_scores.append(summary)
        if findings is not None:
            self.findings[summary.domain] = list(findings)

    def complete(self, overall_score: int, overall_grade: str) -> None:
        self._require(RunStatus.RUNNING)
        self.overall_score = overall_score
        self.overall_grade = overall_grade
        self.status = RunStatus.COMPLETED
        self.completed_at = utc_now()

    def fail(self, message: str) -> None:
        self._require(RunStatus.PENDING, RunStatus.RUNNING)
        self.error_message = message
        self.status = RunStatus.FAILED
        self.completed_at = utc_now()

    def cancel(self, message: str = "Run cancelled") -> None:
        self._require(RunStatus.PENDING, RunStatus.RUNNING)
        self.error_message = message
        self.status = RunStatus.CANCELLED
        self.completed_at = utc_now()

    def record_analysis(
        self,
        severity_breakdown: dict[str, dict[str, int]],
        most_impactful: list[dict[str, Any]],
    ) -> None:
        """Cross-domain roll-ups shown in the reports."""
        self._require(RunStatus.RUNNING)
        self.severity_breakdown = severity_breakdown
        self.most_impactful = most_impactful

    def assessed_domains(self) -> list[DomainScoreSummary]:
        return [s for s in self.domain_scores if s.is_available]

    def to_dict(self) -> RunPayload:
        findings: list[FindingDict] = []
        for summary in self.domain_scores:
            for f in self.findings.get(summary.domain, []):
                findings.append(f.to_dict(summary.domain))
        return {
            "run_id": self.run_id,
            "tenant_id": self.tenant.tenant_id,
            "tenant_name": self.tenant.display_name,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "overall_score": self.overall_score,
            "overall_grade": self.overall_grade,
            "error_message": self.error_message,
            "domains": [s.to_dict() for s in self.domain_scores],
            "findings": findings,
            "severity_breakdown": dict(self.severity_breakdown),
            "most_impactful": list(self.most_impactful),
        }


@dataclass(frozen=True)
class RawSnapshot:
    """Raw payload of one endpoint, kept for audit / drill-down."""
    tenant_id: str
    run_id: str
    domain: AssessmentDomain
    endpoint: str
    payload: Optional[str]
    collected_at: datetime
