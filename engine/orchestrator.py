"""Assessment orchestrator: runs every selected domain module for a tenant.

Per domain: permission gate → collect → normalize → score.  Domains run on
a bounded pool; each domain's failure is contained and becomes an
unassessed summary.  The run ends Completed when at least one domain was
assessed, Failed when none were, and Cancelled when the cancel event was
set (by the caller or by the run timeout).
"""
from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

# Domain modules register themselves on import
import evaluators.identity            # noqa: F401
import evaluators.privileged_access   # noqa: F401
import evaluators.device_endpoint     # noqa: F401
import evaluators.email_security      # noqa: F401
import evaluators.defender            # noqa: F401
import evaluators.data_protection     # noqa: F401
import evaluators.audit_logging       # noqa: F401
import evaluators.app_governance      # noqa: F401
import evaluators.collaboration       # noqa: F401

from engine.scoring import (
    DEFAULT_POLICY,
    ScoringPolicy,
    grade,
    most_impactful_findings,
    overall_score,
    severity_breakdown,
)
from evaluators.registry import MODULES, AssessmentModule, ordered_modules
from schemas.domain import (
    AssessmentRun,
    DomainScoreSummary,
    NormalizedFinding,
    RawSnapshot,
    Tenant,
    utc_now,
)
from schemas.taxonomy import AssessmentDomain
from signals.collector import Collector
from signals.telemetry import RunTelemetry
from signals.types import CollectionResult

LOGGER = logging.getLogger(__name__)

RUN_CANCELLED = "Run cancelled"
NO_DOMAINS_ASSESSED = "No domains could be assessed (all selected domains were skipped or failed)"


def new_run_id() -> str:
    """Timestamp-prefixed so run files sort in run order."""
    return f"{utc_now().strftime('%Y%m%d-%H%M%S-%f')}-{uuid.uuid4().hex[:8]}"


@dataclass
class DomainOutcome:
    summary: DomainScoreSummary
    findings: Optional[list[NormalizedFinding]] = None
    collection: Optional[CollectionResult] = None
    duration_sec: float = 0.0


@dataclass
class _RunTimer:
    seconds: float
    cancel_event: threading.Event
    fired: bool = False
    _timer: Optional[threading.Timer] = field(default=None, repr=False)

    def _expire(self) -> None:
        LOGGER.warning("Run timeout of %.0fs exceeded; cancelling", self.seconds)
        self.fired = True
        self.cancel_event.set()

    def start(self) -> None:
        if self.seconds and self.seconds > 0:
            self._timer = threading.Timer(self.seconds, self._expire)
            self._timer.daemon = True
            self._timer.start()

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()


class AssessmentOrchestrator:
    def __init__(
        self,
        client: Any,
        *,
        registry: Optional[dict[AssessmentDomain, AssessmentModule]] = None,
        store: Any = None,
        settings: Optional[dict[str, Any]] = None,
        policy: Optional[ScoringPolicy] = None,
        collector: Optional[Collector] = None,
        telemetry: Optional[RunTelemetry] = None,
    ):
        execution = (settings or {}).get("execution", {}) or {}
        self.client = client
        self.registry = MODULES if registry is None else registry
        self.store = store
        self.policy = policy or DEFAULT_POLICY
        self.collector = collector or Collector.from_settings(execution)
        self.telemetry = telemetry
        self.max_parallel_domains = max(1, int(execution.get("max_parallel_domains", 3)))
        self.run_timeout = float(execution.get("run_timeout_seconds", 1800))
        self.store_snapshots = bool(execution.get("store_snapshots", True))

    # ══════════════════════════════════════════════════════════════
    #  Run
    # ══════════════════════════════════════════════════════════════

    def run(
        self,
        tenant: Tenant,
        domains: Optional[Iterable[AssessmentDomain]] = None,
        cancel_event: Optional[threading.Event] = None,
        run_id: Optional[str] = None,
    ) -> AssessmentRun:
        run = AssessmentRun(run_id=run_id or new_run_id(), tenant=tenant)
        run.start()
        cancel_event = cancel_event or threading.Event()
        modules = ordered_modules(self.registry, domains)
        LOGGER.info(
            "Run %s for %s: %d domains selected",
            run.run_id, tenant.label, len(modules),
        )

        timer = _RunTimer(self.run_timeout, cancel_event)
        timer.start()
        try:
            outcomes = self._assess_all(modules, cancel_event)
        finally:
            timer.stop()

        # Registry order, never completion order.
        for module in modules:
            outcome = outcomes[module.domain]
            run.record_domain(outcome.summary, outcome.findings)
            if self.telemetry is not None:
                self.telemetry.record_domain_duration(module.domain.value, outcome.duration_sec)

        assessed = run.assessed_domains()
        if cancel_event.is_set():
            message = (
                f"Run timed out after {self.run_timeout:.0f}s" if timer.fired else RUN_CANCELLED
            )
            run.cancel(message)
        elif not assessed:
            run.fail(NO_DOMAINS_ASSESSED)
        else:
            assessed_findings = {s.domain: run.findings.get(s.domain, []) for s in assessed}
            run.record_analysis(
                severity_breakdown(f for items in assessed_findings.values() for f in items),
                most_impactful_findings(assessed_findings, self.policy),
            )
            overall = overall_score(((s.domain, s.score) for s in assessed), self.policy)
            run.complete(overall, grade(overall))

        LOGGER.info(
            "Run %s %s (overall=%s, assessed=%d/%d)",
            run.run_id, run.status.value, run.overall_score, len(assessed), len(modules),
        )
        self._persist(run, outcomes)
        return run

    def _assess_all(
        self,
        modules: list[AssessmentModule],
        cancel_event: threading.Event,
    ) -> dict[AssessmentDomain, DomainOutcome]:
        outcomes: dict[AssessmentDomain, DomainOutcome] = {}
        if not modules:
            return outcomes
        with ThreadPoolExecutor(
            max_workers=min(self.max_parallel_domains, len(modules)),
            thread_name_prefix="domain",
        ) as pool:
            futures = {
                module.domain: pool.submit(self.assess_domain, module, cancel_event)
                for module in modules
            }
            for domain, future in futures.items():
                try:
                    outcomes[domain] = future.result()
                except Exception as exc:
                    # assess_domain contains its own failures; this is a last resort.
                    LOGGER.exception("Domain %s crashed", domain.value)
                    outcomes[domain] = DomainOutcome(
                        DomainScoreSummary.unassessed(domain, f"Assessment error: {exc}")
                    )
        return outcomes

    # ══════════════════════════════════════════════════════════════
    #  One domain
    # ══════════════════════════════════════════════════════════════

    def assess_domain(
        self,
        module: AssessmentModule,
        cancel_event: Optional[threading.Event] = None,
    ) -> DomainOutcome:
        cancel_event = cancel_event or threading.Event()
        domain = module.domain
        start = time.perf_counter()

        if cancel_event.is_set():
            return DomainOutcome(DomainScoreSummary.unassessed(domain, RUN_CANCELLED, skipped=True))

        if not module.validate_permissions(self.client):
            missing = self._missing_permissions(module)
            reason = f"Missing required permissions: {', '.join(missing) or 'unknown'}"
            LOGGER.warning("Skipping %s: %s", domain.value, reason)
            return DomainOutcome(DomainScoreSummary.unassessed(domain, reason, skipped=True))

        result: Optional[CollectionResult] = None
        try:
            result = module.collect(self.client, collector=self.collector, cancel_event=cancel_event)
            findings = module.normalize(result)
            if not result.success:
                summary = DomainScoreSummary.unassessed(
                    domain,
                    result.error_message or "Collection failed",
                    warnings=result.warnings,
                    summary=findings.summary,
                )
                return DomainOutcome(summary, None, result, time.perf_counter() - start)
            score = module.score(findings, self.policy)
        except Exception as exc:
            LOGGER.exception("Assessment of %s failed", domain.value)
            summary = DomainScoreSummary.unassessed(
                domain,
                f"Assessment error: {exc}",
                warnings=result.warnings if result is not None else None,
            )
            return DomainOutcome(summary, None, result, time.perf_counter() - start)

        LOGGER.info(
            "%s scored %d (%s), %d warnings",
            domain.value, score.score, score.grade, len(result.warnings),
        )
        summary = DomainScoreSummary.from_score(score, findings, result.warnings)
        return DomainOutcome(summary, list(findings.findings), result, time.perf_counter() - start)

    def _missing_permissions(self, module: AssessmentModule) -> list[str]:
        missing = []
        for permission in module.required_permissions:
            try:
                granted = self.client.has_permission(permission)
            except Exception:
                granted = False
            if not granted:
                missing.append(permission)
        return missing

    # ══════════════════════════════════════════════════════════════
    #  Persistence
    # ══════════════════════════════════════════════════════════════

    def _persist(self, run: AssessmentRun, outcomes: dict[AssessmentDomain, DomainOutcome]) -> None:
        if self.store is None:
            return
        self.store.save_run(run)
        if self.store_snapshots:
            snapshots = list(build_snapshots(run, outcomes.values()))
            if snapshots:
                self.store.save_snapshots(snapshots, tenant_name=run.tenant.display_name)


def build_snapshots(run: AssessmentRun, outcomes: Iterable[DomainOutcome]) -> Iterable[RawSnapshot]:
    for outcome in outcomes:
        result = outcome.collection
        if result is None:
            continue
        for key, payload in result.raw_data.items():
            yield RawSnapshot(
                tenant_id=run.tenant.tenant_id,
                run_id=run.run_id,
                domain=result.domain,
                endpoint=key,
                payload=payload,
                collected_at=result.collected_at,
            )
