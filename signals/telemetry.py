"""Per-run operational metrics: phase timings, endpoint counters, domain coverage.

Populated by scan.py from the orchestrator and the collector's event list,
then embedded in the persisted run JSON under ``telemetry``.
"""
from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any

PHASES = ("context", "assessment", "reporting")


@dataclass
class RunTelemetry:
    domains_selected: int = 0
    domains_assessed: int = 0
    domains_skipped: int = 0
    domains_unavailable: int = 0

    endpoints_requested: int = 0
    endpoints_ok: int = 0
    endpoints_failed: int = 0
    endpoint_timeouts: int = 0
    endpoints_cancelled: int = 0
    endpoints_denied: int = 0
    endpoint_retries: int = 0
    endpoint_total_duration_ms: int = 0

    # seconds
    phase_context_sec: float = 0.0
    phase_assessment_sec: float = 0.0
    phase_reporting_sec: float = 0.0
    assessment_duration_sec: float = 0.0
    domain_duration_sec: dict[str, float] = field(default_factory=dict)

    live_run: bool = False
    _open_phases: dict[str, float] = field(default_factory=dict, repr=False)

    # ── Phases ────────────────────────────────────────────────────
    def start_phase(self, name: str) -> None:
        if name not in PHASES:
            raise ValueError(f"Unknown telemetry phase: {name!r}")
        self._open_phases[name] = time.perf_counter()

    def end_phase(self, name: str) -> None:
        began = self._open_phases.pop(name, None)
        if began is None:
            return
        setattr(self, f"phase_{name}_sec", round(time.perf_counter() - began, 2))

    def record_domain_duration(self, domain: str, seconds: float) -> None:
        self.domain_duration_sec[domain] = round(seconds, 2)

    # ── Counters ──────────────────────────────────────────────────
    def record_collector_events(self, events: list[dict[str, Any]]) -> None:
        for event in events:
            kind = event.get("type")
            ms = event.get("ms") or 0
            if kind == "endpoint_requested":
                self.endpoints_requested += 1
            elif kind == "endpoint_returned":
                self.endpoints_ok += 1
                self.endpoint_total_duration_ms += ms
            elif kind == "endpoint_retry":
                self.endpoint_retries += 1
            elif kind == "endpoint_failed":
                self._count_failure(event.get("category", ""))
                self.endpoint_total_duration_ms += ms

    def _count_failure(self, category: str) -> None:
        if category == "timeout":
            self.endpoint_timeouts += 1
        elif category == "cancelled":
            self.endpoints_cancelled += 1
        else:
            self.endpoints_failed += 1
            if category == "permission_denied":
                self.endpoints_denied += 1

    def record_run(self, domain_summaries: list[dict[str, Any]]) -> None:
        """Coverage counters from a serialized run's ``domains`` list."""
        self.domains_selected = len(domain_summaries)
        self.domains_assessed = len([d for d in domain_summaries if d.get("is_available")])
        self.domains_skipped = len([d for d in domain_summaries if d.get("skipped")])
        self.domains_unavailable = self.domains_selected - self.domains_assessed - self.domains_skipped

    def mark_live(self) -> None:
        self.live_run = True

    # ── Output ────────────────────────────────────────────────────
    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if not k.startswith("_")}

    def summary_lines(self) -> list[str]:
        return [
            f"  Source:           {'live Graph' if self.live_run else 'replay'}",
            f"  Domains:          {self.domains_assessed} assessed, {self.domains_skipped} skipped,"
            f" {self.domains_unavailable} unavailable (of {self.domains_selected})",
            f"  Endpoints:        {self.endpoints_ok} ok, {self.endpoints_failed} failed"
            f" ({self.endpoints_denied} denied), {self.endpoint_timeouts} timed out,"
            f" {self.endpoints_cancelled} cancelled",
            f"  Retries:          {self.endpoint_retries}  ({self.endpoint_total_duration_ms}ms in Graph)",
            "  Phases:           " + "  ".join(
                f"{p}={getattr(self, f'phase_{p}_sec')}s" for p in PHASES
            ),
            f"  Total duration:   {self.assessment_duration_sec}s",
        ]
