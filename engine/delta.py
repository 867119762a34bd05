"""Run-to-run delta: what changed since the previous run of the same tenant.

Both inputs are serialized run payloads (``AssessmentRun.to_dict()`` shape),
so a run saved by an older version can still be compared.
"""
from __future__ import annotations

from typing import Any


def _domain_index(payload: dict) -> dict[str, dict]:
    return {d.get("domain"): d for d in payload.get("domains", []) or [] if d.get("domain")}


def _finding_index(payload: dict) -> dict[tuple[str, str], dict]:
    return {
        (f.get("domain", ""), f.get("check_id", "")): f
        for f in payload.get("findings", []) or []
    }


def no_delta() -> dict[str, Any]:
    return {"has_previous": False, "count": 0, "changed_domains": [], "changed_checks": []}


def compute_delta(previous: dict, current: dict) -> dict[str, Any]:
    """Score changes per domain and compliance flips per check id."""
    prev_domains = _domain_index(previous)
    changed_domains: list[dict[str, Any]] = []
    for name, cur in _domain_index(current).items():
        prev = prev_domains.get(name)
        if prev is None:
            changed_domains.append({
                "domain": name, "previous_score": None, "current_score": cur.get("score"),
                "change": None, "status": "new",
            })
            continue
        was_available = bool(prev.get("is_available"))
        is_available = bool(cur.get("is_available"))
        if was_available != is_available:
            changed_domains.append({
                "domain": name,
                "previous_score": prev.get("score") if was_available else None,
                "current_score": cur.get("score") if is_available else None,
                "change": None,
                "status": "now_available" if is_available else "now_unavailable",
            })
        elif is_available and prev.get("score") != cur.get("score"):
            change = (cur.get("score") or 0) - (prev.get("score") or 0)
            changed_domains.append({
                "domain": name,
                "previous_score": prev.get("score"),
                "current_score": cur.get("score"),
                "change": change,
                "status": "improved" if change > 0 else "regressed",
            })

    prev_findings = _finding_index(previous)
    changed_checks: list[dict[str, Any]] = []
    for key, cur in _finding_index(current).items():
        prev = prev_findings.get(key)
        if prev is None or prev.get("is_compliant") == cur.get("is_compliant"):
            continue
        changed_checks.append({
            "domain": key[0],
            "check_id": key[1],
            "title": cur.get("title"),
            "severity": cur.get("severity"),
            "previous": "Compliant" if prev.get("is_compliant") else "Non-compliant",
            "current": "Compliant" if cur.get("is_compliant") else "Non-compliant",
        })

    prev_overall = previous.get("overall_score")
    cur_overall = current.get("overall_score")
    overall_change = (
        cur_overall - prev_overall
        if isinstance(prev_overall, int) and isinstance(cur_overall, int) else None
    )

    return {
        "has_previous": True,
        "previous_run_id": previous.get("run_id"),
        "previous_completed_at": previous.get("completed_at"),
        "overall_change": overall_change,
        "count": len(changed_checks),
        "changed_domains": changed_domains,
        "changed_checks": changed_checks,
    }
