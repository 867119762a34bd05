from jinja2 import Environment, FileSystemLoader, select_autoescape
import logging
import os

from schemas.taxonomy import SEVERITY_ORDER

LOGGER = logging.getLogger(__name__)
TEMPLATE_DIR = os.path.dirname(__file__)


_GRADE_CLASS = {"A": "grade-a", "B": "grade-b", "C": "grade-c", "D": "grade-d", "F": "grade-f"}


def _grade_class(grade: str) -> str:
    return _GRADE_CLASS.get(grade or "", "grade-na")


def _severity_rank(severity: str) -> int:
    names = [s.value for s in SEVERITY_ORDER]
    return names.index(severity) if severity in names else len(names)


def _build_report_context(output: dict) -> dict:
    """Everything the template needs beyond the raw payload keys."""
    domains = output.get("domains", []) or []
    findings = output.get("findings", []) or []

    assessed = [d for d in domains if d.get("is_available")]
    unassessed = [d for d in domains if not d.get("is_available")]

    # ── 1. Non-compliant findings, worst first ────────────────────
    failing = [f for f in findings if not f.get("is_compliant")]
    failing.sort(key=lambda f: (_severity_rank(f.get("severity", "")), f.get("check_id", "")))

    findings_by_severity: dict[str, list[dict]] = {}
    for f in failing:
        findings_by_severity.setdefault(f.get("severity", "Unknown"), []).append(f)

    # ── 2. Top recommendations across domains ─────────────────────
    recommendations: list[dict] = []
    seen: set[str] = set()
    for f in failing:
        text = f.get("remediation")
        if text and text not in seen:
            seen.add(text)
            recommendations.append({
                "text": text,
                "severity": f.get("severity"),
                "domain": f.get("domain"),
                "check_id": f.get("check_id"),
            })
    recommendations = recommendations[:10]

    # ── 3. Counts ─────────────────────────────────────────────────
    totals = {
        "findings": len(findings),
        "non_compliant": len(failing),
        "compliant": len(findings) - len(failing),
        "domains_assessed": len(assessed),
        "domains_unassessed": len(unassessed),
    }

    # ── 4. Severity breakdown across assessed domains ─────────────
    breakdown = output.get("severity_breakdown") or {}
    breakdown_rows = [
        {"severity": sev, **breakdown[sev]}
        for sev in (s.value for s in SEVERITY_ORDER)
        if sev in breakdown and (breakdown[sev].get("compliant") or breakdown[sev].get("non_compliant"))
    ]

    # ── 5. Domain rows ────────────────────────────────────────────
    domain_rows = []
    for d in domains:
        domain_rows.append({
            **d,
            "grade_class": _grade_class(d.get("grade", "")),
            "warning_count": len(d.get("warnings", []) or []),
        })

    return {
        "domain_rows": domain_rows,
        "unassessed_domains": unassessed,
        "findings_by_severity": findings_by_severity,
        "severity_order": [s.value for s in SEVERITY_ORDER],
        "recommendations": recommendations,
        "breakdown_rows": breakdown_rows,
        "most_impactful": output.get("most_impactful") or [],
        "totals": totals,
        "overall_grade_class": _grade_class(output.get("overall_grade") or ""),
        "delta": output.get("delta") or {"has_previous": False},
        "telemetry": output.get("telemetry") or {},
    }


def generate_report(output: dict, out_path: str = None, template_name: str = "report_template.html"):
    """Render one run payload to a standalone HTML file; returns the path written."""
    env = Environment(
        loader=FileSystemLoader(TEMPLATE_DIR),
        autoescape=select_autoescape(["html", "xml"]),
        trim_blocks=True,
        lstrip_blocks=True,
    )
    context = {**output, **_build_report_context(output)}
    html = env.get_template(template_name).render(**context)

    out_path = out_path or os.path.join(os.getcwd(), "report.html")
    os.makedirs(os.path.dirname(os.path.abspath(out_path)), exist_ok=True)
    with open(out_path, "w", encoding="utf-8") as handle:
        handle.write(html)
    LOGGER.info("Report written to %s", out_path)
    return out_path
