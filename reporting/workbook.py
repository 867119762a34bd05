"""Findings workbook: an .xlsx export of one persisted run.

Sheets:
  Summary  : one row per domain (score, grade, counts, availability)
  Findings : one row per finding, severity-coloured

Built only from the run JSON, never from live objects.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

SUMMARY_SHEET = "Summary"
FINDINGS_SHEET = "Findings"

_HEADER_FONT = Font(bold=True, color="FFFFFF")
_HEADER_FILL = PatternFill("solid", fgColor="4472C4")

_SEVERITY_FILLS = {
    "Critical": PatternFill("solid", fgColor="C00000"),
    "High": PatternFill("solid", fgColor="FF6B6B"),
    "Medium": PatternFill("solid", fgColor="FFC000"),
    "Low": PatternFill("solid", fgColor="9DC3E6"),
    "Informational": PatternFill("solid", fgColor="E2EFDA"),
}

_SUMMARY_COLUMNS = [
    ("Domain", 34), ("Score", 8), ("Grade", 8), ("Critical", 9), ("High", 8),
    ("Medium", 9), ("Low", 8), ("Passed", 8), ("Failed", 8), ("Total", 8),
    ("Available", 10), ("Reason", 50), ("Warnings", 10),
]

_FINDING_COLUMNS = [
    ("Domain", 26), ("Check ID", 10), ("Check", 32), ("Severity", 14), ("Status", 14),
    ("Category", 22), ("Title", 48), ("Description", 60), ("Remediation", 60),
    ("Affected Resources", 40), ("Reference", 40),
]


def _write_header(ws, columns: list[tuple[str, int]]) -> None:
    for col_idx, (title, width) in enumerate(columns, start=1):
        cell = ws.cell(row=1, column=col_idx, value=title)
        cell.font = _HEADER_FONT
        cell.fill = _HEADER_FILL
        ws.column_dimensions[get_column_letter(col_idx)].width = width
    ws.freeze_panes = "A2"


def _finish(ws, columns: list[tuple[str, int]]) -> None:
    ws.auto_filter.ref = f"A1:{get_column_letter(len(columns))}{max(ws.max_row, 1)}"


def _populate_summary(ws, run: dict[str, Any]) -> int:
    _write_header(ws, _SUMMARY_COLUMNS)
    row = 2
    for d in run.get("domains", []) or []:
        available = bool(d.get("is_available"))
        ws.cell(row=row, column=1, value=d.get("display_name") or d.get("domain"))
        ws.cell(row=row, column=2, value=d.get("score") if available else None)
        ws.cell(row=row, column=3, value=d.get("grade"))
        ws.cell(row=row, column=4, value=d.get("critical_count", 0))
        ws.cell(row=row, column=5, value=d.get("high_count", 0))
        ws.cell(row=row, column=6, value=d.get("medium_count", 0))
        ws.cell(row=row, column=7, value=d.get("low_count", 0))
        ws.cell(row=row, column=8, value=d.get("passed_checks", 0))
        ws.cell(row=row, column=9, value=d.get("failed_checks", 0))
        ws.cell(row=row, column=10, value=d.get("total_checks", 0))
        ws.cell(row=row, column=11, value="Yes" if available else ("Skipped" if d.get("skipped") else "No"))
        ws.cell(row=row, column=12, value=d.get("unavailable_reason") or "")
        ws.cell(row=row, column=13, value=len(d.get("warnings", []) or []))
        row += 1

    # Overall line under the domain rows
    ws.cell(row=row + 1, column=1, value="Overall").font = Font(bold=True)
    ws.cell(row=row + 1, column=2, value=run.get("overall_score"))
    ws.cell(row=row + 1, column=3, value=run.get("overall_grade"))
    ws.cell(row=row + 2, column=1, value="Status").font = Font(bold=True)
    ws.cell(row=row + 2, column=2, value=run.get("status"))
    # Filter covers the domain rows only, not the overall lines
    ws.auto_filter.ref = f"A1:{get_column_letter(len(_SUMMARY_COLUMNS))}{max(row - 1, 1)}"
    return row - 2


def _populate_findings(ws, run: dict[str, Any]) -> int:
    _write_header(ws, _FINDING_COLUMNS)
    wrap = Alignment(wrap_text=True, vertical="top")
    row = 2
    for f in run.get("findings", []) or []:
        severity = f.get("severity", "")
        values = [
            f.get("domain", ""),
            f.get("check_id", ""),
            f.get("check_name", ""),
            severity,
            "Compliant" if f.get("is_compliant") else "Non-compliant",
            f.get("category") or "",
            f.get("title", ""),
            f.get("description", ""),
            f.get("remediation") or "",
            "\n".join(f.get("affected_resources", []) or []),
            f.get("references") or "",
        ]
        for col_idx, value in enumerate(values, start=1):
            cell = ws.cell(row=row, column=col_idx, value=value)
            cell.alignment = wrap
        fill = _SEVERITY_FILLS.get(severity)
        if fill is not None and not f.get("is_compliant"):
            ws.cell(row=row, column=4).fill = fill
        row += 1
    _finish(ws, _FINDING_COLUMNS)
    return row - 2


def build_findings_workbook(run: dict[str, Any], out_path: str) -> dict[str, Any]:
    """Write the workbook; returns row counts per sheet."""
    wb = Workbook()
    summary_ws = wb.active
    summary_ws.title = SUMMARY_SHEET
    findings_ws = wb.create_sheet(FINDINGS_SHEET)

    stats = {
        "domains": _populate_summary(summary_ws, run),
        "findings": _populate_findings(findings_ws, run),
    }

    out = Path(out_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    wb.save(str(out))
    wb.close()
    return {"path": str(out), **stats}
