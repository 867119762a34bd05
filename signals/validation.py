"""Permission validation: which domains this credential can assess.

Two capabilities:
  1. build_permission_matrix(): granted / missing permissions per domain
  2. run_validate_permissions(): --validate-permissions mode (probes without collecting)

Never calls a domain endpoint; only the token's granted permissions and
the connection probe are consulted.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Optional

from evaluators.registry import AssessmentModule, ordered_modules

LOGGER = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════
#  1.  Permission matrix
# ══════════════════════════════════════════════════════════════════

def build_permission_matrix(
    client: Any,
    modules: Optional[list[AssessmentModule]] = None,
) -> list[dict[str, Any]]:
    """One row per domain: granted / missing permissions and runnability.

    A permission whose check raises counts as missing (fail closed).
    """
    rows: list[dict[str, Any]] = []
    for module in modules if modules is not None else ordered_modules():
        granted: list[str] = []
        missing: list[str] = []
        for permission in module.required_permissions:
            try:
                ok = client.has_permission(permission)
            except Exception as exc:
                LOGGER.warning("Permission check for %s failed: %s", permission, exc)
                ok = False
            (granted if ok else missing).append(permission)
        rows.append({
            "domain": module.domain.value,
            "display_name": module.display_name,
            "granted": granted,
            "missing": missing,
            "runnable": not missing,
        })
    return rows


def print_permission_matrix(rows: list[dict[str, Any]]) -> None:
    for row in rows:
        icon = "✅" if row["runnable"] else "🔒"
        have = len(row["granted"])
        total = have + len(row["missing"])
        print(f"  {icon}  {row['display_name']:<36} {have:>2}/{total:<2}")
        for permission in row["missing"]:
            print(f"        ✗ {permission}")


# ══════════════════════════════════════════════════════════════════
#  2.  --validate-permissions mode
# ══════════════════════════════════════════════════════════════════

def run_validate_permissions(
    client: Any,
    modules: Optional[list[AssessmentModule]] = None,
    *,
    verbose: bool = True,
) -> dict[str, Any]:
    """Probe the connection and every module's permissions; no collection."""
    start = time.perf_counter_ns()
    try:
        connected = bool(client.test_connection())
    except Exception as exc:
        LOGGER.warning("Connection test failed: %s", exc)
        connected = False

    rows = build_permission_matrix(client, modules)
    runnable = sum(1 for r in rows if r["runnable"])
    try:
        granted_all = sorted(client.granted_permissions())
    except Exception as exc:
        LOGGER.warning("Could not list granted permissions: %s", exc)
        granted_all = []

    if verbose:
        print("╔══════════════════════════════════════════════════════════╗")
        print("║  PERMISSION VALIDATION MODE                              ║")
        print("╠══════════════════════════════════════════════════════════╣")
        print(f"║  Probing {len(rows)} domain modules …{'':>{34 - len(str(len(rows)))}}")
        print("╚══════════════════════════════════════════════════════════╝")
        print(f"  Connection: {'ok' if connected else 'FAILED'}")
        print_permission_matrix(rows)

    report = {
        "connected": connected,
        "total_domains": len(rows),
        "runnable_domains": runnable,
        "granted_permissions": granted_all,
        "domains": rows,
        "ms": (time.perf_counter_ns() - start) // 1_000_000,
    }

    if verbose:
        print(f"\n┌─ Validation Summary ─────────────────────────────────────┐")
        print(f"│  Domains probed:          {len(rows):>4}")
        print(f"│  Runnable:                {runnable:>4}")
        print(f"│  Blocked by permissions:  {len(rows) - runnable:>4}")
        print(f"│  Granted permissions:     {len(granted_all):>4}")
        print(f"└──────────────────────────────────────────────────────────┘")

    return report
