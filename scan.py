import argparse
import json
import logging
import os
import signal
import sys
import threading
import time

from engine.delta import compute_delta, no_delta
from engine.orchestrator import AssessmentOrchestrator, new_run_id
from engine.run_store import JsonRunStore, load_run
from engine.settings import SettingsError, build_scoring_policy, resolve_settings
from evaluators.registry import ordered_modules
from reporting.render import generate_report
from reporting.workbook import build_findings_workbook
from schemas.domain import RunStatus, Tenant
from schemas.taxonomy import parse_domain
from signals.collector import Collector
from signals.graph_client import GraphClient, build_credential
from signals.replay import ReplayClient, ReplayDataError
from signals.telemetry import RunTelemetry
from signals.types import GraphRequestError
from signals.validation import run_validate_permissions

LOGGER = logging.getLogger("scan")


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Tenant Security Posture Assessor")
    p.add_argument("--tenant-id", default=None,
                   help="Tenant to assess (defaults to the credential's home tenant)")
    p.add_argument("--domains", default=None,
                   help="Comma-separated domain list, e.g. IdentityAndAccess,AuditLogging")
    p.add_argument("--replay", metavar="DIR", default=None,
                   help="Serve recorded Graph responses from DIR instead of live Graph")
    p.add_argument("--settings", metavar="FILE", default=None,
                   help="YAML settings file")
    p.add_argument("--validate-permissions", action="store_true",
                   help="Print the permission matrix per domain and exit (no collection)")
    p.add_argument("--no-html", action="store_true", help="Skip the HTML report")
    p.add_argument("--no-xlsx", action="store_true", help="Skip the findings workbook")
    p.add_argument("--pretty", action="store_true", help="Print the run JSON when done")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")
    return p.parse_args(argv)


def _parse_domains(value):
    if not value:
        return None
    return [parse_domain(v) for v in value.split(",") if v.strip()]


def _resolve_tenant(client, args, settings) -> Tenant:
    org = {}
    try:
        org = client.organization() or {}
    except (GraphRequestError, TimeoutError, ValueError) as e:
        LOGGER.warning("Could not read organization details: %s", e)
    tenant_id = args.tenant_id or org.get("tenant_id") or settings["graph"].get("tenant_id") or "unknown"
    return Tenant(
        tenant_id=tenant_id,
        display_name=org.get("display_name", ""),
        default_domain=org.get("default_domain", ""),
    )


def main(argv=None) -> int:
    args = parse_args(argv)

    try:
        settings = resolve_settings(args.settings)
        policy = build_scoring_policy(settings)
        domains = _parse_domains(args.domains)
    except (SettingsError, ValueError) as e:
        print(f"  ✗ {e}")
        return 2

    setup_logging(args.log_level or settings["logging"]["level"])
    out_dir = settings["paths"]["out_dir"]

    print("╔══════════════════════════════════════╗")
    print("║   Tenant Security Posture Assessor   ║")
    print("╚══════════════════════════════════════╝")

    scan_start = time.perf_counter()
    telemetry = RunTelemetry()

    # ── Directory client ──────────────────────────────────────────
    telemetry.start_phase("context")
    if args.replay:
        try:
            client = ReplayClient.from_directory(args.replay)
        except ReplayDataError as e:
            print(f"  ✗ {e}")
            return 2
        print(f"  Source:          replay ({args.replay})")
    else:
        graph = settings["graph"]
        if args.tenant_id and not graph.get("tenant_id"):
            graph["tenant_id"] = args.tenant_id
        client = GraphClient(
            build_credential(graph),
            base_url=graph["base_url"],
            timeout=float(graph["request_timeout_seconds"]),
        )
        telemetry.mark_live()
        print("  Source:          Microsoft Graph (live)")

    tenant = _resolve_tenant(client, args, settings)
    tenant_label = tenant.label
    if tenant.default_domain:
        tenant_label += f"  [{tenant.default_domain}]"
    print(f"  Tenant:          {tenant_label}")
    telemetry.end_phase("context")

    # ── Validate-permissions mode (no collection) ─────────────────
    if args.validate_permissions:
        modules = ordered_modules(domains=domains)
        report = run_validate_permissions(client, modules, verbose=True)
        os.makedirs(out_dir, exist_ok=True)
        vp_path = os.path.join(out_dir, "permission-validation.json")
        with open(vp_path, "w", encoding="utf-8") as f:
            json.dump(report, f, indent=2, default=str)
        print(f"\n  Saved: {vp_path}")
        return 0 if report["connected"] else 1

    # ── Assessment ────────────────────────────────────────────────
    store = JsonRunStore(out_dir)
    # Look up the previous run before this one is written next to it
    previous_path = store.get_last_run(tenant.tenant_id, tenant.display_name)

    collector = Collector.from_settings(settings["execution"])
    orchestrator = AssessmentOrchestrator(
        client,
        store=store,
        settings=settings,
        policy=policy,
        collector=collector,
        telemetry=telemetry,
    )

    cancel_event = threading.Event()

    def _on_interrupt(signum, frame):
        print("\n  ⚠ Interrupt received: cancelling run …")
        cancel_event.set()

    previous_handler = signal.signal(signal.SIGINT, _on_interrupt)

    run_id = new_run_id()
    print(f"  Run:             {run_id}")
    print(f"\nAssessing {len(ordered_modules(domains=domains))} domain(s) …")
    telemetry.start_phase("assessment")
    try:
        run = orchestrator.run(tenant, domains=domains, cancel_event=cancel_event, run_id=run_id)
    finally:
        signal.signal(signal.SIGINT, previous_handler)
    telemetry.end_phase("assessment")
    telemetry.record_collector_events(collector.reset_events())

    output = run.to_dict()
    telemetry.record_run(output["domains"])

    print("\n┌─ Domain Scores ──────────────────────┐")
    for d in output["domains"]:
        if d["is_available"]:
            print(f"│  {d['display_name']:<34} {d['score']:>3}  {d['grade']}")
        else:
            label = "skipped" if d["skipped"] else "n/a"
            print(f"│  {d['display_name']:<34} {label:>5}  {d['unavailable_reason']}")
    print("└──────────────────────────────────────┘")
    if run.status is RunStatus.COMPLETED:
        print(f"  Overall:         {run.overall_score} ({run.overall_grade})")
    else:
        print(f"  ✗ Run {run.status.value}: {run.error_message}")

    # ── Delta ─────────────────────────────────────────────────────
    delta = no_delta()
    if previous_path:
        try:
            delta = compute_delta(load_run(previous_path), output)
            print(f"  Changes since last run: {delta['count']} check(s)")
        except (OSError, ValueError) as e:
            LOGGER.warning("Could not compare with %s: %s", previous_path, e)
    output["delta"] = delta

    # ── Reports ───────────────────────────────────────────────────
    telemetry.start_phase("reporting")
    run_dir = os.path.join(store.tenant_dir(tenant.tenant_id, tenant.display_name), run.run_id)
    os.makedirs(run_dir, exist_ok=True)
    artifacts = []
    if not args.no_html:
        report_path = generate_report(output, out_path=os.path.join(run_dir, "report.html"))
        artifacts.append(report_path)
    if not args.no_xlsx:
        wb = build_findings_workbook(output, os.path.join(run_dir, "findings.xlsx"))
        artifacts.append(wb["path"])
    telemetry.end_phase("reporting")

    # ── Final telemetry ───────────────────────────────────────────
    telemetry.assessment_duration_sec = round(time.perf_counter() - scan_start, 2)
    output["telemetry"] = telemetry.to_dict()
    run_json_path = store.save_run(run, extra={"delta": delta, "telemetry": output["telemetry"]})

    print("\n┌─ Runtime Telemetry ──────────────────┐")
    for line in telemetry.summary_lines():
        print(f"│ {line}")
    print("└──────────────────────────────────────┘")

    print(f"\n✓ Done.  {'  |  '.join([run_json_path] + artifacts)}")

    if args.pretty:
        print(json.dumps(output, indent=2, default=str))

    return 0 if run.status is RunStatus.COMPLETED else 1


if __name__ == "__main__":
    sys.exit(main())
