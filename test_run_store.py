import json
from datetime import datetime, timezone

from engine.delta import compute_delta, no_delta
from engine.run_store import JsonRunStore, _slugify, load_run
from schemas.domain import AssessmentRun, DomainScoreSummary, RawSnapshot, Tenant, make_finding
from schemas.taxonomy import AssessmentDomain, Severity

TENANT = Tenant("11111111-2222-3333-4444-555555555555", "Contoso Ltd.")


def _run(run_id, score=80, compliant=False):
    run = AssessmentRun(run_id=run_id, tenant=TENANT)
    run.start()
    summary = DomainScoreSummary(
        domain=AssessmentDomain.AUDIT_LOGGING, score=score, grade="B", is_available=True,
    )
    finding = make_finding("AUD-001", "Logs", "Directory audit logs", "d", Severity.HIGH, compliant)
    run.record_domain(summary, [finding])
    run.complete(score, "B")
    return run


def test_slugify():
    assert _slugify("Contoso Ltd.") == "Contoso_Ltd"
    assert _slugify("  ") == "unknown"
    assert len(_slugify("x" * 100)) == 64


def test_save_and_load_run(tmp_path):
    store = JsonRunStore(str(tmp_path))
    path = store.save_run(_run("20250101-000000-aaaaaaaa"), extra={"delta": no_delta()})
    assert path.endswith("Contoso_Ltd/20250101-000000-aaaaaaaa.json")
    payload = load_run(path)
    assert payload["tenant_name"] == "Contoso Ltd."
    assert payload["status"] == "Completed"
    assert payload["delta"]["has_previous"] is False
    assert payload["findings"][0]["check_id"] == "AUD-001"


def test_get_last_run_is_latest(tmp_path):
    store = JsonRunStore(str(tmp_path))
    assert store.get_last_run(TENANT.tenant_id, TENANT.display_name) is None
    store.save_run(_run("20250101-000000-aaaaaaaa"))
    store.save_run(_run("20250301-000000-bbbbbbbb"))
    last = store.get_last_run(TENANT.tenant_id, TENANT.display_name)
    assert last.endswith("20250301-000000-bbbbbbbb.json")


def test_get_last_run_falls_back_to_tenant_id(tmp_path):
    store = JsonRunStore(str(tmp_path))
    nameless = AssessmentRun(run_id="20250101-000000-cccccccc", tenant=Tenant(TENANT.tenant_id))
    nameless.start()
    nameless.fail("no domains")
    store.save_run(nameless)
    assert store.get_last_run(TENANT.tenant_id, "Renamed Tenant").endswith("20250101-000000-cccccccc.json")


def test_save_snapshots(tmp_path):
    store = JsonRunStore(str(tmp_path))
    snap = RawSnapshot(
        tenant_id=TENANT.tenant_id,
        run_id="r1",
        domain=AssessmentDomain.AUDIT_LOGGING,
        endpoint="signInLogs",
        payload='{"value": []}',
        collected_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )
    assert store.save_snapshots([snap], tenant_name=TENANT.display_name) == 1
    file = tmp_path / "Contoso_Ltd" / "r1" / "raw" / "AuditLogging" / "signInLogs.json"
    data = json.loads(file.read_text(encoding="utf-8"))
    assert data["payload"] == '{"value": []}'
    assert data["collected_at"] == "2025-01-01T00:00:00+00:00"


# ── Delta ─────────────────────────────────────────────────────────

def test_delta_reports_score_and_check_changes():
    previous = _run("r1", score=70, compliant=False).to_dict()
    current = _run("r2", score=85, compliant=True).to_dict()
    delta = compute_delta(previous, current)
    assert delta["has_previous"] is True
    assert delta["previous_run_id"] == "r1"
    assert delta["overall_change"] == 15
    assert delta["count"] == 1
    assert delta["changed_checks"][0]["previous"] == "Non-compliant"
    assert delta["changed_checks"][0]["current"] == "Compliant"
    assert delta["changed_domains"][0]["status"] == "improved"


def test_delta_identical_runs_has_no_changes():
    payload = _run("r1").to_dict()
    delta = compute_delta(payload, payload)
    assert delta["count"] == 0
    assert delta["changed_domains"] == []
    assert delta["overall_change"] == 0


def test_delta_domain_availability_change():
    previous = _run("r1").to_dict()
    current = _run("r2").to_dict()
    current["domains"][0]["is_available"] = False
    delta = compute_delta(previous, current)
    assert delta["changed_domains"][0]["status"] == "now_unavailable"
    assert delta["changed_domains"][0]["current_score"] is None


def test_delta_new_domain():
    previous = {"domains": [], "findings": []}
    delta = compute_delta(previous, _run("r2").to_dict())
    assert delta["changed_domains"][0]["status"] == "new"
    assert delta["overall_change"] is None
