import pytest

from schemas.domain import (
    AssessmentRun,
    DomainScoreSummary,
    RunStateError,
    RunStatus,
    Tenant,
    make_finding,
)
from schemas.taxonomy import AssessmentDomain, Severity, parse_domain, parse_severity
from signals.telemetry import RunTelemetry


def _run():
    return AssessmentRun(run_id="r1", tenant=Tenant("t1", "Contoso"))


def test_lifecycle_to_completed():
    run = _run()
    assert run.status is RunStatus.PENDING
    run.start()
    assert run.started_at is not None
    run.record_domain(DomainScoreSummary(domain=AssessmentDomain.AUDIT_LOGGING, score=90, is_available=True))
    run.complete(90, "A")
    assert run.status is RunStatus.COMPLETED
    assert run.is_terminal


def test_record_domain_requires_running():
    run = _run()
    with pytest.raises(RunStateError):
        run.record_domain(DomainScoreSummary.unassessed(AssessmentDomain.AUDIT_LOGGING, "x"))


def test_terminal_states_are_final():
    run = _run()
    run.start()
    run.fail("nothing assessed")
    with pytest.raises(RunStateError):
        run.complete(10, "F")
    with pytest.raises(RunStateError):
        run.cancel()
    with pytest.raises(RunStateError):
        run.start()


def test_cannot_complete_pending_run():
    with pytest.raises(RunStateError):
        _run().complete(100, "A")


def test_pending_run_can_be_cancelled():
    run = _run()
    run.cancel()
    assert run.status is RunStatus.CANCELLED
    assert run.error_message == "Run cancelled"


def test_finding_evidence_and_affected_limits():
    finding = make_finding(
        "IAM-001", "n", "t", "d", Severity.HIGH, False,
        evidence={"count": 3}, affected=[f"user{i}" for i in range(30)],
    )
    assert '"count": 3' in finding.evidence
    assert len(finding.affected_resources) == 20


def test_findings_serialize_in_domain_order():
    run = _run()
    run.start()
    for domain, check in ((AssessmentDomain.IDENTITY_AND_ACCESS, "IAM-001"), (AssessmentDomain.AUDIT_LOGGING, "AUD-001")):
        run.record_domain(
            DomainScoreSummary(domain=domain, is_available=True),
            [make_finding(check, "n", "t", "d", Severity.LOW, True)],
        )
    payload = run.to_dict()
    assert [f["check_id"] for f in payload["findings"]] == ["IAM-001", "AUD-001"]
    assert payload["findings"][1]["domain"] == "AuditLogging"
    assert payload["domains"][0]["display_name"] == "Identity & Access (IAM)"


def test_parse_helpers():
    assert parse_domain("auditlogging") is AssessmentDomain.AUDIT_LOGGING
    assert parse_domain("AUDIT_LOGGING") is AssessmentDomain.AUDIT_LOGGING
    assert parse_severity("critical") is Severity.CRITICAL
    with pytest.raises(ValueError):
        parse_domain("payroll")


def test_telemetry_counts_collector_events():
    telemetry = RunTelemetry()
    telemetry.record_collector_events([
        {"type": "endpoint_requested", "domain": "AuditLogging", "endpoint": "a"},
        {"type": "endpoint_returned", "domain": "AuditLogging", "endpoint": "a", "ms": 40},
        {"type": "endpoint_retry", "domain": "AuditLogging", "endpoint": "b"},
        {"type": "endpoint_failed", "domain": "AuditLogging", "endpoint": "b", "category": "permission_denied", "ms": 5},
        {"type": "endpoint_failed", "domain": "AuditLogging", "endpoint": "c", "category": "timeout"},
        {"type": "endpoint_failed", "domain": "AuditLogging", "endpoint": "d", "category": "cancelled"},
    ])
    assert telemetry.endpoints_requested == 1
    assert telemetry.endpoints_ok == 1
    assert telemetry.endpoints_failed == 1
    assert telemetry.endpoints_denied == 1
    assert telemetry.endpoint_timeouts == 1
    assert telemetry.endpoints_cancelled == 1
    assert telemetry.endpoint_retries == 1
    assert telemetry.endpoint_total_duration_ms == 45

    telemetry.record_run([
        {"is_available": True, "skipped": False},
        {"is_available": False, "skipped": True},
        {"is_available": False, "skipped": False},
    ])
    data = telemetry.to_dict()
    assert (data["domains_assessed"], data["domains_skipped"], data["domains_unavailable"]) == (1, 1, 1)
    assert data["live_run"] is False
    assert "_open_phases" not in data


def test_record_analysis_is_serialized_and_requires_running():
    run = _run()
    with pytest.raises(RunStateError):
        run.record_analysis({}, [])
    run.start()
    run.record_domain(DomainScoreSummary.unassessed(AssessmentDomain.AUDIT_LOGGING, "skipped", skipped=True))
    run.record_analysis({"High": {"compliant": 0, "non_compliant": 1}}, [{"check_id": "IAM-006"}])
    run.complete(80, "B")
    payload = run.to_dict()
    assert payload["severity_breakdown"]["High"]["non_compliant"] == 1
    assert payload["most_impactful"] == [{"check_id": "IAM-006"}]
    assert payload["domains"][0]["score"] is None
    assert "ai_summary" not in payload
    with pytest.raises(RunStateError):
        run.record_analysis({}, [])
