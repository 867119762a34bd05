import json

import pytest

from evaluators.registry import get_module, ordered_modules
from schemas.taxonomy import ALL_DOMAINS, AssessmentDomain
from signals.replay import ReplayClient, ReplayDataError
from signals.types import GraphRequestError
from signals.validation import build_permission_matrix, run_validate_permissions

from conftest import all_permissions


def test_permission_matrix_marks_blocked_domains(make_client):
    client = make_client(permissions=all_permissions() - {"AuditLog.Read.All"})
    rows = {r["domain"]: r for r in build_permission_matrix(client)}
    assert len(rows) == len(ALL_DOMAINS)
    assert rows["AuditLogging"]["missing"] == ["AuditLog.Read.All"]
    assert not rows["AuditLogging"]["runnable"]
    assert not rows["IdentityAndAccess"]["runnable"]
    assert rows["PrivilegedAccess"]["runnable"]


def test_permission_check_errors_fail_closed():
    class Flaky:
        def has_permission(self, scope):
            raise RuntimeError("token endpoint down")

    rows = build_permission_matrix(Flaky(), [get_module(AssessmentDomain.AUDIT_LOGGING)])
    assert rows[0]["granted"] == []
    assert not rows[0]["runnable"]


def test_validate_permissions_report_never_collects(make_client, capsys):
    client = make_client()
    report = run_validate_permissions(client, ordered_modules(), verbose=True)
    assert report["connected"] is True
    assert report["runnable_domains"] == report["total_domains"] == len(ALL_DOMAINS)
    assert client.calls == []
    assert "PERMISSION VALIDATION MODE" in capsys.readouterr().out


# ── Replay client ─────────────────────────────────────────────────

def test_replay_serves_recorded_payloads(tmp_path):
    (tmp_path / "responses.json").write_text(json.dumps({
        "domains": {"value": [{"id": "contoso.com"}]},
        "https://graph.microsoft.com/beta/security/labels/retentionLabels": {"value": []},
    }), encoding="utf-8")
    (tmp_path / "permissions.json").write_text('["Domain.Read.All"]', encoding="utf-8")
    client = ReplayClient.from_directory(str(tmp_path))

    assert json.loads(client.get_raw_json("/domains"))["value"][0]["id"] == "contoso.com"
    assert client.get_raw_json("https://graph.microsoft.com/beta/security/labels/retentionLabels")
    assert client.has_permission("Domain.Read.All")
    assert client.organization() == {}
    with pytest.raises(GraphRequestError) as info:
        client.get_raw_json("users")
    assert info.value.status_code == 404


def test_replay_rejects_bad_directory(tmp_path):
    with pytest.raises(ReplayDataError):
        ReplayClient.from_directory(str(tmp_path / "missing"))
    (tmp_path / "responses.json").write_text("[]", encoding="utf-8")
    with pytest.raises(ReplayDataError):
        ReplayClient.from_directory(str(tmp_path))
