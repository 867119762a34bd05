import json

import pytest

import scan
from conftest import all_permissions


@pytest.fixture
def replay_dir(tmp_path):
    root = tmp_path / "replay"
    root.mkdir()
    (root / "responses.json").write_text(json.dumps({
        "users?$select=id,userType&$count=true&$top=999": {"value": [{"id": "u1", "userType": "Member"}]},
    }), encoding="utf-8")
    (root / "permissions.json").write_text(json.dumps(sorted(all_permissions())), encoding="utf-8")
    (root / "tenant.json").write_text(json.dumps({"tenant_id": "tenant-1", "display_name": "Contoso"}), encoding="utf-8")
    return root


@pytest.fixture
def settings_file(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(
        f"paths:\n  out_dir: {tmp_path / 'out'}\n"
        "execution:\n  query_timeout_seconds: 5\n  backoff_seconds: 0.01\n",
        encoding="utf-8",
    )
    return path


def _tenant_runs(tmp_path):
    return sorted((tmp_path / "out" / "Contoso").glob("*.json"))


def test_replay_run_writes_run_and_reports(tmp_path, replay_dir, settings_file):
    code = scan.main(["--replay", str(replay_dir), "--settings", str(settings_file)])
    assert code == 0

    runs = _tenant_runs(tmp_path)
    assert len(runs) == 1
    payload = json.loads(runs[0].read_text(encoding="utf-8"))
    assert payload["status"] == "Completed"
    assert payload["tenant_id"] == "tenant-1"
    assert len(payload["domains"]) == 9
    assert payload["delta"]["has_previous"] is False
    assert payload["telemetry"]["endpoints_requested"] > 0
    assert payload["telemetry"]["live_run"] is False

    run_dir = runs[0].with_suffix("")
    assert (run_dir / "report.html").exists()
    assert (run_dir / "findings.xlsx").exists()
    assert (run_dir / "raw").is_dir()


def test_second_run_carries_delta(tmp_path, replay_dir, settings_file):
    args = ["--replay", str(replay_dir), "--settings", str(settings_file), "--no-html", "--no-xlsx",
            "--domains", "AuditLogging"]
    assert scan.main(args) == 0
    assert scan.main(args) == 0
    latest = json.loads(_tenant_runs(tmp_path)[-1].read_text(encoding="utf-8"))
    assert latest["delta"]["has_previous"] is True
    assert latest["delta"]["count"] == 0


def test_no_permissions_exits_non_zero(tmp_path, replay_dir, settings_file):
    (replay_dir / "permissions.json").write_text("[]", encoding="utf-8")
    code = scan.main(["--replay", str(replay_dir), "--settings", str(settings_file), "--no-html", "--no-xlsx"])
    assert code == 1
    payload = json.loads(_tenant_runs(tmp_path)[0].read_text(encoding="utf-8"))
    assert payload["status"] == "Failed"


def test_validate_permissions_mode(tmp_path, replay_dir, settings_file):
    code = scan.main(["--replay", str(replay_dir), "--settings", str(settings_file), "--validate-permissions"])
    assert code == 0
    report = json.loads((tmp_path / "out" / "permission-validation.json").read_text(encoding="utf-8"))
    assert report["runnable_domains"] == 9
    assert not (tmp_path / "out" / "Contoso").exists()


def test_unknown_domain_is_rejected(replay_dir, settings_file):
    assert scan.main(["--replay", str(replay_dir), "--settings", str(settings_file), "--domains", "Payroll"]) == 2
