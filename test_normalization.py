import json
from datetime import datetime, timedelta, timezone

import pytest

from evaluators.base import CheckContext, parse_collection, parse_datetime, parse_object
from evaluators.identity import IdentityAccessModule
from evaluators.registry import MODULES, get_module
from schemas.taxonomy import DOMAIN_CHECK_PREFIX, AssessmentDomain, Severity
from signals.types import CollectionResult

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


def _result(domain, payloads=None, unavailable=(), warnings=()):
    return CollectionResult(
        domain=domain,
        raw_data={k: json.dumps(v) for k, v in (payloads or {}).items()},
        unavailable_endpoints=list(unavailable),
        warnings=list(warnings),
        collected_at=NOW,
    )


def _normalize(domain, payloads=None, **kwargs):
    return get_module(domain).normalize(_result(domain, payloads, **kwargs))


def _by_id(findings):
    return {f.check_id: f for f in findings.findings}


def _iso(days_ago):
    return (NOW - timedelta(days=days_ago)).strftime("%Y-%m-%dT%H:%M:%SZ")


# ── Shared contract ───────────────────────────────────────────────

@pytest.mark.parametrize("domain", list(AssessmentDomain))
def test_every_check_emitted_once_on_empty_data(domain):
    findings = _normalize(domain)
    ids = findings.check_ids()
    prefix = DOMAIN_CHECK_PREFIX[domain]
    assert ids == [f"{prefix}-{i:03d}" for i in range(1, len(ids) + 1)]
    assert len(ids) >= 7
    assert findings.summary


@pytest.mark.parametrize("domain", list(AssessmentDomain))
def test_failed_collection_yields_summary_only(domain):
    result = CollectionResult.failed(domain, "boom")
    findings = MODULES[domain].normalize(result)
    assert findings.findings == []
    assert findings.summary == ["Collection failed: boom"]


def test_error_during_normalization_is_contained():
    class Broken(IdentityAccessModule):
        def evaluate(self, ctx, out):
            raise RuntimeError("bad payload")

    findings = Broken().normalize(_result(AssessmentDomain.IDENTITY_AND_ACCESS))
    assert findings.findings == []
    assert findings.summary == ["Error during normalization: bad payload"]


def test_warnings_add_note_to_summary():
    findings = _normalize(AssessmentDomain.AUDIT_LOGGING, warnings=["Failed to collect x: timeout"])
    assert findings.summary[-1] == "Note: 1 data points could not be collected"


def test_malformed_payload_is_treated_as_empty():
    result = CollectionResult(domain=AssessmentDomain.IDENTITY_AND_ACCESS, raw_data={"users": "{not json"})
    assert CheckContext(result).records("users") == []
    assert parse_collection('{"value": "nope"}') == []
    assert parse_collection('[{"id": 1}, 3]') == [{"id": 1}]
    assert parse_object("[1, 2]") == {}


def test_parse_datetime_handles_graph_precision():
    dt = parse_datetime("2024-03-01T10:00:00.1234567Z")
    assert dt == datetime(2024, 3, 1, 10, 0, 0, 123456, tzinfo=timezone.utc)
    assert parse_datetime("not a date") is None
    assert parse_datetime(None) is None


# ── IdentityAndAccess ─────────────────────────────────────────────

def test_iam_no_guests_is_compliant_informational():
    users = [{"id": f"u{i}", "userType": "Member", "accountEnabled": True} for i in range(100)]
    findings = _by_id(_normalize(AssessmentDomain.IDENTITY_AND_ACCESS, {"users": {"value": users}}))
    guest = findings["IAM-005"]
    assert guest.is_compliant
    assert guest.severity is Severity.INFORMATIONAL
    assert "0.0%" in guest.title


def test_iam_excessive_global_admins():
    members = [
        {"@odata.type": "#microsoft.graph.user", "id": f"a{i}", "userPrincipalName": f"admin{i}@contoso.com"}
        for i in range(6)
    ]
    roles = [{"displayName": "Global Administrator", "members": members}]
    findings = _by_id(_normalize(AssessmentDomain.IDENTITY_AND_ACCESS, {"directoryRoles": {"value": roles}}))
    assert not findings["IAM-001"].is_compliant
    assert findings["IAM-001"].severity is Severity.HIGH
    assert len(findings["IAM-001"].affected_resources) == 6


def test_iam_conditional_access_covers_admins_and_legacy_auth():
    policies = [
        {
            "displayName": "Require MFA for admins",
            "state": "enabled",
            "conditions": {"users": {"includeRoles": ["62e90394-69f5-4237-9190-012177145e10"]}},
            "grantControls": {"builtInControls": ["mfa"]},
        },
        {
            "displayName": "Block legacy auth",
            "state": "enabled",
            "conditions": {"users": {"includeUsers": ["All"]}, "clientAppTypes": ["exchangeActiveSync", "other"]},
            "grantControls": {"builtInControls": ["block"]},
        },
    ]
    findings = _by_id(_normalize(
        AssessmentDomain.IDENTITY_AND_ACCESS, {"conditionalAccessPolicies": {"value": policies}},
    ))
    assert findings["IAM-002"].is_compliant
    assert findings["IAM-003"].is_compliant
    assert findings["IAM-006"].is_compliant


def test_iam_no_policies_is_critical():
    findings = _by_id(_normalize(AssessmentDomain.IDENTITY_AND_ACCESS))
    assert findings["IAM-002"].severity is Severity.CRITICAL
    assert not findings["IAM-002"].is_compliant


# ── PrivilegedAccess ──────────────────────────────────────────────

def test_pam_unavailable_eligibility_means_pim_missing():
    findings = _by_id(_normalize(AssessmentDomain.PRIVILEGED_ACCESS, unavailable=["eligibleAssignments"]))
    assert findings["PAM-002"].title == "Privileged Identity Management data could not be read"
    assert findings["PAM-002"].severity is Severity.HIGH


def test_pam_single_global_admin_is_lockout_risk():
    roles = [{"roleTemplateId": "62e90394-69f5-4237-9190-012177145e10", "members": [{"id": "a"}]}]
    findings = _by_id(_normalize(AssessmentDomain.PRIVILEGED_ACCESS, {"directoryRoles": {"value": roles}}))
    assert findings["PAM-001"].severity is Severity.MEDIUM
    assert not findings["PAM-001"].is_compliant


# ── DeviceEndpoint ────────────────────────────────────────────────

def test_dev_no_devices_is_compliant():
    findings = _by_id(_normalize(AssessmentDomain.DEVICE_ENDPOINT))
    assert findings["DEV-002"].is_compliant
    assert findings["DEV-003"].is_compliant
    assert not findings["DEV-001"].is_compliant


def test_dev_low_compliance_rate():
    devices = [{"id": str(i), "complianceState": "compliant" if i < 5 else "noncompliant",
                "isEncrypted": True, "operatingSystem": "Windows"} for i in range(10)]
    out = _normalize(AssessmentDomain.DEVICE_ENDPOINT, {"managedDevices": {"value": devices}})
    findings = _by_id(out)
    assert findings["DEV-002"].severity is Severity.HIGH
    assert findings["DEV-003"].is_compliant
    assert out.metrics["complianceRate"] == 50.0
    assert out.metrics["windowsDevices"] == 10


# ── ExchangeEmailSecurity ─────────────────────────────────────────

def _domain_record(name, *records):
    return {"id": name, "isVerified": True, "serviceConfigurationRecords": list(records)}


def test_exo_weak_dmarc_and_dkim_detection():
    domains = [_domain_record(
        "contoso.com",
        {"recordType": "Txt", "text": "v=spf1 include:spf.protection.outlook.com -all"},
        {"recordType": "TXT", "text": "v=DMARC1; p=none; rua=mailto:d@contoso.com"},
        {"recordType": "CName", "label": "Selector1._domainkey.contoso.com"},
    )]
    findings = _by_id(_normalize(AssessmentDomain.EXCHANGE_EMAIL_SECURITY, {"domains": {"value": domains}}))
    assert findings["EXO-001"].severity is Severity.MEDIUM
    assert not findings["EXO-001"].is_compliant
    assert findings["EXO-003"].is_compliant


def test_exo_manual_checks_are_recorded():
    findings = _by_id(_normalize(AssessmentDomain.EXCHANGE_EMAIL_SECURITY))
    assert findings["EXO-007"].is_compliant
    assert findings["EXO-008"].is_compliant
    assert findings["EXO-001"].severity is Severity.CRITICAL


def test_exo_security_defaults_count_as_baseline():
    findings = _by_id(_normalize(
        AssessmentDomain.EXCHANGE_EMAIL_SECURITY, {"securityDefaults": {"isEnabled": True}},
    ))
    assert findings["EXO-005"].is_compliant


# ── MicrosoftDefender ─────────────────────────────────────────────

def test_mde_secure_score_and_alerts():
    payloads = {
        "secureScore": {"value": [{"currentScore": 30, "maxScore": 100}]},
        "securityAlerts": {"value": [
            {"title": "Suspicious inbox rule", "severity": "high", "status": "new"},
            {"title": "Old alert", "severity": "high", "status": "resolved"},
        ]},
    }
    out = _normalize(AssessmentDomain.MICROSOFT_DEFENDER, payloads)
    findings = _by_id(out)
    assert findings["MDE-001"].severity is Severity.CRITICAL
    assert findings["MDE-002"].severity is Severity.HIGH
    assert findings["MDE-002"].affected_resources == ("Suspicious inbox rule",)
    assert out.metrics["secureScorePercentage"] == 30.0


# ── DataProtectionCompliance ──────────────────────────────────────

def test_dlp_unavailable_policies_flagged_informational():
    findings = _by_id(_normalize(AssessmentDomain.DATA_PROTECTION_COMPLIANCE, unavailable=["dlpPolicies"]))
    assert findings["DLP-008"].severity is Severity.INFORMATIONAL
    assert not findings["DLP-008"].is_compliant


def test_dlp_workload_gaps():
    policies = [{"displayName": "PII", "isEnabled": True, "locations": ["Exchange"]}]
    findings = _by_id(_normalize(AssessmentDomain.DATA_PROTECTION_COMPLIANCE, {"dlpPolicies": {"value": policies}}))
    assert findings["DLP-002"].is_compliant
    assert not findings["DLP-005"].is_compliant
    assert set(findings["DLP-005"].affected_resources) == {"SharePoint/OneDrive", "Microsoft Teams"}


# ── AuditLogging ──────────────────────────────────────────────────

def test_aud_high_failed_sign_in_rate():
    sign_ins = [{"userId": str(i), "status": {"errorCode": 50126 if i < 4 else 0}} for i in range(10)]
    out = _normalize(AssessmentDomain.AUDIT_LOGGING, {"signInLogs": {"value": sign_ins}})
    findings = _by_id(out)
    assert findings["AUD-003"].severity is Severity.HIGH
    assert out.metrics["failedSignInRate"] == 40.0


def test_aud_unavailable_logs():
    findings = _by_id(_normalize(AssessmentDomain.AUDIT_LOGGING, unavailable=["directoryAudits", "signInLogs"]))
    assert not findings["AUD-001"].is_compliant
    assert not findings["AUD-002"].is_compliant


# ── AppGovernance ─────────────────────────────────────────────────

def test_app_user_consent_and_risky_grants():
    payloads = {
        "authorizationPolicy": {"defaultUserRolePermissions": {
            "permissionGrantPoliciesAssigned": ["ManagePermissionGrantsForSelf.microsoft-user-default-legacy"],
        }},
        "enterpriseApps": {"value": [{"id": "sp1", "displayName": "Mail Sync"}]},
        "oauth2Grants": {"value": [{"clientId": "sp1", "consentType": "Principal", "scope": "Mail.ReadWrite openid"}]},
    }
    findings = _by_id(_normalize(AssessmentDomain.APP_GOVERNANCE, payloads))
    assert not findings["APP-001"].is_compliant
    assert not findings["APP-002"].is_compliant
    assert findings["APP-002"].affected_resources[0].startswith("Mail Sync")


# ── CollaborationSecurity ─────────────────────────────────────────

def test_col_stale_guests():
    guests = [
        {"id": "g1", "userPrincipalName": "old@ext.com", "signInActivity": {"lastSignInDateTime": _iso(200)}},
        {"id": "g2", "userPrincipalName": "recent@ext.com", "signInActivity": {"lastSignInDateTime": _iso(5)}},
        {"id": "g3", "userPrincipalName": "never@ext.com"},
    ]
    out = _normalize(AssessmentDomain.COLLABORATION_SECURITY, {"guestUsers": {"value": guests}})
    findings = _by_id(out)
    assert not findings["COL-002"].is_compliant
    assert set(findings["COL-002"].affected_resources) == {"old@ext.com", "never@ext.com"}
    assert out.metrics["staleGuests"] == 2


def test_col_group_creation_restricted():
    settings = [{
        "templateId": "62375ab9-6b52-47ed-826b-58e47e0e304b",
        "values": [{"name": "EnableGroupCreation", "value": "false"}],
    }]
    findings = _by_id(_normalize(AssessmentDomain.COLLABORATION_SECURITY, {"groupSettings": {"value": settings}}))
    assert findings["COL-006"].is_compliant
