"""Audit & Logging (AUD): log access, sign-in failures, alert backlog."""
from __future__ import annotations

from evaluators.base import CheckContext, DomainModule, lower, pct
from evaluators.registry import register_module
from schemas.domain import NormalizedFindings, make_finding
from schemas.taxonomy import AssessmentDomain, Severity
from signals.types import EndpointSpec

FAILED_SIGN_IN_HIGH = 30.0
FAILED_SIGN_IN_MEDIUM = 15.0
MIN_AUDIT_CATEGORIES = 3


def sign_in_failed(sign_in: dict) -> bool:
    status = sign_in.get("status") or {}
    try:
        return int(status.get("errorCode") or 0) != 0
    except (TypeError, ValueError):
        return True


class AuditLoggingModule(DomainModule):
    domain = AssessmentDomain.AUDIT_LOGGING
    description = (
        "Assesses access to directory audit and sign-in logs, failed sign-in "
        "patterns, alert backlog and log coverage."
    )
    required_permissions = (
        "AuditLog.Read.All",
        "Directory.Read.All",
        "Policy.Read.All",
        "SecurityEvents.Read.All",
    )
    endpoints = (
        EndpointSpec(
            "directoryAudits",
            "auditLogs/directoryAudits?$top=100&$orderby=activityDateTime desc",
            essential=True,
        ),
        EndpointSpec(
            "signInLogs",
            "auditLogs/signIns?$top=100&$orderby=createdDateTime desc",
            essential=True,
        ),
        EndpointSpec("provisioningLogs", "auditLogs/provisioning?$top=50&$orderby=activityDateTime desc"),
        EndpointSpec("securityAlerts", "security/alerts_v2?$top=100"),
        EndpointSpec("riskyUsers", "identityProtection/riskyUsers?$top=50"),
        EndpointSpec("namedLocations", "identity/conditionalAccess/namedLocations"),
    )

    def evaluate(self, ctx: CheckContext, out: NormalizedFindings) -> None:
        audits = ctx.records("directoryAudits")
        sign_ins = ctx.records("signInLogs")
        alerts = ctx.records("securityAlerts")
        risky = ctx.records("riskyUsers")
        locations = ctx.records("namedLocations")

        failed = [s for s in sign_ins if sign_in_failed(s)]
        active_alerts = [a for a in alerts if lower(a.get("status")) != "resolved"]
        categories = {a.get("category") for a in audits if a.get("category")}

        out.metrics.update({
            "directoryAuditsCount": len(audits),
            "signInLogsCount": len(sign_ins),
            "failedSignIns": len(failed),
            "successfulSignIns": len(sign_ins) - len(failed),
            "uniqueSignInUsers": len({s.get("userId") for s in sign_ins if s.get("userId")}),
            "securityAlertsCount": len(alerts),
            "namedLocationsCount": len(locations),
        })

        # AUD-001 / AUD-002
        for check_id, key, label in (
            ("AUD-001", "directoryAudits", "Directory audit logs"),
            ("AUD-002", "signInLogs", "Sign-in logs"),
        ):
            if ctx.unavailable(key):
                out.add(make_finding(
                    check_id, f"{label} Not Accessible",
                    f"{label} could not be read",
                    f"{label} are needed for investigations; access may require an Entra ID P1 licence.",
                    Severity.HIGH, False, "Log Access",
                    remediation="Grant AuditLog.Read.All and confirm the tenant is licensed for log retention.",
                ))
            else:
                out.add(make_finding(
                    check_id, f"{label} Accessible",
                    f"{label} are accessible",
                    f"{label} were retrieved successfully.",
                    Severity.INFORMATIONAL, True, "Log Access",
                ))

        # AUD-003
        failed_rate = pct(len(failed), len(sign_ins))
        out.metrics["failedSignInRate"] = failed_rate
        if not sign_ins:
            out.add(make_finding(
                "AUD-003", "Failed Sign-In Rate",
                "No sign-in events were available to evaluate",
                "The sampled sign-in log was empty.",
                Severity.INFORMATIONAL, True, "Sign-In Activity",
            ))
        elif failed_rate > FAILED_SIGN_IN_MEDIUM:
            out.add(make_finding(
                "AUD-003", "High Failed Sign-In Rate",
                f"{failed_rate}% of recent sign-ins failed",
                f"{len(failed)} of {len(sign_ins)} sampled sign-ins failed, a possible password spray.",
                Severity.HIGH if failed_rate > FAILED_SIGN_IN_HIGH else Severity.MEDIUM,
                False, "Sign-In Activity",
                remediation="Investigate failing accounts and source IPs; enable smart lockout and MFA.",
            ))
        else:
            out.add(make_finding(
                "AUD-003", "Failed Sign-In Rate",
                f"{failed_rate}% of recent sign-ins failed",
                "The failed sign-in rate is within the normal range.",
                Severity.INFORMATIONAL, True, "Sign-In Activity",
            ))

        # AUD-004
        if not locations:
            out.add(make_finding(
                "AUD-004", "No Named Locations",
                "No named locations are defined",
                "Named locations give context to sign-in logs and location-based Conditional Access.",
                Severity.MEDIUM, False, "Sign-In Activity",
                remediation="Define trusted corporate IP ranges and countries as named locations.",
            ))
        else:
            out.add(make_finding(
                "AUD-004", "Named Locations",
                f"{len(locations)} named locations defined",
                "Named locations are configured.",
                Severity.INFORMATIONAL, True, "Sign-In Activity",
            ))

        # AUD-005
        if active_alerts:
            out.add(make_finding(
                "AUD-005", "Unresolved Security Alerts",
                f"{len(active_alerts)} security alerts are not resolved",
                "An alert backlog means security signals are not being acted on.",
                Severity.HIGH if len(active_alerts) > 10 else Severity.MEDIUM,
                False, "Monitoring",
                remediation="Triage the alert backlog and assign owners for alert response.",
                affected=[a.get("title") or "Untitled alert" for a in active_alerts[:10]],
            ))
        else:
            out.add(make_finding(
                "AUD-005", "Security Alerts",
                "No unresolved security alerts",
                "The alert queue is clear.",
                Severity.INFORMATIONAL, True, "Monitoring",
            ))

        # AUD-006
        out.add(make_finding(
            "AUD-006", "Log Retention",
            "Default audit log retention is 30 days",
            "Entra ID keeps audit and sign-in logs for 30 days; longer retention needs export.",
            Severity.LOW, True, "Retention",
            remediation="Stream logs to Log Analytics or a SIEM for long-term retention.",
        ))

        # AUD-007
        if risky:
            out.add(make_finding(
                "AUD-007", "Risky Users in Logs",
                f"{len(risky)} risky users recorded",
                "Identity Protection has recorded risky users that need review.",
                Severity.HIGH, False, "Identity Protection",
                remediation="Review risky users and remediate compromised accounts.",
                affected=[u.get("userPrincipalName") or u.get("id", "") for u in risky],
            ))
        else:
            out.add(make_finding(
                "AUD-007", "Risky Users",
                "No risky users recorded",
                "Identity Protection has no risky users on record.",
                Severity.INFORMATIONAL, True, "Identity Protection",
            ))

        # AUD-008
        if len(categories) >= MIN_AUDIT_CATEGORIES:
            out.add(make_finding(
                "AUD-008", "Audit Category Coverage",
                f"Audit events span {len(categories)} categories",
                "Directory audit logging covers a broad range of activity.",
                Severity.INFORMATIONAL, True, "Log Coverage",
            ))
        else:
            out.add(make_finding(
                "AUD-008", "Limited Audit Category Coverage",
                f"Audit events span only {len(categories)} categories",
                "Few audit categories were seen in the sample; logging may be incomplete.",
                Severity.LOW, False, "Log Coverage",
                remediation="Confirm diagnostic settings export all audit categories.",
                affected=sorted(categories),
            ))

        out.summary.append(f"Directory Audit Logs: {len(audits)} entries")
        out.summary.append(f"Sign-In Logs: {len(sign_ins)} entries ({len(failed)} failed)")
        out.summary.append(f"Security Alerts: {len(alerts)} ({len(active_alerts)} active)")
        out.summary.append(f"Named Locations: {len(locations)}")


register_module(AuditLoggingModule())
