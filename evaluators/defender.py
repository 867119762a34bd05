"""Microsoft Defender (MDE): Secure Score, alerts, incidents, identity risk."""
from __future__ import annotations

from evaluators.base import CheckContext, DomainModule, enabled_policies, lower
from evaluators.registry import register_module
from schemas.domain import NormalizedFindings, make_finding
from schemas.taxonomy import AssessmentDomain, Severity
from signals.types import EndpointSpec

RECENT_DETECTION_DAYS = 7
ATTACK_SIMULATION_URL = "https://graph.microsoft.com/beta/security/attackSimulation/simulations"


def secure_score_percentage(payload: dict) -> float:
    """currentScore / maxScore of the latest Secure Score snapshot, in percent."""
    snapshots = payload.get("value") if "value" in payload else [payload]
    if not snapshots or not isinstance(snapshots[0], dict):
        return 0.0
    latest = snapshots[0]
    try:
        current = float(latest.get("currentScore") or 0)
        maximum = float(latest.get("maxScore") or 0)
    except (TypeError, ValueError):
        return 0.0
    return round(current * 100.0 / maximum, 1) if maximum else 0.0


def is_active(item: dict) -> bool:
    return lower(item.get("status")) != "resolved"


def risk_policy_coverage(policies: list[dict]) -> tuple[bool, bool]:
    """(sign-in risk covered, user risk covered) by enabled CA policies."""
    sign_in = user = False
    for policy in enabled_policies(policies):
        conditions = policy.get("conditions") or {}
        name = lower(policy.get("displayName"))
        if conditions.get("signInRiskLevels") or ("risk" in name and "sign-in" in name):
            sign_in = True
        if conditions.get("userRiskLevels") or ("risk" in name and "user" in name):
            user = True
    return sign_in, user


class DefenderModule(DomainModule):
    domain = AssessmentDomain.MICROSOFT_DEFENDER
    description = (
        "Assesses Microsoft Defender threat status: Secure Score, alerts, incidents, "
        "identity risk and attack simulation training."
    )
    required_permissions = (
        "SecurityEvents.Read.All",
        "ThreatIndicators.Read.All",
        "SecurityActions.Read.All",
        "Device.Read.All",
    )
    endpoints = (
        EndpointSpec("securityAlerts", "security/alerts_v2?$top=500", essential=True),
        EndpointSpec("secureScore", "security/secureScores?$top=1"),
        EndpointSpec("incidents", "security/incidents?$top=100"),
        EndpointSpec("riskyUsers", "identityProtection/riskyUsers?$filter=riskState ne 'none'&$top=100"),
        EndpointSpec(
            "riskDetections",
            "identityProtection/riskDetections?$top=100&$orderby=detectedDateTime desc",
        ),
        EndpointSpec("attackSimulations", ATTACK_SIMULATION_URL),
        EndpointSpec("riskBasedPolicies", "identity/conditionalAccess/policies"),
    )

    def evaluate(self, ctx: CheckContext, out: NormalizedFindings) -> None:
        alerts = ctx.records("securityAlerts")
        incidents = ctx.records("incidents")
        risky = ctx.records("riskyUsers")
        detections = ctx.records("riskDetections")
        simulations = ctx.records("attackSimulations")
        policies = ctx.records("riskBasedPolicies")
        score_pct = secure_score_percentage(ctx.object("secureScore"))

        high_alerts = [
            a for a in alerts if lower(a.get("severity")) == "high" and is_active(a)
        ]
        active_alerts = [a for a in alerts if is_active(a)]
        active_incidents = [i for i in incidents if is_active(i)]
        high_risk = [u for u in risky if lower(u.get("riskLevel")) == "high"]
        recent = [
            d for d in detections
            if (age := ctx.days_since(d.get("detectedDateTime"))) is not None
            and age <= RECENT_DETECTION_DAYS
        ]

        out.metrics.update({
            "secureScorePercentage": score_pct,
            "totalAlerts": len(alerts),
            "highSeverityAlerts": len(high_alerts),
            "mediumSeverityAlerts": sum(1 for a in alerts if lower(a.get("severity")) == "medium"),
            "activeAlerts": len(active_alerts),
            "activeIncidents": len(active_incidents),
            "riskyUsersCount": len(risky),
            "highRiskUsers": len(high_risk),
            "riskDetections": len(detections),
            "attackSimulations": len(simulations),
        })

        # MDE-001
        if score_pct < 40:
            out.add(make_finding(
                "MDE-001", "Low Secure Score",
                f"Microsoft Secure Score is {score_pct}%",
                "A Secure Score under 40% means most recommended controls are not implemented.",
                Severity.CRITICAL, False, "Security Posture",
                remediation="Work through the highest-impact Secure Score improvement actions.",
                references="https://learn.microsoft.com/en-us/defender-xdr/microsoft-secure-score",
            ))
        elif score_pct < 70:
            out.add(make_finding(
                "MDE-001", "Secure Score Below Target",
                f"Microsoft Secure Score is {score_pct}%",
                "Secure Score is below the 70% target.",
                Severity.MEDIUM, False, "Security Posture",
                remediation="Prioritise the remaining Secure Score improvement actions.",
            ))
        else:
            out.add(make_finding(
                "MDE-001", "Secure Score",
                f"Microsoft Secure Score is {score_pct}%",
                "Secure Score meets the target.",
                Severity.INFORMATIONAL, True, "Security Posture",
            ))

        # MDE-002
        if high_alerts:
            out.add(make_finding(
                "MDE-002", "High Severity Alerts",
                f"{len(high_alerts)} active high-severity security alerts",
                "Unresolved high-severity alerts may indicate an ongoing compromise.",
                Severity.CRITICAL if len(high_alerts) > 5 else Severity.HIGH,
                False, "Threat Detection",
                evidence=[a.get("title") for a in high_alerts[:10]],
                remediation="Investigate and resolve high-severity alerts in the Defender portal.",
                affected=[a.get("title") or "Untitled alert" for a in high_alerts],
            ))
        else:
            out.add(make_finding(
                "MDE-002", "No High Severity Alerts",
                "No active high-severity security alerts",
                "No unresolved high-severity alerts were found.",
                Severity.INFORMATIONAL, True, "Threat Detection",
            ))

        # MDE-003
        if active_incidents:
            out.add(make_finding(
                "MDE-003", "Active Security Incidents",
                f"{len(active_incidents)} security incidents are not resolved",
                "Open incidents correlate multiple alerts into a single attack story.",
                Severity.HIGH if len(active_incidents) > 5 else Severity.MEDIUM,
                False, "Incident Response",
                remediation="Assign and work open incidents to resolution.",
                affected=[i.get("displayName") or i.get("id", "") for i in active_incidents],
            ))
        else:
            out.add(make_finding(
                "MDE-003", "No Active Incidents",
                "No unresolved security incidents",
                "All security incidents are resolved.",
                Severity.INFORMATIONAL, True, "Incident Response",
            ))

        # MDE-004
        if high_risk:
            out.add(make_finding(
                "MDE-004", "High Risk Users",
                f"{len(high_risk)} users flagged as high risk",
                "High user risk indicates likely credential compromise.",
                Severity.CRITICAL, False, "Identity Protection",
                remediation="Force password reset and revoke sessions for high-risk users.",
                affected=[u.get("userPrincipalName") or u.get("id", "") for u in high_risk],
            ))
        elif risky:
            out.add(make_finding(
                "MDE-004", "Risky Users",
                f"{len(risky)} users flagged for risk",
                "Identity Protection has flagged users with low or medium risk.",
                Severity.MEDIUM, False, "Identity Protection",
                remediation="Review risky users and confirm or dismiss the risk.",
                affected=[u.get("userPrincipalName") or u.get("id", "") for u in risky],
            ))
        else:
            out.add(make_finding(
                "MDE-004", "No Risky Users",
                "No users currently flagged as risky",
                "Identity Protection has not flagged any users for risk.",
                Severity.INFORMATIONAL, True, "Identity Protection",
            ))

        # MDE-005
        sign_in_covered, user_covered = risk_policy_coverage(policies)
        if not sign_in_covered and not user_covered:
            out.add(make_finding(
                "MDE-005", "No Risk-Based Conditional Access",
                "Neither sign-in risk nor user risk is enforced by Conditional Access",
                "Identity Protection detections are not acted on automatically.",
                Severity.HIGH, False, "Identity Protection",
                remediation="Create sign-in risk and user risk Conditional Access policies.",
            ))
        elif not (sign_in_covered and user_covered):
            missing = "user risk" if sign_in_covered else "sign-in risk"
            out.add(make_finding(
                "MDE-005", "Partial Risk-Based Conditional Access",
                f"No Conditional Access policy enforces {missing}",
                "Only one of the two Identity Protection risk signals is enforced.",
                Severity.MEDIUM, False, "Identity Protection",
                remediation=f"Add a Conditional Access policy for {missing}.",
            ))
        else:
            out.add(make_finding(
                "MDE-005", "Risk-Based Conditional Access",
                "Sign-in risk and user risk policies are enabled",
                "Identity Protection risk is enforced at sign-in.",
                Severity.INFORMATIONAL, True, "Identity Protection",
            ))

        # MDE-006
        if not simulations:
            out.add(make_finding(
                "MDE-006", "No Attack Simulation Training",
                "No attack simulations have been run",
                "Phishing simulations measure and improve user resilience.",
                Severity.MEDIUM, False, "Security Awareness",
                remediation="Run regular phishing simulations with Attack Simulation Training.",
            ))
        else:
            out.add(make_finding(
                "MDE-006", "Attack Simulation Active",
                f"{len(simulations)} attack simulations configured",
                "Phishing simulations are used for security awareness training.",
                Severity.INFORMATIONAL, True, "Security Awareness",
            ))

        # MDE-007
        if recent:
            out.add(make_finding(
                "MDE-007", "Recent Risk Detections",
                f"{len(recent)} risk detections in the last {RECENT_DETECTION_DAYS} days",
                "Recent detections include events such as unfamiliar sign-in properties or leaked credentials.",
                Severity.HIGH if len(recent) > 10 else Severity.MEDIUM,
                False, "Identity Protection",
                evidence=[
                    {"riskEventType": d.get("riskEventType"), "user": d.get("userPrincipalName")}
                    for d in recent[:10]
                ],
                remediation="Review recent risk detections and remediate affected accounts.",
            ))
        else:
            out.add(make_finding(
                "MDE-007", "No Recent Risk Detections",
                f"No risk detections in the last {RECENT_DETECTION_DAYS} days",
                "Identity Protection reports no recent detections.",
                Severity.INFORMATIONAL, True, "Identity Protection",
            ))

        out.summary.append(f"Secure Score: {score_pct:.1f}%")
        out.summary.append(
            f"Security Alerts: {len(alerts)} ({len(high_alerts)} high, {len(active_alerts)} active)"
        )
        out.summary.append(f"Active Incidents: {len(active_incidents)}")
        out.summary.append(f"Risky Users: {len(risky)} ({len(high_risk)} high risk)")
        out.summary.append(f"Attack Simulations: {len(simulations)}")


register_module(DefenderModule())
