"""Exchange & Email Security (EXO): DMARC / SPF / DKIM and mail threats.

DNS posture is read from the ``serviceConfigurationRecords`` that the
collected domain records carry; no live DNS lookups are made.
"""
from __future__ import annotations

from evaluators.base import (
    CheckContext,
    DomainModule,
    client_app_types,
    enabled_policies,
    grant_controls,
    lower,
)
from evaluators.registry import register_module
from schemas.domain import NormalizedFindings, make_finding
from schemas.taxonomy import AssessmentDomain, Severity
from signals.types import EndpointSpec

DKIM_SELECTORS = ("selector1._domainkey", "selector2._domainkey")


def dns_records(domain: dict) -> list[dict]:
    return [r for r in domain.get("serviceConfigurationRecords") or [] if isinstance(r, dict)]


def _txt_contains(domain: dict, marker: str) -> bool:
    marker = marker.lower()
    return any(
        lower(r.get("recordType")) == "txt" and marker in lower(r.get("text"))
        for r in dns_records(domain)
    )


def has_dmarc(domain: dict) -> bool:
    return _txt_contains(domain, "v=DMARC1")


def has_weak_dmarc(domain: dict) -> bool:
    return any("p=none" in lower(r.get("text")) for r in dns_records(domain))


def has_spf(domain: dict) -> bool:
    return _txt_contains(domain, "v=spf1")


def has_dkim(domain: dict) -> bool:
    return any(
        lower(r.get("recordType")) == "cname"
        and any(s in lower(r.get("label")) for s in DKIM_SELECTORS)
        for r in dns_records(domain)
    )


class EmailSecurityModule(DomainModule):
    domain = AssessmentDomain.EXCHANGE_EMAIL_SECURITY
    description = (
        "Assesses email authentication (DMARC, DKIM, SPF), email threat alerts, "
        "legacy mail protocols and baseline protection."
    )
    required_permissions = (
        "Organization.Read.All",
        "Domain.Read.All",
        "Mail.Read",
        "SecurityEvents.Read.All",
    )
    endpoints = (
        EndpointSpec("domains", "domains", essential=True),
        EndpointSpec("securityDefaults", "policies/identitySecurityDefaultsEnforcementPolicy"),
        EndpointSpec(
            "organization",
            "organization?$select=id,displayName,verifiedDomains,securityComplianceCenterUrl",
        ),
        EndpointSpec("conditionalAccessPolicies", "identity/conditionalAccess/policies"),
        EndpointSpec("emailAlerts", "security/alerts_v2?$top=100&$filter=category eq 'Email'"),
        EndpointSpec(
            "mailApps",
            "servicePrincipals?$filter=tags/any(t:t eq 'WindowsAzureActiveDirectoryIntegratedApp')"
            "&$select=id,displayName,appId,tags",
        ),
    )

    def evaluate(self, ctx: CheckContext, out: NormalizedFindings) -> None:
        domains = ctx.records("domains")
        ca_policies = ctx.records("conditionalAccessPolicies")
        alerts = ctx.records("emailAlerts")
        security_defaults = ctx.object("securityDefaults")

        verified = [d for d in domains if d.get("isVerified") is True]
        with_dmarc = [d for d in domains if has_dmarc(d)]
        with_spf = [d for d in domains if has_spf(d)]
        with_dkim = [d for d in domains if has_dkim(d)]

        out.metrics.update({
            "totalDomains": len(domains),
            "verifiedDomains": len(verified),
            "recentEmailAlerts": len(alerts),
            "dmarcConfigured": len(with_dmarc),
            "spfConfigured": len(with_spf),
            "dkimConfigured": len(with_dkim),
        })

        self._check_dmarc(out, verified, with_dmarc)
        self._check_spf(out, verified, with_spf)
        self._check_dkim(out, with_dkim)
        self._check_alerts(out, alerts)
        self._check_baseline(out, security_defaults, ca_policies)
        self._check_legacy_protocols(out, ca_policies)

        out.add(make_finding(
            "EXO-007", "Mailbox Auditing",
            "Mailbox audit configuration should be verified in Exchange Online",
            "Mailbox auditing records owner, delegate and admin actions on mailboxes.",
            Severity.MEDIUM, True, "Auditing",
            remediation="Confirm mailbox auditing is on by default and not bypassed for any account.",
        ))
        out.add(make_finding(
            "EXO-008", "External Forwarding",
            "Automatic external forwarding configuration should be verified",
            "Auto-forwarding to external recipients is a common exfiltration path.",
            Severity.MEDIUM, True, "Data Exfiltration",
            remediation="Disable automatic external forwarding in the outbound spam filter policy.",
        ))

        out.summary.append(f"Domains: {len(domains)} ({len(verified)} verified)")
        out.summary.append(
            f"Email Authentication: DMARC: {len(with_dmarc)}, SPF: {len(with_spf)}, DKIM: {len(with_dkim)}"
        )
        out.summary.append(f"Email Alerts: {len(alerts)}")

    def _check_dmarc(self, out: NormalizedFindings, verified: list[dict], with_dmarc: list[dict]) -> None:
        dmarc_ids = {d.get("id") for d in with_dmarc}
        if not with_dmarc:
            out.add(make_finding(
                "EXO-001", "DMARC Not Configured",
                "No domains have DMARC configured",
                "DMARC helps prevent email spoofing and phishing.",
                Severity.CRITICAL, False, "Email Authentication",
                remediation="Publish DMARC TXT records for all sending domains, starting with p=none and monitoring reports.",
                references="https://learn.microsoft.com/en-us/microsoft-365/security/office-365-security/email-authentication-dmarc-configure",
            ))
        elif len(with_dmarc) < len(verified):
            missing = [d.get("id") or "Unknown" for d in verified if d.get("id") not in dmarc_ids]
            out.add(make_finding(
                "EXO-001", "DMARC Partially Configured",
                f"DMARC configured on {len(with_dmarc)} of {len(verified)} domains",
                "Some verified domains are missing DMARC configuration.",
                Severity.HIGH, False, "Email Authentication",
                remediation="Configure DMARC for all verified domains.",
                affected=missing,
            ))
        else:
            weak = [d for d in with_dmarc if has_weak_dmarc(d)]
            if weak:
                out.add(make_finding(
                    "EXO-001", "DMARC Policy Too Weak",
                    f"{len(weak)} domains have DMARC set to 'none' (monitoring only)",
                    "A DMARC policy of 'none' does not reject spoofed mail.",
                    Severity.MEDIUM, False, "Email Authentication",
                    remediation="After monitoring DMARC reports, move the policy to p=quarantine or p=reject.",
                    affected=[d.get("id") or "Unknown" for d in weak],
                ))
            else:
                out.add(make_finding(
                    "EXO-001", "DMARC Configured",
                    "DMARC is configured on all verified domains",
                    "Email authentication via DMARC is enforced.",
                    Severity.INFORMATIONAL, True, "Email Authentication",
                ))

    def _check_spf(self, out: NormalizedFindings, verified: list[dict], with_spf: list[dict]) -> None:
        if not with_spf:
            out.add(make_finding(
                "EXO-002", "SPF Not Configured",
                "No domains have SPF configured",
                "SPF lists the hosts allowed to send mail for a domain.",
                Severity.HIGH, False, "Email Authentication",
                remediation="Publish SPF TXT records listing authorized sending sources.",
            ))
        elif len(with_spf) < len(verified):
            out.add(make_finding(
                "EXO-002", "SPF Partially Configured",
                f"SPF configured on {len(with_spf)} of {len(verified)} domains",
                "Some verified domains are missing SPF configuration.",
                Severity.MEDIUM, False, "Email Authentication",
                remediation="Configure SPF for all verified domains.",
            ))
        else:
            out.add(make_finding(
                "EXO-002", "SPF Configured",
                "SPF is configured on all verified domains",
                "Sender Policy Framework is in place.",
                Severity.INFORMATIONAL, True, "Email Authentication",
            ))

    def _check_dkim(self, out: NormalizedFindings, with_dkim: list[dict]) -> None:
        if not with_dkim:
            out.add(make_finding(
                "EXO-003", "DKIM Not Configured",
                "No domains have DKIM configured",
                "DKIM signs outbound mail so receivers can verify its integrity.",
                Severity.MEDIUM, False, "Email Authentication",
                remediation="Enable DKIM signing for all verified domains in the Defender portal.",
            ))
        else:
            out.add(make_finding(
                "EXO-003", "DKIM Configured",
                f"DKIM configured on {len(with_dkim)} domains",
                "DKIM selector records are published.",
                Severity.INFORMATIONAL, True, "Email Authentication",
            ))

    def _check_alerts(self, out: NormalizedFindings, alerts: list[dict]) -> None:
        titles = [a.get("title") or "Untitled alert" for a in alerts]
        if len(alerts) > 10:
            out.add(make_finding(
                "EXO-004", "High Volume of Email Alerts",
                f"{len(alerts)} email-related security alerts detected",
                "A high volume of email alerts may indicate an active phishing campaign.",
                Severity.HIGH, False, "Threat Detection",
                remediation="Triage email alerts in the Defender portal and tighten anti-phishing policies.",
                affected=titles[:10],
            ))
        elif alerts:
            out.add(make_finding(
                "EXO-004", "Email Alerts Present",
                f"{len(alerts)} email-related security alerts",
                "Some email security alerts have been generated.",
                Severity.MEDIUM, False, "Threat Detection",
                remediation="Review the email alerts for potential compromise.",
                affected=titles,
            ))
        else:
            out.add(make_finding(
                "EXO-004", "No Recent Email Alerts",
                "No recent email security alerts detected",
                "No email-related security alerts in the monitored period.",
                Severity.INFORMATIONAL, True, "Threat Detection",
            ))

    def _check_baseline(
        self, out: NormalizedFindings, security_defaults: dict, ca_policies: list[dict]
    ) -> None:
        if security_defaults.get("isEnabled") is True or enabled_policies(ca_policies):
            out.add(make_finding(
                "EXO-005", "Baseline Protection",
                "Security Defaults or Conditional Access protect mailbox sign-ins",
                "Baseline sign-in protection applies to Exchange Online.",
                Severity.INFORMATIONAL, True, "Baseline Protection",
            ))
        else:
            out.add(make_finding(
                "EXO-005", "No Baseline Protection",
                "Neither Security Defaults nor Conditional Access is enabled",
                "Mailbox sign-ins have no baseline MFA or legacy protocol protection.",
                Severity.LOW, False, "Baseline Protection",
                remediation="Enable Security Defaults or deploy equivalent Conditional Access policies.",
            ))

    def _check_legacy_protocols(self, out: NormalizedFindings, ca_policies: list[dict]) -> None:
        blocking = [
            p for p in enabled_policies(ca_policies)
            if "other" in client_app_types(p) and "block" in grant_controls(p)
        ]
        if blocking:
            out.add(make_finding(
                "EXO-006", "Legacy Auth Blocked",
                "Legacy authentication protocols are blocked",
                "IMAP, POP3 and other legacy protocols that bypass MFA are blocked.",
                Severity.INFORMATIONAL, True, "Authentication",
            ))
        else:
            out.add(make_finding(
                "EXO-006", "Legacy Auth Not Blocked",
                "Legacy authentication protocols are not blocked for email",
                "IMAP, POP3 and SMTP AUTH bypass MFA and are used for credential attacks.",
                Severity.HIGH, False, "Authentication",
                remediation="Block legacy authentication via Conditional Access.",
            ))


register_module(EmailSecurityModule())
