"""Data Protection & Compliance (DLP): labels, DLP policies, retention."""
from __future__ import annotations

from evaluators.base import CheckContext, DomainModule, lower
from evaluators.registry import register_module
from schemas.domain import NormalizedFindings, make_finding
from schemas.taxonomy import AssessmentDomain, Severity
from signals.types import EndpointSpec

GRAPH_BETA = "https://graph.microsoft.com/beta/"

# workload label -> location substrings that count as coverage
DLP_WORKLOADS = {
    "Exchange/Email": ("exchange",),
    "SharePoint/OneDrive": ("sharepoint", "onedrive"),
    "Microsoft Teams": ("teams",),
}


def policy_locations(policy: dict) -> list[str]:
    locations = []
    for loc in policy.get("locations") or []:
        if isinstance(loc, dict):
            loc = loc.get("name") or loc.get("workload") or ""
        locations.append(lower(loc))
    return locations


def coverage_gaps(policies: list[dict]) -> list[str]:
    covered = set()
    for policy in policies:
        for loc in policy_locations(policy):
            for workload, markers in DLP_WORKLOADS.items():
                if any(m in loc for m in markers):
                    covered.add(workload)
    return [w for w in DLP_WORKLOADS if w not in covered]


class DataProtectionModule(DomainModule):
    domain = AssessmentDomain.DATA_PROTECTION_COMPLIANCE
    description = "Assesses DLP policies, sensitivity labels, retention policies, and compliance posture."
    required_permissions = (
        "InformationProtectionPolicy.Read.All",
        "Policy.Read.All",
        "Directory.Read.All",
    )
    endpoints = (
        EndpointSpec("sensitivityLabels", "informationProtection/policy/labels", essential=True),
        EndpointSpec("dlpPolicies", GRAPH_BETA + "security/dataLossPreventionPolicies", essential=True),
        EndpointSpec("retentionLabels", GRAPH_BETA + "security/labels/retentionLabels"),
        EndpointSpec("sensitiveTypes", GRAPH_BETA + "dataClassification/sensitiveTypes"),
    )

    def evaluate(self, ctx: CheckContext, out: NormalizedFindings) -> None:
        labels = ctx.records("sensitivityLabels")
        dlp = ctx.records("dlpPolicies")
        retention = ctx.records("retentionLabels")
        sensitive_types = ctx.records("sensitiveTypes")

        published = [l for l in labels if l.get("isActive") is True]
        enabled_dlp = [p for p in dlp if p.get("isEnabled") is True]

        out.metrics.update({
            "sensitivityLabelsCount": len(labels),
            "publishedLabelsCount": len(published),
            "dlpPoliciesCount": len(dlp),
            "enabledDlpPolicies": len(enabled_dlp),
            "retentionLabelsCount": len(retention),
            "sensitiveTypesCount": len(sensitive_types),
        })

        # DLP-001
        if not labels:
            out.add(make_finding(
                "DLP-001", "No Sensitivity Labels",
                "No sensitivity labels are defined",
                "Sensitivity labels classify and protect documents and email.",
                Severity.HIGH, False, "Information Protection",
                remediation="Define a sensitivity label taxonomy and publish it to users.",
                references="https://learn.microsoft.com/en-us/purview/sensitivity-labels",
            ))
        elif not published:
            out.add(make_finding(
                "DLP-001", "Sensitivity Labels Not Published",
                "Sensitivity labels exist but none are active",
                f"Found {len(labels)} sensitivity labels but none are published/active.",
                Severity.MEDIUM, False, "Information Protection",
                remediation="Publish sensitivity labels through a label policy.",
            ))
        else:
            out.add(make_finding(
                "DLP-001", "Sensitivity Labels Published",
                "Sensitivity labels are defined and published",
                f"Found {len(labels)} sensitivity labels with {len(published)} published.",
                Severity.INFORMATIONAL, True, "Information Protection",
            ))

        # DLP-002
        if not dlp:
            out.add(make_finding(
                "DLP-002", "No DLP Policies",
                "No data loss prevention policies are configured",
                "DLP policies help prevent accidental sharing of sensitive information.",
                Severity.CRITICAL, False, "Data Loss Prevention",
                remediation="Create DLP policies for the sensitive information types relevant to the organisation.",
                references="https://learn.microsoft.com/en-us/purview/dlp-learn-about-dlp",
            ))
        elif not enabled_dlp:
            out.add(make_finding(
                "DLP-002", "DLP Policies Not Enabled",
                "DLP policies exist but none are enabled",
                f"Found {len(dlp)} DLP policies but none are enabled.",
                Severity.HIGH, False, "Data Loss Prevention",
                remediation="Move DLP policies out of test mode once tuned.",
                affected=[p.get("name") or p.get("displayName") or "Unknown" for p in dlp],
            ))
        else:
            out.add(make_finding(
                "DLP-002", "DLP Policies Configured",
                "DLP policies are configured and enabled",
                f"Found {len(dlp)} DLP policies with {len(enabled_dlp)} enabled.",
                Severity.INFORMATIONAL, True, "Data Loss Prevention",
            ))

        # DLP-003
        if not retention:
            out.add(make_finding(
                "DLP-003", "No Retention Labels",
                "No retention labels are configured",
                "Retention labels govern how long content is kept and when it is deleted.",
                Severity.MEDIUM, False, "Records Management",
                remediation="Define retention labels for regulated content.",
            ))
        else:
            out.add(make_finding(
                "DLP-003", "Retention Labels Configured",
                f"{len(retention)} retention labels configured",
                f"Found {len(retention)} retention labels for records management.",
                Severity.INFORMATIONAL, True, "Records Management",
            ))

        # DLP-004
        if labels and not any(l.get("isDefault") is True for l in labels):
            out.add(make_finding(
                "DLP-004", "No Default Sensitivity Label",
                "No sensitivity label is applied by default",
                "Without a default label, new content stays unclassified unless users act.",
                Severity.MEDIUM, False, "Information Protection",
                remediation="Configure a default label in the label policy.",
            ))
        else:
            out.add(make_finding(
                "DLP-004", "Default Sensitivity Label",
                "A default sensitivity label is configured" if labels else "No labels to default",
                "Default labelling is configured or not applicable.",
                Severity.INFORMATIONAL, True, "Information Protection",
            ))

        # DLP-005
        gaps = coverage_gaps(dlp)
        if dlp and gaps:
            out.add(make_finding(
                "DLP-005", "DLP Coverage Gaps",
                "DLP policies do not cover all workloads",
                f"DLP policies are missing coverage for: {', '.join(gaps)}",
                Severity.MEDIUM, False, "Data Loss Prevention",
                remediation="Extend DLP policies to every workload that stores sensitive data.",
                affected=gaps,
            ))
        else:
            out.add(make_finding(
                "DLP-005", "DLP Workload Coverage",
                "DLP policies cover all major workloads" if dlp else "No DLP policies to evaluate",
                "DLP policies are applied to Exchange, SharePoint/OneDrive, and Teams.",
                Severity.INFORMATIONAL, True, "Data Loss Prevention",
            ))

        # DLP-006
        if not sensitive_types and not dlp:
            out.add(make_finding(
                "DLP-006", "No Sensitive Information Types",
                "No sensitive information types are in use",
                "Sensitive information types drive DLP detection and auto-labelling.",
                Severity.LOW, False, "Data Classification",
                remediation="Review built-in sensitive information types and add custom types where needed.",
            ))
        else:
            out.add(make_finding(
                "DLP-006", "Sensitive Information Types",
                f"{len(sensitive_types)} sensitive information types available",
                "Data classification is available for DLP.",
                Severity.INFORMATIONAL, True, "Data Classification",
            ))

        # DLP-007
        encrypting = [l for l in labels if l.get("encryption") or l.get("contentMarking")]
        if labels and not encrypting:
            out.add(make_finding(
                "DLP-007", "No Protective Labels",
                "No sensitivity label applies encryption or content marking",
                "Labels that only classify do not protect content once it leaves the tenant.",
                Severity.MEDIUM, False, "Information Protection",
                remediation="Configure encryption on labels for confidential and highly confidential content.",
            ))
        else:
            out.add(make_finding(
                "DLP-007", "Protective Labels",
                f"{len(encrypting)} labels apply encryption or content marking",
                "Label protection is configured or not applicable.",
                Severity.INFORMATIONAL, True, "Information Protection",
            ))

        # DLP-008
        if ctx.unavailable("dlpPolicies"):
            out.add(make_finding(
                "DLP-008", "DLP Data Unavailable",
                "DLP policy data could not be retrieved",
                "DLP policy data could not be retrieved. This may be due to licensing or permissions.",
                Severity.INFORMATIONAL, False, "Data Loss Prevention",
                remediation="Verify Purview licensing and the InformationProtectionPolicy.Read.All permission.",
            ))
        else:
            out.add(make_finding(
                "DLP-008", "DLP Data Accessible",
                "DLP policy data was retrieved",
                "The DLP policy API is accessible.",
                Severity.INFORMATIONAL, True, "Data Loss Prevention",
            ))

        out.summary.append(f"Sensitivity Labels: {len(labels)} ({len(published)} published)")
        out.summary.append(f"DLP Policies: {len(dlp)} ({len(enabled_dlp)} enabled)")
        out.summary.append(f"Retention Labels: {len(retention)}")


register_module(DataProtectionModule())
