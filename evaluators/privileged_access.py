"""Privileged Access (PAM): PIM, standing admin access, break-glass."""
from __future__ import annotations

from evaluators.base import CheckContext, DomainModule, lower
from evaluators.identity import GLOBAL_ADMIN_TEMPLATE_ID
from evaluators.registry import register_module
from schemas.domain import NormalizedFindings, make_finding
from schemas.taxonomy import AssessmentDomain, Severity
from signals.types import EndpointSpec

HIGH_PRIVILEGE_ROLE_IDS = frozenset({
    GLOBAL_ADMIN_TEMPLATE_ID,                  # Global Administrator
    "e8611ab8-c189-46e8-94e1-60213ab1f814",    # Privileged Role Administrator
    "194ae4cb-b126-40b2-bd5b-6091b380977d",    # Security Administrator
    "9b895d92-2cd3-44c7-9d02-a6ac2d5ea5c3",    # Application Administrator
    "158c047a-c907-4556-b7ef-446551a6b5f7",    # Cloud Application Administrator
    "b1be1c3e-b65d-4f19-8427-f6fa0d97feb9",    # Conditional Access Administrator
    "29232cdf-9323-42fd-ade2-1d097af3e4de",    # Exchange Administrator
    "fe930be7-5e62-47db-91af-98c3a49a38b1",    # User Administrator
    "fdd7a751-b60b-444a-984c-02652fe8fa1c",    # Groups Administrator
})

BREAK_GLASS_MARKERS = ("break", "emergency", "glass")
SERVICE_PRINCIPAL_ODATA_TYPE = "#microsoft.graph.servicePrincipal"

_PIM_DOCS = "https://learn.microsoft.com/en-us/entra/id-governance/privileged-identity-management/pim-configure"


class PrivilegedAccessModule(DomainModule):
    domain = AssessmentDomain.PRIVILEGED_ACCESS
    description = (
        "Assesses PIM configuration, role assignments, just-in-time access, "
        "and administrative privileges."
    )
    required_permissions = (
        "RoleManagement.Read.Directory",
        "RoleManagement.Read.All",
        "PrivilegedAccess.Read.AzureAD",
        "Directory.Read.All",
    )
    endpoints = (
        EndpointSpec(
            "eligibleAssignments",
            "roleManagement/directory/roleEligibilityScheduleInstances",
            essential=True,
        ),
        EndpointSpec(
            "activeAssignments",
            "roleManagement/directory/roleAssignmentScheduleInstances",
            essential=True,
        ),
        EndpointSpec("roleDefinitions", "roleManagement/directory/roleDefinitions"),
        EndpointSpec("directoryRoles", "directoryRoles?$expand=members"),
        EndpointSpec(
            "roleManagementPolicies",
            "policies/roleManagementPolicies?$filter=scopeId eq '/' and scopeType eq 'DirectoryRole'",
        ),
        EndpointSpec("privilegedGroups", "groups?$filter=isAssignableToRole eq true&$expand=members"),
        EndpointSpec(
            "adminConsentRequests",
            "identityGovernance/appConsent/appConsentRequests?$filter=status eq 'InProgress'",
        ),
        EndpointSpec("users", "users?$select=id,displayName,userPrincipalName,accountEnabled&$top=999"),
    )

    def evaluate(self, ctx: CheckContext, out: NormalizedFindings) -> None:
        eligible = ctx.records("eligibleAssignments")
        active = ctx.records("activeAssignments")
        roles = ctx.records("directoryRoles")
        definitions = ctx.records("roleDefinitions")
        groups = ctx.records("privilegedGroups")

        permanent = [
            r for r in roles
            if r.get("roleTemplateId") in HIGH_PRIVILEGE_ROLE_IDS and r.get("members")
        ]
        ga_role = next((r for r in roles if r.get("roleTemplateId") == GLOBAL_ADMIN_TEMPLATE_ID), None)
        ga_members = (ga_role or {}).get("members") or []
        ga_count = len(ga_members)

        out.metrics.update({
            "totalPrivilegedRoles": len(roles),
            "permanentAdmins": len(permanent),
            "eligibleAssignments": len(eligible),
            "eligibleHighPrivilege": sum(
                1 for a in eligible if a.get("roleDefinitionId") in HIGH_PRIVILEGE_ROLE_IDS
            ),
            "activeJitAssignments": len(active),
            "globalAdminCount": ga_count,
            "roleAssignableGroups": len(groups),
        })

        # PAM-001
        if ga_count > 5:
            out.add(make_finding(
                "PAM-001", "Excessive Global Administrators",
                f"{ga_count} Global Administrator accounts detected",
                "Global Administrator should be held by 2 to 5 accounts.",
                Severity.HIGH, False, "Role Assignment",
                remediation="Move Global Administrators to narrower roles and make the rest PIM-eligible.",
                affected=[m.get("userPrincipalName") or m.get("displayName", "") for m in ga_members],
            ))
        elif ga_count < 2:
            out.add(make_finding(
                "PAM-001", "Too Few Global Administrators",
                f"Only {ga_count} Global Administrator account(s)",
                "A single Global Administrator is a lockout risk.",
                Severity.MEDIUM, False, "Role Assignment",
                remediation="Keep at least two Global Administrators, one of them a break-glass account.",
            ))
        else:
            out.add(make_finding(
                "PAM-001", "Global Administrator Count",
                f"{ga_count} Global Administrators",
                f"Found {ga_count} Global Administrators (recommended: 2-4).",
                Severity.INFORMATIONAL, True, "Role Assignment",
            ))

        # PAM-002
        if ctx.unavailable("eligibleAssignments"):
            out.add(make_finding(
                "PAM-002", "PIM Not Available",
                "Privileged Identity Management data could not be read",
                "Eligible assignments were unavailable; PIM may be unlicensed (Entra ID P2).",
                Severity.HIGH, False, "Just-In-Time Access",
                remediation="License Entra ID P2 and manage admin roles through PIM.",
                references=_PIM_DOCS,
            ))
        elif not eligible and permanent:
            out.add(make_finding(
                "PAM-002", "PIM Not In Use",
                "Administrative roles are assigned permanently",
                f"Found {len(permanent)} permanent admin assignments but no eligible/JIT assignments configured.",
                Severity.HIGH, False, "Just-In-Time Access",
                remediation="Convert permanent role assignments to PIM-eligible assignments.",
                references=_PIM_DOCS,
            ))
        else:
            out.add(make_finding(
                "PAM-002", "PIM In Use",
                "Privileged Identity Management is configured",
                f"Found {len(eligible)} eligible role assignments.",
                Severity.INFORMATIONAL, True, "Just-In-Time Access",
            ))

        # PAM-003
        if len(permanent) > 2:
            names = [r.get("displayName") or "Unknown" for r in permanent]
            out.add(make_finding(
                "PAM-003", "Permanent High-Privilege Assignments",
                f"{len(permanent)} permanent high-privilege role assignments",
                "High-privilege roles hold standing members instead of just-in-time activation.",
                Severity.HIGH, False, "Just-In-Time Access",
                evidence=names[:10],
                remediation="Require PIM activation with approval for high-privilege roles.",
                affected=names,
            ))
        else:
            out.add(make_finding(
                "PAM-003", "Permanent High-Privilege Assignments",
                f"{len(permanent)} permanent high-privilege assignments",
                f"Only {len(permanent)} permanent high-privilege assignments found.",
                Severity.INFORMATIONAL, True, "Just-In-Time Access",
            ))

        # PAM-004
        large = [g for g in groups if len(g.get("members") or []) > 10]
        if large:
            out.add(make_finding(
                "PAM-004", "Large Role-Assignable Groups",
                f"{len(large)} role-assignable groups have more than 10 members",
                f"Found {len(large)} role-assignable groups with more than 10 members.",
                Severity.MEDIUM, False, "Role Assignment",
                remediation="Review membership of role-assignable groups and manage them through PIM for Groups.",
                affected=[g.get("displayName") or "Unknown" for g in large],
            ))
        else:
            out.add(make_finding(
                "PAM-004", "Role-Assignable Groups",
                f"{len(groups)} role-assignable groups",
                "Role-assignable groups have reasonable membership.",
                Severity.INFORMATIONAL, True, "Role Assignment",
            ))

        # PAM-005
        break_glass = [
            m for m in ga_members
            if any(marker in lower(m.get("displayName")) for marker in BREAK_GLASS_MARKERS)
        ]
        if not break_glass and ga_count < 2:
            out.add(make_finding(
                "PAM-005", "No Break-Glass Account",
                "No emergency access account was identified",
                "Without a break-glass Global Administrator, a Conditional Access mistake can lock out the tenant.",
                Severity.HIGH, False, "Emergency Access",
                remediation="Create two cloud-only emergency access accounts excluded from Conditional Access.",
                references="https://learn.microsoft.com/en-us/entra/identity/role-based-access-control/security-emergency-access",
            ))
        else:
            out.add(make_finding(
                "PAM-005", "Break-Glass Accounts",
                "Emergency access is available",
                f"Found {len(break_glass)} potential break-glass accounts."
                if break_glass else "Multiple Global Administrators provide emergency access.",
                Severity.INFORMATIONAL, True, "Emergency Access",
            ))

        # PAM-006
        sp_members = [
            m for r in roles for m in r.get("members") or []
            if m.get("@odata.type") == SERVICE_PRINCIPAL_ODATA_TYPE
        ]
        if sp_members:
            out.add(make_finding(
                "PAM-006", "Service Principals With Admin Roles",
                f"{len(sp_members)} service principals have administrative roles",
                "Application identities holding directory roles are a persistence target.",
                Severity.MEDIUM, False, "Workload Identities",
                remediation="Replace directory roles on service principals with scoped application permissions.",
                affected=[m.get("displayName") or "Unknown SP" for m in sp_members],
            ))
        else:
            out.add(make_finding(
                "PAM-006", "Service Principals With Admin Roles",
                "No service principals hold administrative roles",
                "Directory roles are held by user accounts only.",
                Severity.INFORMATIONAL, True, "Workload Identities",
            ))

        # PAM-007
        custom = [d for d in definitions if d.get("isBuiltIn") is False]
        if len(custom) > 10:
            out.add(make_finding(
                "PAM-007", "Custom Role Sprawl",
                f"{len(custom)} custom roles defined",
                "A large number of custom roles is hard to review.",
                Severity.LOW, False, "Role Assignment",
                remediation="Consolidate custom roles and remove unused definitions.",
                affected=[d.get("displayName") or "Unknown" for d in custom],
            ))
        else:
            out.add(make_finding(
                "PAM-007", "Custom Roles",
                f"{len(custom)} custom roles defined" if custom else "No custom roles defined",
                "Custom role count is manageable.",
                Severity.INFORMATIONAL, True, "Role Assignment",
            ))

        out.summary.append(f"Global Administrators: {ga_count}")
        out.summary.append(f"Permanent Admin Assignments: {len(permanent)}")
        out.summary.append(f"Eligible (JIT) Assignments: {len(eligible)}")
        out.summary.append(f"Role-Assignable Groups: {len(groups)}")


register_module(PrivilegedAccessModule())
