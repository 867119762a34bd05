"""Identity & Access (IAM): users, admin roles, Conditional Access, risk."""
from __future__ import annotations

from evaluators.base import (
    CheckContext,
    DomainModule,
    client_app_types,
    enabled_policies,
    grant_controls,
    pct,
    policy_users,
)
from evaluators.registry import register_module
from schemas.domain import NormalizedFindings, make_finding
from schemas.taxonomy import AssessmentDomain, Severity
from signals.types import EndpointSpec

GLOBAL_ADMIN_TEMPLATE_ID = "62e90394-69f5-4237-9190-012177145e10"
USER_ODATA_TYPE = "#microsoft.graph.user"

MAX_GLOBAL_ADMINS = 5
MAX_GUEST_PERCENT = 20.0
RISKY_USERS_CRITICAL = 10

_CA_DOCS = "https://learn.microsoft.com/en-us/entra/identity/conditional-access/overview"


def is_global_admin_role(role: dict) -> bool:
    return (
        "global administrator" in (role.get("displayName") or "").lower()
        or role.get("roleTemplateId") == GLOBAL_ADMIN_TEMPLATE_ID
    )


def user_members(role: dict) -> list[dict]:
    return [m for m in role.get("members") or [] if m.get("@odata.type") == USER_ODATA_TYPE]


class IdentityAccessModule(DomainModule):
    domain = AssessmentDomain.IDENTITY_AND_ACCESS
    description = (
        "Assesses user accounts, administrative roles, Conditional Access, "
        "MFA coverage, risky users and guest access."
    )
    required_permissions = (
        "User.Read.All",
        "Directory.Read.All",
        "RoleManagement.Read.Directory",
        "Policy.Read.All",
        "AuditLog.Read.All",
        "IdentityRiskyUser.Read.All",
    )
    endpoints = (
        EndpointSpec(
            "users",
            "users?$select=id,displayName,userPrincipalName,accountEnabled,createdDateTime,"
            "signInActivity,userType,assignedLicenses&$top=999",
            essential=True,
        ),
        EndpointSpec("directoryRoles", "directoryRoles?$expand=members", essential=True),
        EndpointSpec("roleDefinitions", "roleManagement/directory/roleDefinitions"),
        EndpointSpec("conditionalAccessPolicies", "identity/conditionalAccess/policies", essential=True),
        EndpointSpec("authenticationMethodsPolicy", "policies/authenticationMethodsPolicy"),
        EndpointSpec("domains", "domains"),
        EndpointSpec("namedLocations", "identity/conditionalAccess/namedLocations"),
        EndpointSpec(
            "riskyUsers",
            "identityProtection/riskyUsers?$filter=riskState eq 'atRisk'",
            essential=True,
        ),
        EndpointSpec("mfaRegistrationDetails", "reports/credentialUserRegistrationDetails"),
        EndpointSpec("authorizationPolicy", "policies/authorizationPolicy"),
    )

    def evaluate(self, ctx: CheckContext, out: NormalizedFindings) -> None:
        users = ctx.records("users")
        roles = ctx.records("directoryRoles")
        policies = ctx.records("conditionalAccessPolicies")
        risky = ctx.records("riskyUsers")
        auth_policy = ctx.object("authorizationPolicy")

        enabled_users = [u for u in users if u.get("accountEnabled") is True]
        guests = [u for u in users if u.get("userType") == "Guest"]
        global_admins = {
            m.get("id") for r in roles if is_global_admin_role(r) for m in user_members(r)
        }
        admin_ids = {m.get("id") for r in roles for m in user_members(r)}
        enabled_ca = enabled_policies(policies)

        out.metrics.update({
            "totalUsers": len(users),
            "enabledUsers": len(enabled_users),
            "guestUsers": len(guests),
            "totalAdmins": len(admin_ids),
            "globalAdmins": len(global_admins),
            "conditionalAccessPolicies": len(policies),
            "enabledCaPolicies": len(enabled_ca),
            "riskyUsersCount": len(risky),
        })

        self._check_global_admins(out, roles, len(global_admins))
        self._check_conditional_access(out, policies, enabled_ca)
        self._check_admin_mfa(out, enabled_ca)
        self._check_risky_users(out, risky)
        self._check_guests(out, users, guests)
        self._check_legacy_auth(out, enabled_ca)
        self._check_disabled_admins(out, users, admin_ids)
        self._check_sspr(out, auth_policy)

        out.summary.append(
            f"Total Users: {len(users)} ({len(enabled_users)} enabled, {len(guests)} guests)"
        )
        out.summary.append(f"Admin Users: {len(admin_ids)} ({len(global_admins)} Global Admins)")
        out.summary.append(
            f"Conditional Access Policies: {len(policies)} ({len(enabled_ca)} enabled)"
        )
        out.summary.append(f"Risky Users: {len(risky)}")

    # ── Checks ────────────────────────────────────────────────────
    def _check_global_admins(self, out: NormalizedFindings, roles: list[dict], count: int) -> None:
        if count > MAX_GLOBAL_ADMINS:
            names = [
                m.get("userPrincipalName") or m.get("displayName") or m.get("id", "")
                for r in roles if is_global_admin_role(r) for m in user_members(r)
            ]
            out.add(make_finding(
                "IAM-001", "Excessive Global Administrators",
                f"{count} Global Administrators assigned",
                f"Microsoft recommends no more than {MAX_GLOBAL_ADMINS} Global Administrators.",
                Severity.HIGH, False, "Privileged Access",
                remediation="Reduce Global Administrator assignments and use least-privileged roles.",
                references="https://learn.microsoft.com/en-us/entra/identity/role-based-access-control/best-practices",
                affected=sorted(set(names)),
            ))
        else:
            out.add(make_finding(
                "IAM-001", "Global Administrator Count",
                f"{count} Global Administrators assigned",
                "The number of Global Administrators is within the recommended range.",
                Severity.INFORMATIONAL, True, "Privileged Access",
            ))

    def _check_conditional_access(
        self, out: NormalizedFindings, policies: list[dict], enabled: list[dict]
    ) -> None:
        if not policies:
            out.add(make_finding(
                "IAM-002", "No Conditional Access Policies",
                "No Conditional Access policies are configured",
                "Conditional Access is the primary control for enforcing sign-in requirements.",
                Severity.CRITICAL, False, "Conditional Access",
                remediation="Deploy baseline Conditional Access policies (MFA, legacy auth block, risk).",
                references=_CA_DOCS,
            ))
        elif not enabled:
            out.add(make_finding(
                "IAM-002", "Conditional Access Policies Not Enabled",
                f"{len(policies)} Conditional Access policies exist but none are enabled",
                "Policies in report-only or disabled state do not enforce anything.",
                Severity.HIGH, False, "Conditional Access",
                remediation="Review report-only results and switch policies to enabled.",
                references=_CA_DOCS,
                affected=[p.get("displayName", "") for p in policies],
            ))
        else:
            out.add(make_finding(
                "IAM-002", "Conditional Access Enabled",
                f"{len(enabled)} of {len(policies)} Conditional Access policies enabled",
                "Conditional Access policies are enforcing sign-in controls.",
                Severity.INFORMATIONAL, True, "Conditional Access",
            ))

    def _check_admin_mfa(self, out: NormalizedFindings, enabled: list[dict]) -> None:
        covering = [
            p for p in enabled
            if "mfa" in grant_controls(p)
            and (policy_users(p).get("includeRoles") or "All" in (policy_users(p).get("includeUsers") or []))
        ]
        if covering:
            out.add(make_finding(
                "IAM-003", "MFA Required for Administrators",
                "A Conditional Access policy requires MFA for administrative roles",
                f"Covered by: {', '.join(p.get('displayName', '') for p in covering[:5])}",
                Severity.INFORMATIONAL, True, "Authentication",
            ))
        else:
            out.add(make_finding(
                "IAM-003", "MFA Not Enforced for Administrators",
                "No enabled Conditional Access policy requires MFA for administrators",
                "Administrative accounts without MFA are the most common tenant takeover path.",
                Severity.CRITICAL, False, "Authentication",
                remediation="Create a Conditional Access policy requiring MFA for all admin roles.",
                references="https://learn.microsoft.com/en-us/entra/identity/conditional-access/howto-conditional-access-policy-admin-mfa",
            ))

    def _check_risky_users(self, out: NormalizedFindings, risky: list[dict]) -> None:
        if risky:
            out.add(make_finding(
                "IAM-004", "Risky Users Detected",
                f"{len(risky)} users are currently flagged as at risk",
                "Identity Protection has flagged these accounts as potentially compromised.",
                Severity.CRITICAL if len(risky) > RISKY_USERS_CRITICAL else Severity.HIGH,
                False, "Identity Protection",
                evidence=[
                    {"user": u.get("userPrincipalName") or u.get("userDisplayName"),
                     "riskLevel": u.get("riskLevel")}
                    for u in risky[:20]
                ],
                remediation="Investigate risky users, reset credentials and confirm or dismiss the risk.",
                affected=[u.get("userPrincipalName") or u.get("id", "") for u in risky],
            ))
        else:
            out.add(make_finding(
                "IAM-004", "No Risky Users",
                "No users are currently flagged as at risk",
                "Identity Protection reports no active user risk.",
                Severity.INFORMATIONAL, True, "Identity Protection",
            ))

    def _check_guests(self, out: NormalizedFindings, users: list[dict], guests: list[dict]) -> None:
        guest_pct = pct(len(guests), len(users))
        out.metrics["guestPercentage"] = guest_pct
        if guest_pct > MAX_GUEST_PERCENT:
            out.add(make_finding(
                "IAM-005", "High Guest User Ratio",
                f"Guests make up {guest_pct}% of all users",
                f"{len(guests)} guest accounts out of {len(users)} users.",
                Severity.MEDIUM, False, "External Access",
                remediation="Run access reviews for guest accounts and remove those no longer needed.",
            ))
        else:
            out.add(make_finding(
                "IAM-005", "Guest User Ratio",
                f"Guests make up {guest_pct}% of all users",
                "Guest user ratio is within the expected range.",
                Severity.INFORMATIONAL, True, "External Access",
            ))

    def _check_legacy_auth(self, out: NormalizedFindings, enabled: list[dict]) -> None:
        blocking = [
            p for p in enabled
            if "other" in client_app_types(p) and "block" in grant_controls(p)
        ]
        if blocking:
            out.add(make_finding(
                "IAM-006", "Legacy Authentication Blocked",
                "Legacy authentication protocols are blocked by Conditional Access",
                f"Blocked by: {', '.join(p.get('displayName', '') for p in blocking[:5])}",
                Severity.INFORMATIONAL, True, "Authentication",
            ))
        else:
            out.add(make_finding(
                "IAM-006", "Legacy Authentication Not Blocked",
                "No enabled policy blocks legacy authentication",
                "Legacy protocols cannot perform MFA and are widely used for password spray.",
                Severity.HIGH, False, "Authentication",
                remediation="Create a Conditional Access policy blocking 'Other clients' for all users.",
                references="https://learn.microsoft.com/en-us/entra/identity/conditional-access/policy-block-legacy-authentication",
            ))

    def _check_disabled_admins(
        self, out: NormalizedFindings, users: list[dict], admin_ids: set
    ) -> None:
        disabled = [
            u for u in users
            if u.get("id") in admin_ids and u.get("accountEnabled") is False
        ]
        if disabled:
            out.add(make_finding(
                "IAM-007", "Disabled Accounts Hold Admin Roles",
                f"{len(disabled)} disabled accounts still hold administrative roles",
                "Role assignments on disabled accounts are easy to miss when the account is re-enabled.",
                Severity.MEDIUM, False, "Account Hygiene",
                remediation="Remove role assignments from disabled accounts.",
                affected=[u.get("userPrincipalName") or u.get("id", "") for u in disabled],
            ))
        else:
            out.add(make_finding(
                "IAM-007", "No Disabled Admin Accounts",
                "No disabled accounts hold administrative roles",
                "Administrative role holders are all active accounts.",
                Severity.INFORMATIONAL, True, "Account Hygiene",
            ))

    def _check_sspr(self, out: NormalizedFindings, auth_policy: dict) -> None:
        if auth_policy.get("allowedToUseSSPR") is False:
            out.add(make_finding(
                "IAM-008", "Self-Service Password Reset Disabled",
                "Self-service password reset is not enabled",
                "Without SSPR, password resets go through the helpdesk, a common social engineering target.",
                Severity.MEDIUM, False, "Authentication",
                remediation="Enable SSPR with strong authentication methods.",
            ))
        else:
            out.add(make_finding(
                "IAM-008", "Self-Service Password Reset",
                "Self-service password reset is enabled or not restricted",
                "Users can reset their own passwords through verified methods.",
                Severity.INFORMATIONAL, True, "Authentication",
            ))


register_module(IdentityAccessModule())
