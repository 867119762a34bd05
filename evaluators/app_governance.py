"""App Governance (APP): consent, OAuth grants, app credentials."""
from __future__ import annotations

from collections import defaultdict

from evaluators.base import CheckContext, DomainModule
from evaluators.registry import register_module
from schemas.domain import NormalizedFindings, make_finding
from schemas.taxonomy import AssessmentDomain, Severity
from signals.types import EndpointSpec

HIGH_RISK_SCOPES = frozenset({
    "Mail.ReadWrite", "Mail.ReadWrite.All", "Mail.Send",
    "Files.ReadWrite.All", "Sites.ReadWrite.All",
    "User.ReadWrite.All", "Directory.ReadWrite.All",
    "RoleManagement.ReadWrite.Directory", "Application.ReadWrite.All",
    "AppRoleAssignment.ReadWrite.All", "MailboxSettings.ReadWrite",
    "Calendars.ReadWrite",
})
MULTI_TENANT_AUDIENCES = ("AzureADMultipleOrgs", "PersonalMicrosoftAccount")
CREDENTIAL_EXPIRY_DAYS = 30
MAX_USER_CONSENTED_APPS = 20


def user_consent_allowed(auth_policy: dict) -> bool:
    """True when ordinary users may consent to applications themselves."""
    if "allowUserConsentForApps" in auth_policy:
        return bool(auth_policy["allowUserConsentForApps"])
    role_perms = auth_policy.get("defaultUserRolePermissions") or {}
    assigned = role_perms.get("permissionGrantPoliciesAssigned") or []
    return any("microsoft-user-default" in str(p) for p in assigned)


def grant_scopes(grant: dict) -> set[str]:
    return set((grant.get("scope") or "").split())


def credentials(app: dict) -> list[dict]:
    return [
        c for c in (app.get("passwordCredentials") or []) + (app.get("keyCredentials") or [])
        if isinstance(c, dict)
    ]


class AppGovernanceModule(DomainModule):
    domain = AssessmentDomain.APP_GOVERNANCE
    description = (
        "Assesses enterprise applications, OAuth consent, high-risk delegated "
        "permissions and application credential hygiene."
    )
    required_permissions = (
        "Application.Read.All",
        "Directory.Read.All",
        "Policy.Read.All",
    )
    endpoints = (
        EndpointSpec(
            "enterpriseApps",
            "servicePrincipals?$select=id,displayName,appId,accountEnabled,servicePrincipalType,"
            "tags,appRoleAssignmentRequired,oauth2PermissionScopes&$top=999",
            essential=True,
        ),
        EndpointSpec(
            "appRegistrations",
            "applications?$select=id,displayName,appId,createdDateTime,signInAudience,"
            "requiredResourceAccess,passwordCredentials,keyCredentials&$top=999",
        ),
        EndpointSpec("oauth2Grants", "oauth2PermissionGrants?$top=999", essential=True),
        EndpointSpec("consentRequests", "identityGovernance/appConsent/appConsentRequests"),
        EndpointSpec("authorizationPolicy", "policies/authorizationPolicy"),
    )

    def evaluate(self, ctx: CheckContext, out: NormalizedFindings) -> None:
        apps = ctx.records("enterpriseApps")
        registrations = ctx.records("appRegistrations")
        grants = ctx.records("oauth2Grants")
        requests = ctx.records("consentRequests")
        auth_policy = ctx.object("authorizationPolicy")

        sp_names = {a.get("id"): a.get("displayName") or "Unknown" for a in apps}
        enabled_apps = [a for a in apps if a.get("accountEnabled") is not False]
        user_grants = [g for g in grants if g.get("consentType") == "Principal"]
        admin_grants = [g for g in grants if g.get("consentType") == "AllPrincipals"]

        risky_by_client: dict[str, set[str]] = defaultdict(set)
        for g in grants:
            risky = grant_scopes(g) & HIGH_RISK_SCOPES
            if risky:
                risky_by_client[g.get("clientId") or ""] |= risky

        out.metrics.update({
            "enterpriseAppsCount": len(apps),
            "enabledApps": len(enabled_apps),
            "appRegistrationsCount": len(registrations),
            "oauth2GrantsCount": len(grants),
            "userConsentGrants": len(user_grants),
            "adminConsentGrants": len(admin_grants),
            "highRiskApps": len(risky_by_client),
            "pendingConsentRequests": 0,
        })

        # APP-001
        if user_consent_allowed(auth_policy):
            out.add(make_finding(
                "APP-001", "User Consent Allowed",
                "Users can consent to applications accessing company data",
                "Unrestricted user consent is the entry point for illicit consent grant attacks.",
                Severity.HIGH, False, "Consent",
                remediation="Restrict user consent to verified publishers and low-risk permissions, and enable the admin consent workflow.",
                references="https://learn.microsoft.com/en-us/entra/identity/enterprise-apps/configure-user-consent",
            ))
        else:
            out.add(make_finding(
                "APP-001", "User Consent Restricted",
                "User consent to applications is restricted",
                "Users cannot grant applications access on their own.",
                Severity.INFORMATIONAL, True, "Consent",
            ))

        # APP-002
        if risky_by_client:
            labelled = [
                f"{sp_names.get(client, client or 'Unknown')} ({', '.join(sorted(scopes))})"
                for client, scopes in sorted(risky_by_client.items())
            ]
            out.add(make_finding(
                "APP-002", "High-Risk Delegated Permissions",
                f"{len(risky_by_client)} applications hold high-risk delegated permissions",
                "Write access to mail, files or the directory lets a compromised app act as its users.",
                Severity.HIGH, False, "Permissions",
                evidence=labelled[:20],
                remediation="Review each high-risk grant and revoke permissions the application does not need.",
                affected=labelled,
            ))
        else:
            out.add(make_finding(
                "APP-002", "High-Risk Delegated Permissions",
                "No applications hold high-risk delegated permissions",
                "Delegated grants are limited to lower-risk scopes.",
                Severity.INFORMATIONAL, True, "Permissions",
            ))

        # APP-003
        user_consented = {g.get("clientId") for g in user_grants if g.get("clientId")}
        if len(user_consented) > MAX_USER_CONSENTED_APPS:
            out.add(make_finding(
                "APP-003", "Many User-Consented Applications",
                f"{len(user_consented)} applications were consented to by individual users",
                "A large number of user-consented apps is hard to govern.",
                Severity.MEDIUM, False, "Consent",
                remediation="Review user-consented applications and remove unused grants.",
                affected=[sp_names.get(c, c) for c in sorted(user_consented)],
            ))
        else:
            out.add(make_finding(
                "APP-003", "User-Consented Applications",
                f"{len(user_consented)} applications were consented to by individual users",
                "User-consented applications are within a manageable range.",
                Severity.INFORMATIONAL, True, "Consent",
            ))

        # APP-004
        pending = [r for r in requests if (r.get("status") or "InProgress") == "InProgress"]
        out.metrics["pendingConsentRequests"] = len(pending)
        if pending:
            out.add(make_finding(
                "APP-004", "Pending Consent Requests",
                f"{len(pending)} admin consent requests are pending",
                "Unanswered consent requests push users toward workarounds.",
                Severity.LOW, False, "Consent",
                remediation="Review pending admin consent requests.",
                affected=[r.get("appDisplayName") or r.get("appId", "") for r in pending],
            ))
        else:
            out.add(make_finding(
                "APP-004", "Consent Requests",
                "No pending admin consent requests",
                "The consent request queue is clear.",
                Severity.INFORMATIONAL, True, "Consent",
            ))

        # APP-005 / APP-006
        expiring, expired = [], []
        for app in registrations:
            name = app.get("displayName") or "Unknown"
            for cred in credentials(app):
                age = ctx.days_since(cred.get("endDateTime"))
                if age is None:
                    continue
                if age > 0:
                    expired.append(name)
                elif -age <= CREDENTIAL_EXPIRY_DAYS:
                    expiring.append(name)
        expiring = sorted(set(expiring))
        expired = sorted(set(expired))

        if expiring:
            out.add(make_finding(
                "APP-005", "Credentials Expiring Soon",
                f"{len(expiring)} applications have credentials expiring within {CREDENTIAL_EXPIRY_DAYS} days",
                "Expiring secrets and certificates cause outages when not rotated in time.",
                Severity.MEDIUM, False, "Credentials",
                remediation="Rotate expiring credentials and prefer certificates or managed identities.",
                affected=expiring,
            ))
        else:
            out.add(make_finding(
                "APP-005", "Credential Expiry",
                f"No credentials expire within {CREDENTIAL_EXPIRY_DAYS} days",
                "No application credentials need rotation soon.",
                Severity.INFORMATIONAL, True, "Credentials",
            ))

        if expired:
            out.add(make_finding(
                "APP-006", "Expired Credentials",
                f"{len(expired)} applications carry expired credentials",
                "Expired credentials clutter app registrations and hide which secrets are in use.",
                Severity.MEDIUM, False, "Credentials",
                remediation="Remove expired secrets and certificates from app registrations.",
                affected=expired,
            ))
        else:
            out.add(make_finding(
                "APP-006", "Expired Credentials",
                "No expired application credentials",
                "App registrations carry no expired secrets or certificates.",
                Severity.INFORMATIONAL, True, "Credentials",
            ))

        # APP-007
        multi_tenant = [
            a for a in registrations
            if any(aud in (a.get("signInAudience") or "") for aud in MULTI_TENANT_AUDIENCES)
        ]
        if multi_tenant:
            out.add(make_finding(
                "APP-007", "Multi-Tenant Applications",
                f"{len(multi_tenant)} app registrations accept sign-ins from other tenants",
                "Multi-tenant apps widen the set of identities that can obtain tokens.",
                Severity.LOW, False, "Application Configuration",
                remediation="Restrict sign-in audience to this organisation unless the app is meant to be multi-tenant.",
                affected=[a.get("displayName") or "Unknown" for a in multi_tenant],
            ))
        else:
            out.add(make_finding(
                "APP-007", "Single-Tenant Applications",
                "All app registrations are single-tenant",
                "No app registrations accept external sign-ins.",
                Severity.INFORMATIONAL, True, "Application Configuration",
            ))

        # APP-008
        granted_clients = {g.get("clientId") for g in grants}
        disabled_with_grants = [
            a for a in apps
            if a.get("accountEnabled") is False and a.get("id") in granted_clients
        ]
        if disabled_with_grants:
            out.add(make_finding(
                "APP-008", "Disabled Apps With Grants",
                f"{len(disabled_with_grants)} disabled applications still hold permission grants",
                "Grants left on disabled apps become active again if the app is re-enabled.",
                Severity.LOW, False, "Permissions",
                remediation="Revoke grants on disabled applications or delete them.",
                affected=[a.get("displayName") or "Unknown" for a in disabled_with_grants],
            ))
        else:
            out.add(make_finding(
                "APP-008", "Disabled Apps With Grants",
                "No disabled applications hold permission grants",
                "Permission grants belong to active applications only.",
                Severity.INFORMATIONAL, True, "Permissions",
            ))

        out.summary.append(f"Enterprise Apps: {len(apps)} ({len(enabled_apps)} enabled)")
        out.summary.append(f"App Registrations: {len(registrations)}")
        out.summary.append(f"OAuth Consents: {len(user_grants)} user, {len(admin_grants)} admin")
        out.summary.append(f"High-Risk Apps: {len(risky_by_client)}")


register_module(AppGovernanceModule())
