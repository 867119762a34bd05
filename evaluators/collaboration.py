"""Collaboration Security (COL): guests, Teams, SharePoint, cross-tenant access."""
from __future__ import annotations

from evaluators.base import CheckContext, DomainModule, enabled_policies, lower, pct, policy_users
from evaluators.registry import register_module
from schemas.domain import NormalizedFindings, make_finding
from schemas.taxonomy import AssessmentDomain, Severity
from signals.types import EndpointSpec

GROUP_UNIFIED_TEMPLATE_ID = "62375ab9-6b52-47ed-826b-58e47e0e304b"
STALE_GUEST_DAYS = 90


def guest_last_sign_in(guest: dict):
    return (guest.get("signInActivity") or {}).get("lastSignInDateTime")


def targets_guests(policy: dict) -> bool:
    users = policy_users(policy)
    name = lower(policy.get("displayName"))
    return bool(users.get("includeGuestsOrExternalUsers")) or "guest" in name or "external" in name


def group_creation_restricted(settings: list[dict]) -> bool:
    for setting in settings:
        if setting.get("templateId") != GROUP_UNIFIED_TEMPLATE_ID:
            continue
        for value in setting.get("values") or []:
            if value.get("name") == "EnableGroupCreation" and lower(value.get("value")) == "false":
                return True
    return False


class CollaborationModule(DomainModule):
    domain = AssessmentDomain.COLLABORATION_SECURITY
    description = (
        "Assesses guest access, Teams visibility, SharePoint footprint, "
        "cross-tenant access and group creation governance."
    )
    required_permissions = (
        "Sites.Read.All",
        "TeamSettings.Read.All",
        "User.Read.All",
        "Directory.Read.All",
        "Policy.Read.All",
    )
    endpoints = (
        EndpointSpec("sites", "sites?$select=id,name,displayName,webUrl,isPersonalSite&$top=500", essential=True),
        EndpointSpec(
            "teams",
            "groups?$filter=resourceProvisioningOptions/Any(x:x eq 'Team')"
            "&$select=id,displayName,visibility,createdDateTime,membershipRule&$top=999",
            essential=True,
        ),
        EndpointSpec(
            "guestUsers",
            "users?$filter=userType eq 'Guest'"
            "&$select=id,displayName,userPrincipalName,mail,createdDateTime,signInActivity&$top=999",
        ),
        EndpointSpec("crossTenantAccessPolicy", "policies/crossTenantAccessPolicy"),
        EndpointSpec("crossTenantPartners", "policies/crossTenantAccessPolicy/partners"),
        EndpointSpec("conditionalAccessPolicies", "identity/conditionalAccess/policies"),
        EndpointSpec("users", "users?$select=id,userType&$count=true&$top=999"),
        EndpointSpec("groupSettings", "groupSettings"),
    )

    def evaluate(self, ctx: CheckContext, out: NormalizedFindings) -> None:
        sites = ctx.records("sites")
        teams = ctx.records("teams")
        guests = ctx.records("guestUsers")
        cross_tenant = ctx.object("crossTenantAccessPolicy")
        partners = ctx.records("crossTenantPartners")
        ca_policies = ctx.records("conditionalAccessPolicies")
        users = ctx.records("users")
        group_settings = ctx.records("groupSettings")

        public_teams = [t for t in teams if lower(t.get("visibility")) == "public"]
        guest_pct = pct(len(guests), len(users))
        stale = [
            g for g in guests
            if (age := ctx.days_since(guest_last_sign_in(g))) is None or age > STALE_GUEST_DAYS
        ]

        out.metrics.update({
            "totalTeams": len(teams),
            "publicTeams": len(public_teams),
            "privateTeams": len(teams) - len(public_teams),
            "sharePointSites": len(sites),
            "guestUsers": len(guests),
            "totalUsers": len(users),
            "guestPercentage": guest_pct,
            "staleGuests": len(stale),
            "crossTenantPartners": len(partners),
        })

        # COL-001
        if guest_pct > 15:
            out.add(make_finding(
                "COL-001", "High Guest Ratio",
                f"Guests make up {guest_pct}% of users",
                f"{len(guests)} guests out of {len(users)} users.",
                Severity.MEDIUM if guest_pct > 30 else Severity.LOW, False, "External Access",
                remediation="Run guest access reviews and set guest expiration policies.",
            ))
        else:
            out.add(make_finding(
                "COL-001", "Guest Ratio",
                f"Guests make up {guest_pct}% of users",
                "Guest ratio is within the expected range.",
                Severity.INFORMATIONAL, True, "External Access",
            ))

        # COL-002
        if stale:
            out.add(make_finding(
                "COL-002", "Stale Guest Accounts",
                f"{len(stale)} guests have not signed in for {STALE_GUEST_DAYS}+ days",
                "Inactive guests keep access to Teams, sites and files they no longer need.",
                Severity.MEDIUM if len(stale) > 20 else Severity.LOW, False, "External Access",
                remediation="Remove or disable guests inactive for more than 90 days.",
                affected=[g.get("userPrincipalName") or g.get("id", "") for g in stale],
            ))
        else:
            out.add(make_finding(
                "COL-002", "Guest Activity",
                "All guests signed in recently" if guests else "No guest users",
                f"No guests inactive for more than {STALE_GUEST_DAYS} days.",
                Severity.INFORMATIONAL, True, "External Access",
            ))

        # COL-003
        if public_teams:
            out.add(make_finding(
                "COL-003", "Public Teams",
                f"{len(public_teams)} Teams are public",
                "Anyone in the organisation can join a public team and read its files.",
                Severity.MEDIUM if len(public_teams) > 10 else Severity.LOW, False, "Teams",
                remediation="Review public Teams and make those holding sensitive content private.",
                affected=[t.get("displayName") or "Unknown" for t in public_teams],
            ))
        else:
            out.add(make_finding(
                "COL-003", "Teams Visibility",
                "No public Teams",
                "All Teams are private.",
                Severity.INFORMATIONAL, True, "Teams",
            ))

        # COL-004
        guest_policies = [p for p in enabled_policies(ca_policies) if targets_guests(p)]
        if not guest_policies and guests:
            out.add(make_finding(
                "COL-004", "No Guest Conditional Access",
                "No Conditional Access policy targets guest users",
                "Guests sign in with their home tenant credentials and are not held to local MFA requirements.",
                Severity.HIGH, False, "Conditional Access",
                remediation="Require MFA and terms of use for guest and external users.",
            ))
        else:
            out.add(make_finding(
                "COL-004", "Guest Conditional Access",
                f"{len(guest_policies)} Conditional Access policies target guests"
                if guest_policies else "No guest users to protect",
                "Guest sign-ins are covered by Conditional Access or there are no guests.",
                Severity.INFORMATIONAL, True, "Conditional Access",
            ))

        # COL-005
        trusting_partners = [
            p for p in partners
            if any((p.get("inboundTrust") or {}).get(flag) for flag in
                   ("isMfaAccepted", "isCompliantDeviceAccepted", "isHybridAzureADJoinedDeviceAccepted"))
        ]
        if cross_tenant.get("allowedCloudEndpoints") or trusting_partners:
            out.add(make_finding(
                "COL-005", "Cross-Tenant Access Configured",
                "Cross-tenant access settings are customised",
                f"{len(partners)} partner configurations, {len(trusting_partners)} with inbound trust.",
                Severity.INFORMATIONAL, True, "Cross-Tenant Access",
            ))
        else:
            out.add(make_finding(
                "COL-005", "Default Cross-Tenant Access",
                "Cross-tenant access settings use the defaults",
                "Default settings allow B2B collaboration with any tenant without inbound trust.",
                Severity.LOW, False, "Cross-Tenant Access",
                remediation="Configure cross-tenant access for known partners and restrict the defaults.",
            ))

        # COL-006
        if group_creation_restricted(group_settings):
            out.add(make_finding(
                "COL-006", "Group Creation Restricted",
                "Microsoft 365 group creation is restricted",
                "Only designated users can create groups and Teams.",
                Severity.INFORMATIONAL, True, "Governance",
            ))
        else:
            out.add(make_finding(
                "COL-006", "Unrestricted Group Creation",
                "Any user can create Microsoft 365 groups and Teams",
                "Unrestricted creation leads to ungoverned Teams and SharePoint sprawl.",
                Severity.MEDIUM, False, "Governance",
                remediation="Restrict group creation to a security group via the Group.Unified settings.",
            ))

        # COL-007
        out.add(make_finding(
            "COL-007", "External Sharing",
            "SharePoint and OneDrive external sharing level should be verified",
            "Anyone links allow unauthenticated access to shared files.",
            Severity.LOW, True, "SharePoint",
            remediation="Limit external sharing to new and existing guests and set link expiration.",
        ))

        # COL-008
        if len(sites) > 100:
            out.add(make_finding(
                "COL-008", "SharePoint Site Sprawl",
                f"{len(sites)} SharePoint sites",
                "A large site estate without lifecycle policies is hard to govern.",
                Severity.LOW, False, "SharePoint",
                remediation="Apply site lifecycle and inactive site policies.",
            ))
        else:
            out.add(make_finding(
                "COL-008", "SharePoint Sites",
                f"{len(sites)} SharePoint sites",
                "SharePoint site count is manageable.",
                Severity.INFORMATIONAL, True, "SharePoint",
            ))

        out.summary.append(
            f"Teams: {len(teams)} ({len(public_teams)} public, {len(teams) - len(public_teams)} private)"
        )
        out.summary.append(f"SharePoint Sites: {len(sites)}")
        out.summary.append(f"Guest Users: {len(guests)} ({guest_pct:.1f}% of users)")
        out.summary.append(f"Stale Guests ({STALE_GUEST_DAYS}+ days): {len(stale)}")
        out.summary.append(f"Cross-Tenant Partners: {len(partners)}")


register_module(CollaborationModule())
