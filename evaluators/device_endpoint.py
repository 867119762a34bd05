"""Device & Endpoint (DEV): Intune compliance, encryption, app protection."""
from __future__ import annotations

from evaluators.base import (
    CheckContext,
    DomainModule,
    enabled_policies,
    grant_controls,
    lower,
    pct,
)
from evaluators.registry import register_module
from schemas.domain import NormalizedFindings, make_finding
from schemas.taxonomy import AssessmentDomain, Severity
from signals.types import EndpointSpec

STALE_DEVICE_DAYS = 90

_INTUNE_DOCS = "https://learn.microsoft.com/en-us/mem/intune/protect/device-compliance-get-started"


def platform_counts(devices: list[dict]) -> dict[str, int]:
    counts = {"windows": 0, "ios": 0, "android": 0, "macos": 0}
    for device in devices:
        os_name = lower(device.get("operatingSystem"))
        for platform in counts:
            if platform in os_name:
                counts[platform] += 1
    return counts


class DeviceEndpointModule(DomainModule):
    domain = AssessmentDomain.DEVICE_ENDPOINT
    description = (
        "Assesses Intune device compliance, configuration profiles, encryption, "
        "app protection and device-based Conditional Access."
    )
    required_permissions = (
        "DeviceManagementConfiguration.Read.All",
        "DeviceManagementManagedDevices.Read.All",
        "DeviceManagementServiceConfig.Read.All",
        "Device.Read.All",
    )
    endpoints = (
        EndpointSpec("compliancePolicies", "deviceManagement/deviceCompliancePolicies", essential=True),
        EndpointSpec("configurationProfiles", "deviceManagement/deviceConfigurations"),
        EndpointSpec(
            "managedDevices",
            "deviceManagement/managedDevices?$select=id,deviceName,operatingSystem,osVersion,"
            "complianceState,isEncrypted,managementAgent,enrolledDateTime,lastSyncDateTime,"
            "deviceEnrollmentType&$top=999",
            essential=True,
        ),
        EndpointSpec("conditionalAccessPolicies", "identity/conditionalAccess/policies"),
        EndpointSpec("autopilotProfiles", "deviceManagement/windowsAutopilotDeploymentProfiles"),
        EndpointSpec("wipPolicies", "deviceAppManagement/windowsInformationProtectionPolicies"),
        EndpointSpec("appProtectionPolicies", "deviceAppManagement/managedAppPolicies"),
        EndpointSpec("enrollmentRestrictions", "deviceManagement/deviceEnrollmentConfigurations"),
        EndpointSpec("securityBaselines", "deviceManagement/intents"),
    )

    def evaluate(self, ctx: CheckContext, out: NormalizedFindings) -> None:
        compliance_policies = ctx.records("compliancePolicies")
        profiles = ctx.records("configurationProfiles")
        devices = ctx.records("managedDevices")
        ca_policies = ctx.records("conditionalAccessPolicies")
        autopilot = ctx.records("autopilotProfiles")
        app_protection = ctx.records("appProtectionPolicies")
        baselines = ctx.records("securityBaselines")

        total = len(devices)
        compliant = sum(1 for d in devices if d.get("complianceState") == "compliant")
        non_compliant = sum(1 for d in devices if d.get("complianceState") == "noncompliant")
        encrypted = sum(1 for d in devices if d.get("isEncrypted") is True)
        platforms = platform_counts(devices)

        out.metrics.update({
            "totalManagedDevices": total,
            "compliantDevices": compliant,
            "nonCompliantDevices": non_compliant,
            "encryptedDevices": encrypted,
            "windowsDevices": platforms["windows"],
            "iosDevices": platforms["ios"],
            "androidDevices": platforms["android"],
            "macDevices": platforms["macos"],
            "compliancePoliciesCount": len(compliance_policies),
            "configProfilesCount": len(profiles),
        })

        # DEV-001
        if not compliance_policies:
            out.add(make_finding(
                "DEV-001", "No Device Compliance Policies",
                "No Intune device compliance policies are configured",
                "Without compliance policies every enrolled device is treated as compliant.",
                Severity.CRITICAL, False, "Device Compliance",
                remediation="Create compliance policies for each platform in use.",
                references=_INTUNE_DOCS,
            ))
        else:
            out.add(make_finding(
                "DEV-001", "Device Compliance Policies",
                f"{len(compliance_policies)} compliance policies configured",
                "Device compliance policies are in place.",
                Severity.INFORMATIONAL, True, "Device Compliance",
            ))

        # DEV-002
        rate = pct(compliant, total)
        out.metrics["complianceRate"] = rate
        if total and rate < 80:
            out.add(make_finding(
                "DEV-002", "Low Device Compliance Rate",
                f"Only {rate}% of managed devices are compliant",
                f"{non_compliant} of {total} devices are non-compliant.",
                Severity.HIGH, False, "Device Compliance",
                remediation="Investigate non-compliant devices and enforce remediation actions.",
            ))
        elif total and rate < 95:
            out.add(make_finding(
                "DEV-002", "Device Compliance Below Target",
                f"{rate}% of managed devices are compliant",
                "Compliance is below the 95% target.",
                Severity.MEDIUM, False, "Device Compliance",
                remediation="Review the remaining non-compliant devices.",
            ))
        else:
            out.add(make_finding(
                "DEV-002", "Device Compliance Rate",
                f"{rate}% of managed devices are compliant" if total else "No managed devices",
                "Device compliance meets the target.",
                Severity.INFORMATIONAL, True, "Device Compliance",
            ))

        # DEV-003
        encryption_rate = pct(encrypted, total)
        out.metrics["encryptionRate"] = encryption_rate
        if total and encryption_rate < 90:
            out.add(make_finding(
                "DEV-003", "Devices Not Encrypted",
                f"Only {encryption_rate}% of managed devices are encrypted",
                f"{total - encrypted} devices report no disk encryption.",
                Severity.HIGH, False, "Encryption",
                remediation="Deploy BitLocker and FileVault policies and require encryption in compliance.",
            ))
        else:
            out.add(make_finding(
                "DEV-003", "Device Encryption",
                f"{encryption_rate}% of managed devices are encrypted" if total else "No managed devices",
                "Disk encryption coverage meets the target.",
                Severity.INFORMATIONAL, True, "Encryption",
            ))

        # DEV-004
        requiring = [p for p in enabled_policies(ca_policies) if "compliantdevice" in grant_controls(p)]
        if not requiring:
            out.add(make_finding(
                "DEV-004", "Compliant Device Not Required",
                "No Conditional Access policy requires a compliant device",
                "Compliance state is evaluated but never enforced at sign-in.",
                Severity.HIGH, False, "Conditional Access",
                remediation="Require a compliant or hybrid-joined device for access to corporate resources.",
            ))
        else:
            out.add(make_finding(
                "DEV-004", "Compliant Device Required",
                "Conditional Access requires compliant devices",
                f"Enforced by: {', '.join(p.get('displayName', '') for p in requiring[:5])}",
                Severity.INFORMATIONAL, True, "Conditional Access",
            ))

        # DEV-005
        if not app_protection:
            out.add(make_finding(
                "DEV-005", "No App Protection Policies",
                "No mobile app protection policies are configured",
                "Corporate data in mobile apps is unprotected on unmanaged devices.",
                Severity.MEDIUM, False, "Mobile Application Management",
                remediation="Create app protection policies for iOS and Android.",
            ))
        else:
            out.add(make_finding(
                "DEV-005", "App Protection Policies",
                f"{len(app_protection)} app protection policies configured",
                "Mobile app protection is in place.",
                Severity.INFORMATIONAL, True, "Mobile Application Management",
            ))

        # DEV-006
        if platforms["windows"] and not autopilot:
            out.add(make_finding(
                "DEV-006", "Autopilot Not Configured",
                "Windows devices are managed without Autopilot profiles",
                f"{platforms['windows']} Windows devices, no Autopilot deployment profiles.",
                Severity.LOW, False, "Provisioning",
                remediation="Configure Windows Autopilot for new device provisioning.",
            ))
        else:
            out.add(make_finding(
                "DEV-006", "Windows Autopilot",
                f"{len(autopilot)} Autopilot profiles configured",
                "Autopilot is configured or no Windows devices are managed.",
                Severity.INFORMATIONAL, True, "Provisioning",
            ))

        # DEV-007
        if not baselines:
            out.add(make_finding(
                "DEV-007", "No Security Baselines",
                "No Intune security baselines are deployed",
                "Security baselines apply Microsoft's recommended hardening settings.",
                Severity.MEDIUM, False, "Configuration",
                remediation="Deploy the Windows and Defender for Endpoint security baselines.",
            ))
        else:
            out.add(make_finding(
                "DEV-007", "Security Baselines",
                f"{len(baselines)} security baselines deployed",
                "Security baselines are in place.",
                Severity.INFORMATIONAL, True, "Configuration",
            ))

        # DEV-008
        stale = [
            d for d in devices
            if (ctx.days_since(d.get("lastSyncDateTime")) or 0) > STALE_DEVICE_DAYS
        ]
        if stale:
            out.add(make_finding(
                "DEV-008", "Stale Devices",
                f"{len(stale)} devices have not synced in {STALE_DEVICE_DAYS}+ days",
                "Stale device records inflate inventory and may hold valid credentials.",
                Severity.MEDIUM, False, "Device Hygiene",
                remediation="Configure device cleanup rules and retire stale devices.",
                affected=[d.get("deviceName") or d.get("id", "") for d in stale],
            ))
        else:
            out.add(make_finding(
                "DEV-008", "Device Sync",
                "All managed devices synced recently" if total else "No managed devices",
                f"No devices older than {STALE_DEVICE_DAYS} days.",
                Severity.INFORMATIONAL, True, "Device Hygiene",
            ))

        out.summary.append(
            f"Managed Devices: {total} ({compliant} compliant, {non_compliant} non-compliant)"
        )
        out.summary.append(
            f"Platform Distribution: Windows: {platforms['windows']}, iOS: {platforms['ios']}, "
            f"Android: {platforms['android']}, Mac: {platforms['macos']}"
        )
        out.summary.append(f"Encrypted Devices: {encrypted}")
        out.summary.append(
            f"Compliance Policies: {len(compliance_policies)}, Config Profiles: {len(profiles)}"
        )


register_module(DeviceEndpointModule())
