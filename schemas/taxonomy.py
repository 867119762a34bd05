# schemas/taxonomy.py: Single authoritative taxonomy for assessment domains.
"""Centralised taxonomy for tenant security assessment domains.

Every classification mapping used by the collectors, the scoring engine
and the reporting layer is defined here exactly once:

* ``AssessmentDomain``: the closed set of security areas, one module each
* ``Severity``: the ordered finding severity scale
* display names, descriptions and default scoring weights per domain
"""
from __future__ import annotations

from enum import Enum


# ══════════════════════════════════════════════════════════════════
# Canonical enums
# ══════════════════════════════════════════════════════════════════

class AssessmentDomain(str, Enum):
    IDENTITY_AND_ACCESS = "IdentityAndAccess"
    PRIVILEGED_ACCESS = "PrivilegedAccess"
    DEVICE_ENDPOINT = "DeviceEndpoint"
    EXCHANGE_EMAIL_SECURITY = "ExchangeEmailSecurity"
    MICROSOFT_DEFENDER = "MicrosoftDefender"
    DATA_PROTECTION_COMPLIANCE = "DataProtectionCompliance"
    AUDIT_LOGGING = "AuditLogging"
    APP_GOVERNANCE = "AppGovernance"
    COLLABORATION_SECURITY = "CollaborationSecurity"


class Severity(str, Enum):
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"
    INFORMATIONAL = "Informational"

    @property
    def rank(self) -> int:
        """0 for Critical … 4 for Informational (sort ascending = worst first)."""
        return SEVERITY_ORDER.index(self)


SEVERITY_ORDER: tuple[Severity, ...] = (
    Severity.CRITICAL,
    Severity.HIGH,
    Severity.MEDIUM,
    Severity.LOW,
    Severity.INFORMATIONAL,
)

ALL_DOMAINS: tuple[AssessmentDomain, ...] = tuple(AssessmentDomain)


def parse_domain(value: str) -> AssessmentDomain:
    """Resolve a domain from its value or enum name (case-insensitive)."""
    needle = value.strip().replace("-", "_").lower()
    for domain in AssessmentDomain:
        if needle in (domain.value.lower(), domain.name.lower()):
            return domain
    raise ValueError(f"Unknown assessment domain: {value!r}")


def parse_severity(value: str) -> Severity:
    needle = value.strip().lower()
    for sev in Severity:
        if needle in (sev.value.lower(), sev.name.lower()):
            return sev
    raise ValueError(f"Unknown severity: {value!r}")


# ══════════════════════════════════════════════════════════════════
# Display metadata
# ══════════════════════════════════════════════════════════════════

DOMAIN_DISPLAY_NAMES: dict[AssessmentDomain, str] = {
    AssessmentDomain.IDENTITY_AND_ACCESS: "Identity & Access (IAM)",
    AssessmentDomain.PRIVILEGED_ACCESS: "Privileged Access / PIM",
    AssessmentDomain.DEVICE_ENDPOINT: "Device & Endpoint",
    AssessmentDomain.EXCHANGE_EMAIL_SECURITY: "Exchange / Email Security",
    AssessmentDomain.MICROSOFT_DEFENDER: "Microsoft Defender",
    AssessmentDomain.DATA_PROTECTION_COMPLIANCE: "Data Protection & Compliance",
    AssessmentDomain.AUDIT_LOGGING: "Audit & Logging",
    AssessmentDomain.APP_GOVERNANCE: "App Governance / Consent",
    AssessmentDomain.COLLABORATION_SECURITY: "Collaboration Security",
}

# Check-id prefix per domain (IAM-001, PAM-003, …)
DOMAIN_CHECK_PREFIX: dict[AssessmentDomain, str] = {
    AssessmentDomain.IDENTITY_AND_ACCESS: "IAM",
    AssessmentDomain.PRIVILEGED_ACCESS: "PAM",
    AssessmentDomain.DEVICE_ENDPOINT: "DEV",
    AssessmentDomain.EXCHANGE_EMAIL_SECURITY: "EXO",
    AssessmentDomain.MICROSOFT_DEFENDER: "MDE",
    AssessmentDomain.DATA_PROTECTION_COMPLIANCE: "DLP",
    AssessmentDomain.AUDIT_LOGGING: "AUD",
    AssessmentDomain.APP_GOVERNANCE: "APP",
    AssessmentDomain.COLLABORATION_SECURITY: "COL",
}


# ══════════════════════════════════════════════════════════════════
# Scoring weights
# ══════════════════════════════════════════════════════════════════

# Relative importance of each domain in the tenant-level score.
# Domains not listed weigh 1.0.
DOMAIN_WEIGHTS: dict[AssessmentDomain, float] = {
    AssessmentDomain.IDENTITY_AND_ACCESS: 1.5,
    AssessmentDomain.PRIVILEGED_ACCESS: 1.4,
    AssessmentDomain.DATA_PROTECTION_COMPLIANCE: 1.3,
    AssessmentDomain.EXCHANGE_EMAIL_SECURITY: 1.2,
    AssessmentDomain.MICROSOFT_DEFENDER: 1.2,
    AssessmentDomain.APP_GOVERNANCE: 1.1,
    AssessmentDomain.AUDIT_LOGGING: 1.0,
    AssessmentDomain.DEVICE_ENDPOINT: 1.0,
    AssessmentDomain.COLLABORATION_SECURITY: 1.0,
}

# Score deduction per non-compliant finding.
SEVERITY_PENALTIES: dict[Severity, float] = {
    Severity.CRITICAL: 15.0,
    Severity.HIGH: 8.0,
    Severity.MEDIUM: 4.0,
    Severity.LOW: 1.0,
    Severity.INFORMATIONAL: 0.0,
}

# Harsher preset for deployments that want findings to bite harder.
STRICT_PENALTIES: dict[Severity, float] = {
    Severity.CRITICAL: 25.0,
    Severity.HIGH: 15.0,
    Severity.MEDIUM: 7.0,
    Severity.LOW: 3.0,
    Severity.INFORMATIONAL: 0.0,
}

# Cap on the deduction any single severity bucket can cause.
MAX_CATEGORY_DEDUCTION = 40.0

GRADE_THRESHOLDS: tuple[tuple[int, str], ...] = (
    (90, "A"),
    (80, "B"),
    (70, "C"),
    (60, "D"),
)
