"""Shared behaviour for domain modules: collection, permissions, normalization.

A domain module subclasses ``DomainModule`` and declares

  * ``domain``, ``description``, ``required_permissions``
  * ``endpoints``: the ordered sub-queries handed to the Collector
  * ``evaluate(ctx, out)``: the fixed check battery

Everything else (fail-closed permission validation, the collection-failure
short-circuit, defensive JSON parsing, scoring) lives here.
"""
from __future__ import annotations

import json
import logging
import re
import threading
from datetime import datetime, timezone
from typing import Any, Optional

from engine.scoring import DEFAULT_POLICY, ScoringPolicy, score_domain
from schemas.domain import DomainScore, NormalizedFindings
from schemas.taxonomy import DOMAIN_DISPLAY_NAMES, AssessmentDomain
from signals.collector import Collector
from signals.types import CollectionResult, EndpointSpec

LOGGER = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════
#  Defensive parsing
# ══════════════════════════════════════════════════════════════════

def _load(raw: Any, key: str) -> Any:
    if raw is None or raw == "":
        return None
    if not isinstance(raw, (str, bytes)):
        return raw
    try:
        return json.loads(raw)
    except ValueError as exc:
        LOGGER.warning("Could not parse %s payload: %s", key, exc)
        return None


def parse_collection(raw: Any, key: str = "") -> list[dict[str, Any]]:
    """Decode a ``{"value": [...]}`` (or bare list) payload; [] on any problem."""
    data = _load(raw, key)
    if data is None:
        return []
    if isinstance(data, dict):
        items = data.get("value")
        if items is None:
            LOGGER.warning("Payload %s has no 'value' collection", key)
            return []
    else:
        items = data
    if not isinstance(items, list):
        LOGGER.warning("Payload %s has unexpected shape %s", key, type(items).__name__)
        return []
    return [i for i in items if isinstance(i, dict)]


def parse_object(raw: Any, key: str = "") -> dict[str, Any]:
    """Decode a single-object payload; {} on any problem."""
    data = _load(raw, key)
    if data is None:
        return {}
    if not isinstance(data, dict):
        LOGGER.warning("Payload %s is not an object", key)
        return {}
    return data


_FRACTION = re.compile(r"\.(\d+)")


def parse_datetime(value: Any) -> Optional[datetime]:
    """Graph timestamps (``Z`` suffix, up to 7 fractional digits) → aware datetime."""
    if not isinstance(value, str) or not value:
        return None
    text = value.strip().replace("Z", "+00:00")
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def pct(part: float, whole: float) -> float:
    """Percentage rounded to one decimal; 0.0 when there is nothing to divide by."""
    return round(part * 100.0 / whole, 1) if whole else 0.0


def lower(value: Any) -> str:
    return value.lower() if isinstance(value, str) else ""


# ── Conditional Access helpers (shared by several domains) ────────
def enabled_policies(policies: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [p for p in policies if p.get("state") == "enabled"]


def grant_controls(policy: dict[str, Any]) -> list[str]:
    grants = policy.get("grantControls") or {}
    return [lower(c) for c in grants.get("builtInControls") or []]


def policy_users(policy: dict[str, Any]) -> dict[str, Any]:
    return (policy.get("conditions") or {}).get("users") or {}


def client_app_types(policy: dict[str, Any]) -> list[str]:
    return [lower(c) for c in (policy.get("conditions") or {}).get("clientAppTypes") or []]


# ══════════════════════════════════════════════════════════════════
#  Check context
# ══════════════════════════════════════════════════════════════════

class CheckContext:
    """Read-only view of a successful collection for the check battery."""

    def __init__(self, result: CollectionResult):
        self.result = result
        self.now = result.collected_at

    def records(self, key: str) -> list[dict[str, Any]]:
        return parse_collection(self.result.raw_data.get(key), key)

    def object(self, key: str) -> dict[str, Any]:
        return parse_object(self.result.raw_data.get(key), key)

    def collected(self, key: str) -> bool:
        return self.result.raw_data.get(key) is not None

    def unavailable(self, key: str) -> bool:
        return key in self.result.unavailable_endpoints

    def days_since(self, value: Any) -> Optional[float]:
        dt = parse_datetime(value)
        if dt is None:
            return None
        return (self.now - dt).total_seconds() / 86400.0


# ══════════════════════════════════════════════════════════════════
#  Base module
# ══════════════════════════════════════════════════════════════════

class DomainModule:
    domain: AssessmentDomain
    description: str = ""
    required_permissions: tuple[str, ...] = ()
    endpoints: tuple[EndpointSpec, ...] = ()

    @property
    def display_name(self) -> str:
        return DOMAIN_DISPLAY_NAMES.get(self.domain, self.domain.value)

    # ── Permissions ───────────────────────────────────────────────
    def missing_permissions(self, client: Any) -> list[str]:
        return [p for p in self.required_permissions if not client.has_permission(p)]

    def validate_permissions(self, client: Any) -> bool:
        """Fail closed: any missing permission (or a failing check) means not runnable."""
        try:
            missing = self.missing_permissions(client)
        except Exception as exc:
            LOGGER.warning("Permission check failed for %s: %s", self.domain.value, exc)
            return False
        for permission in missing:
            LOGGER.warning("Missing required permission for %s: %s", self.domain.value, permission)
        return not missing

    # ── Collection ────────────────────────────────────────────────
    def collect(
        self,
        client: Any,
        *,
        collector: Optional[Collector] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> CollectionResult:
        LOGGER.info("Collecting %s (%d endpoints)", self.display_name, len(self.endpoints))
        return (collector or Collector()).collect(
            self.domain, client, self.endpoints, cancel_event=cancel_event,
        )

    # ── Normalization ─────────────────────────────────────────────
    def normalize(self, result: CollectionResult) -> NormalizedFindings:
        out = NormalizedFindings(domain=self.domain)
        if not result.success:
            out.summary.append(f"Collection failed: {result.error_message}")
            return out

        try:
            self.evaluate(CheckContext(result), out)
        except Exception as exc:
            LOGGER.exception("Error normalizing %s findings", self.domain.value)
            out.summary.append(f"Error during normalization: {exc}")
            return out

        if result.warnings:
            out.summary.append(f"Note: {len(result.warnings)} data points could not be collected")
        return out

    def evaluate(self, ctx: CheckContext, out: NormalizedFindings) -> None:
        raise NotImplementedError

    # ── Scoring ───────────────────────────────────────────────────
    def score(self, findings: NormalizedFindings, policy: Optional[ScoringPolicy] = None) -> DomainScore:
        return score_domain(findings, policy or DEFAULT_POLICY)
