"""Module registry: maps each AssessmentDomain to its assessment module.

Usage:
    import evaluators.identity   # noqa: F401  (registration side effect)
    from evaluators.registry import MODULES, get_module
    module = get_module(AssessmentDomain.IDENTITY_AND_ACCESS)
"""
from __future__ import annotations

import threading
from typing import Any, Iterable, Optional, Protocol

from schemas.domain import DomainScore, NormalizedFindings
from schemas.taxonomy import ALL_DOMAINS, AssessmentDomain
from signals.types import CollectionResult, EndpointSpec


# ── Protocol all domain modules implement ─────────────────────────
class AssessmentModule(Protocol):
    domain: AssessmentDomain
    description: str
    required_permissions: tuple[str, ...]
    endpoints: tuple[EndpointSpec, ...]

    @property
    def display_name(self) -> str: ...

    def validate_permissions(self, client: Any) -> bool: ...

    def collect(
        self,
        client: Any,
        *,
        collector: Any = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> CollectionResult: ...

    def normalize(self, result: CollectionResult) -> NormalizedFindings: ...

    def score(self, findings: NormalizedFindings, policy: Any = None) -> DomainScore: ...


# ── Registry ──────────────────────────────────────────────────────
MODULES: dict[AssessmentDomain, AssessmentModule] = {}


def register_module(module: AssessmentModule) -> AssessmentModule:
    """Register a module instance under its domain (one module per domain)."""
    existing = MODULES.get(module.domain)
    if existing is not None and existing is not module:
        raise ValueError(f"A module is already registered for {module.domain.value}")
    MODULES[module.domain] = module
    return module


def get_module(domain: AssessmentDomain) -> AssessmentModule:
    module = MODULES.get(domain)
    if module is None:
        raise KeyError(f"No module registered for {domain.value}")
    return module


def ordered_modules(
    registry: dict[AssessmentDomain, AssessmentModule] | None = None,
    domains: Iterable[AssessmentDomain] | None = None,
) -> list[AssessmentModule]:
    """Modules in canonical domain order, optionally filtered."""
    reg = MODULES if registry is None else registry
    wanted = set(domains) if domains is not None else None
    return [
        reg[d] for d in ALL_DOMAINS
        if d in reg and (wanted is None or d in wanted)
    ]
