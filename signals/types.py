"""Core types for the collection layer."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from schemas.taxonomy import AssessmentDomain


class GraphRequestError(Exception):
    """A directory-API call failed (HTTP error or transport failure)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class GraphThrottledError(GraphRequestError):
    """The directory API asked us to slow down (429 / 503 / 504)."""

    def __init__(self, message: str, status_code: int | None = 429, retry_after: float | None = None):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class EndpointStatus(str, Enum):
    OK = "OK"
    FAILED = "Failed"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"


@dataclass(frozen=True)
class EndpointSpec:
    """One independent sub-query of a domain collection.

    ``essential`` endpoints carry the domain's core signal; when they fail
    the key is also listed in ``CollectionResult.unavailable_endpoints``.
    """
    key: str
    path: str
    essential: bool = False


@dataclass
class EndpointOutcome:
    """Per-endpoint result inside a single collection pass."""
    key: str
    status: EndpointStatus
    payload: Optional[str] = None
    cause: str = ""
    attempts: int = 0
    duration_ms: int = 0


@dataclass
class CollectionResult:
    """Output of a domain collection.

    ``success`` is False only when the whole collection aborted outside the
    per-endpoint guards; individual endpoint failures show up in
    ``warnings`` / ``unavailable_endpoints`` instead.
    """
    domain: AssessmentDomain
    success: bool = True
    raw_data: dict[str, Optional[str]] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    unavailable_endpoints: list[str] = field(default_factory=list)
    error_message: Optional[str] = None
    collected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def failed(cls, domain: AssessmentDomain, message: str) -> "CollectionResult":
        return cls(domain=domain, success=False, error_message=message)
