"""Microsoft Graph collaborator: raw JSON fetches and permission checks.

Collectors never talk to Graph directly; they receive an object that
satisfies ``DirectoryClient``.  ``GraphClient`` is the live implementation
(azure-identity credential + requests); ``signals/replay.py`` provides an
offline one.

Throttling (429 / 503 / 504) is surfaced as ``GraphThrottledError`` so the
collector can back off and retry; every other HTTP failure is a
``GraphRequestError`` carrying the status code.
"""
from __future__ import annotations

import base64
import json
import logging
import threading
import time
from typing import Any, Protocol

import requests
from azure.identity import AzureCliCredential, ClientSecretCredential

from signals.types import GraphRequestError, GraphThrottledError

LOGGER = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0/"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
THROTTLE_STATUSES = {429, 503, 504}

# Refresh the cached token this many seconds before it expires.
_TOKEN_SKEW_SECONDS = 120


class DirectoryClient(Protocol):
    def get_raw_json(self, path: str, *, timeout: float | None = None) -> str: ...

    def has_permission(self, scope: str) -> bool: ...

    def granted_permissions(self) -> set[str]: ...

    def test_connection(self) -> bool: ...


def build_credential(graph_settings: dict[str, Any]):
    """Service-principal credential when fully configured, else the az CLI login."""
    tenant_id = graph_settings.get("tenant_id")
    client_id = graph_settings.get("client_id")
    client_secret = graph_settings.get("client_secret")
    if tenant_id and client_id and client_secret:
        return ClientSecretCredential(tenant_id, client_id, client_secret)
    return AzureCliCredential(process_timeout=30)


def resolve_url(path: str, base_url: str = GRAPH_BASE_URL) -> str:
    if path.lower().startswith("http"):
        return path
    return base_url.rstrip("/") + "/" + path.lstrip("/")


def decode_token_claims(token: str) -> dict[str, Any]:
    """Decode the (unverified) payload segment of a JWT access token."""
    parts = token.split(".")
    if len(parts) < 2:
        return {}
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        return json.loads(base64.urlsafe_b64decode(segment.encode("ascii")))
    except (ValueError, UnicodeDecodeError):
        LOGGER.warning("Access token payload could not be decoded")
        return {}


def permissions_from_claims(claims: dict[str, Any]) -> set[str]:
    """Application roles plus delegated scopes carried by a token."""
    granted = {str(r) for r in claims.get("roles") or []}
    scp = claims.get("scp")
    if isinstance(scp, str):
        granted.update(s for s in scp.split(" ") if s)
    return granted


def classify_failure(exc: BaseException) -> str:
    """Bucket an endpoint failure: permission_denied | not_found | throttled | timeout | error."""
    if isinstance(exc, TimeoutError):
        return "timeout"
    if isinstance(exc, GraphThrottledError):
        return "throttled"
    status = getattr(exc, "status_code", None)
    msg = str(exc).lower()
    if status in (401, 403) or "forbidden" in msg or "authorization" in msg:
        return "permission_denied"
    if status == 404 or "not found" in msg:
        return "not_found"
    return "error"


def _error_text(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    err = body.get("error") if isinstance(body, dict) else None
    if isinstance(err, dict):
        return f"{err.get('code', '')}: {err.get('message', '')}".strip(": ")
    return resp.text[:200]


def _retry_after(resp: requests.Response) -> float | None:
    value = resp.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class GraphClient:
    """Thread-safe Graph client.

    One ``requests.Session`` per worker thread; the access token and the
    granted-permission set are cached behind a lock.
    """

    def __init__(
        self,
        credential,
        *,
        base_url: str = GRAPH_BASE_URL,
        timeout: float = 30.0,
        scope: str = GRAPH_SCOPE,
    ):
        self.credential = credential
        self.base_url = base_url
        self.timeout = timeout
        self.scope = scope
        self._lock = threading.Lock()
        self._local = threading.local()
        self._token: str | None = None
        self._expires_on = 0.0
        self._granted: set[str] | None = None

    # ── Auth ──────────────────────────────────────────────────────
    def _access_token(self) -> str:
        with self._lock:
            if self._token is None or time.time() > self._expires_on - _TOKEN_SKEW_SECONDS:
                tok = self.credential.get_token(self.scope)
                self._token = tok.token
                self._expires_on = float(tok.expires_on)
                self._granted = None
            return self._token

    def _session(self) -> requests.Session:
        sess = getattr(self._local, "session", None)
        if sess is None:
            sess = requests.Session()
            self._local.session = sess
        return sess

    # ── DirectoryClient ───────────────────────────────────────────
    def get_raw_json(self, path: str, *, timeout: float | None = None) -> str:
        url = resolve_url(path, self.base_url)
        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Accept": "application/json",
            "ConsistencyLevel": "eventual",
        }
        try:
            resp = self._session().get(url, headers=headers, timeout=timeout or self.timeout)
        except requests.Timeout as exc:
            raise TimeoutError(f"request timed out: {path}") from exc
        except requests.RequestException as exc:
            raise GraphRequestError(f"transport error: {exc}") from exc

        if resp.status_code in THROTTLE_STATUSES:
            raise GraphThrottledError(
                f"HTTP {resp.status_code}: {_error_text(resp)}",
                status_code=resp.status_code,
                retry_after=_retry_after(resp),
            )
        if resp.status_code >= 400:
            raise GraphRequestError(
                f"HTTP {resp.status_code}: {_error_text(resp)}",
                status_code=resp.status_code,
            )
        return resp.text

    def granted_permissions(self) -> set[str]:
        token = self._access_token()
        with self._lock:
            if self._granted is None:
                self._granted = permissions_from_claims(decode_token_claims(token))
                LOGGER.debug("Token grants %d permission(s)", len(self._granted))
            return set(self._granted)

    def has_permission(self, scope: str) -> bool:
        return scope in self.granted_permissions()

    def test_connection(self) -> bool:
        try:
            self.get_raw_json("organization?$select=id")
        except (GraphRequestError, TimeoutError) as exc:
            LOGGER.warning("Graph connection test failed: %s", exc)
            return False
        return True

    def organization(self) -> dict[str, Any]:
        """Tenant display name / id / default domain, best effort."""
        raw = self.get_raw_json("organization?$select=id,displayName,verifiedDomains")
        items = json.loads(raw).get("value", [])
        if not items:
            return {}
        org = items[0]
        default = next(
            (d.get("name") for d in org.get("verifiedDomains", []) if d.get("isDefault")),
            "",
        )
        return {
            "tenant_id": org.get("id", ""),
            "display_name": org.get("displayName", ""),
            "default_domain": default or "",
        }
