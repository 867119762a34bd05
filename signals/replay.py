"""Offline directory client that serves recorded Graph responses.

Replay directory layout::

    <dir>/permissions.json   ["User.Read.All", "Directory.Read.All", ...]
    <dir>/responses.json     {"<graph path>": <json payload>, ...}
    <dir>/tenant.json        {"tenant_id": "...", "display_name": "..."}  (optional)

A path with no recorded response behaves like a Graph 404.
"""
from __future__ import annotations

import json
import os
import threading
from typing import Any, Iterable

from signals.graph_client import GRAPH_BASE_URL, resolve_url
from signals.types import GraphRequestError


class ReplayDataError(Exception):
    """Raised when a replay directory is missing or malformed."""


def _normalise(path: str) -> str:
    return resolve_url(path, GRAPH_BASE_URL)


class ReplayClient:
    def __init__(
        self,
        responses: dict[str, Any],
        permissions: Iterable[str] = (),
        tenant: dict[str, str] | None = None,
    ):
        self._responses = {
            _normalise(p): (v if isinstance(v, str) else json.dumps(v))
            for p, v in responses.items()
        }
        self._permissions = set(permissions)
        self.tenant = tenant or {}
        self._lock = threading.Lock()
        self.calls: list[str] = []

    @classmethod
    def from_directory(cls, path: str) -> "ReplayClient":
        if not os.path.isdir(path):
            raise ReplayDataError(f"Replay directory not found: {path}")

        def _load(name: str, default: Any) -> Any:
            file = os.path.join(path, name)
            if not os.path.exists(file):
                return default
            try:
                with open(file, encoding="utf-8") as f:
                    return json.load(f)
            except (OSError, ValueError) as exc:
                raise ReplayDataError(f"Cannot read {file}: {exc}") from exc

        responses = _load("responses.json", None)
        if not isinstance(responses, dict):
            raise ReplayDataError(f"{path}/responses.json must be a JSON object")
        return cls(
            responses,
            permissions=_load("permissions.json", []),
            tenant=_load("tenant.json", {}),
        )

    def get_raw_json(self, path: str, *, timeout: float | None = None) -> str:
        url = _normalise(path)
        with self._lock:
            self.calls.append(path)
        if url not in self._responses:
            raise GraphRequestError(f"HTTP 404: no recorded response for {path}", status_code=404)
        return self._responses[url]

    def granted_permissions(self) -> set[str]:
        return set(self._permissions)

    def has_permission(self, scope: str) -> bool:
        return scope in self._permissions

    def test_connection(self) -> bool:
        return True

    def organization(self) -> dict[str, str]:
        return dict(self.tenant)
