"""Shared fixtures: an in-memory directory client and payload helpers."""
import json
import threading
import time

import pytest

import engine.orchestrator  # noqa: F401  (registers every domain module)
from evaluators.registry import MODULES
from signals.graph_client import resolve_url
from signals.types import GraphRequestError, GraphThrottledError

EMPTY = {"value": []}


def all_permissions() -> set:
    return {p for m in MODULES.values() for p in m.required_permissions}


class FakeDirectoryClient:
    """Serves payloads keyed by Graph path; unknown paths return an empty collection.

    ``failures`` maps a path to the exception it raises, ``delays`` to a
    sleep in seconds, ``throttles`` to how many 429s precede the payload.
    """

    def __init__(self, responses=None, permissions=None, failures=None, delays=None, throttles=None):
        self.responses = {resolve_url(p): v for p, v in (responses or {}).items()}
        self.permissions = set(all_permissions() if permissions is None else permissions)
        self.failures = {resolve_url(p): e for p, e in (failures or {}).items()}
        self.delays = {resolve_url(p): s for p, s in (delays or {}).items()}
        self.throttles = {resolve_url(p): n for p, n in (throttles or {}).items()}
        self.calls = []
        self._lock = threading.Lock()

    def get_raw_json(self, path, *, timeout=None):
        url = resolve_url(path)
        with self._lock:
            self.calls.append(path)
            remaining = self.throttles.get(url, 0)
            if remaining:
                self.throttles[url] = remaining - 1
        if remaining:
            raise GraphThrottledError("HTTP 429: TooManyRequests", retry_after=0)
        if url in self.delays:
            time.sleep(self.delays[url])
        if url in self.failures:
            raise self.failures[url]
        payload = self.responses.get(url, EMPTY)
        return payload if isinstance(payload, str) else json.dumps(payload)

    def has_permission(self, scope):
        return scope in self.permissions

    def granted_permissions(self):
        return set(self.permissions)

    def test_connection(self):
        return True

    def organization(self):
        return {"tenant_id": "tenant-1", "display_name": "Contoso", "default_domain": "contoso.com"}


def paths_for(module, by_key):
    """Translate ``{endpoint key: value}`` into ``{graph path: value}`` for a module."""
    paths = {spec.key: spec.path for spec in module.endpoints}
    return {paths[key]: value for key, value in (by_key or {}).items()}


@pytest.fixture
def make_client():
    def _make(module=None, payloads=None, failures=None, delays=None, throttles=None, permissions=None):
        if module is not None:
            payloads = paths_for(module, payloads)
            failures = paths_for(module, failures)
            delays = paths_for(module, delays)
            throttles = paths_for(module, throttles)
        return FakeDirectoryClient(
            responses=payloads,
            permissions=permissions,
            failures=failures,
            delays=delays,
            throttles=throttles,
        )
    return _make


@pytest.fixture
def not_found():
    return GraphRequestError("HTTP 404: Request_ResourceNotFound", status_code=404)
