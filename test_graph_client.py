import base64
import json
import time
from types import SimpleNamespace

import pytest
import requests
from azure.identity import AzureCliCredential, ClientSecretCredential

from signals.graph_client import (
    GraphClient,
    build_credential,
    classify_failure,
    decode_token_claims,
    resolve_url,
)
from signals.types import GraphRequestError, GraphThrottledError


def _jwt(claims):
    body = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    return f"header.{body}.signature"


class FakeCredential:
    def __init__(self, claims=None):
        self.token = _jwt(claims or {"roles": ["User.Read.All", "AuditLog.Read.All"]})
        self.calls = 0

    def get_token(self, scope):
        self.calls += 1
        return SimpleNamespace(token=self.token, expires_on=time.time() + 3600)


class FakeResponse:
    def __init__(self, status_code=200, body=None, headers=None):
        self.status_code = status_code
        self._body = body if body is not None else {"value": []}
        self.text = json.dumps(self._body)
        self.headers = headers or {}

    def json(self):
        return self._body


@pytest.fixture
def captured(monkeypatch):
    calls = []
    state = {"response": FakeResponse()}

    def fake_get(self, url, headers=None, timeout=None):
        calls.append({"url": url, "headers": headers, "timeout": timeout})
        response = state["response"]
        if isinstance(response, Exception):
            raise response
        return response

    monkeypatch.setattr(requests.Session, "get", fake_get)
    return SimpleNamespace(calls=calls, state=state)


def test_resolve_url():
    assert resolve_url("users?$top=1") == "https://graph.microsoft.com/v1.0/users?$top=1"
    assert resolve_url("/users") == "https://graph.microsoft.com/v1.0/users"
    beta = "https://graph.microsoft.com/beta/security/attackSimulation/simulations"
    assert resolve_url(beta) == beta


def test_get_raw_json_sends_bearer_token(captured):
    client = GraphClient(FakeCredential(), timeout=12)
    text = client.get_raw_json("organization")
    assert json.loads(text) == {"value": []}
    call = captured.calls[0]
    assert call["url"] == "https://graph.microsoft.com/v1.0/organization"
    assert call["headers"]["Authorization"].startswith("Bearer header.")
    assert call["timeout"] == 12


def test_token_is_cached(captured):
    credential = FakeCredential()
    client = GraphClient(credential)
    client.get_raw_json("users")
    client.get_raw_json("groups")
    assert credential.calls == 1


def test_throttling_raises_with_retry_after(captured):
    captured.state["response"] = FakeResponse(429, {"error": {"code": "TooManyRequests"}}, {"Retry-After": "7"})
    with pytest.raises(GraphThrottledError) as info:
        GraphClient(FakeCredential()).get_raw_json("users")
    assert info.value.retry_after == 7.0
    assert info.value.status_code == 429


def test_http_error_carries_status(captured):
    captured.state["response"] = FakeResponse(
        403, {"error": {"code": "Authorization_RequestDenied", "message": "Insufficient privileges"}},
    )
    with pytest.raises(GraphRequestError) as info:
        GraphClient(FakeCredential()).get_raw_json("users")
    assert info.value.status_code == 403
    assert "Authorization_RequestDenied" in str(info.value)
    assert classify_failure(info.value) == "permission_denied"


def test_transport_timeout_becomes_timeout_error(captured):
    captured.state["response"] = requests.Timeout("slow")
    with pytest.raises(TimeoutError):
        GraphClient(FakeCredential()).get_raw_json("users")


def test_test_connection_false_on_error(captured):
    captured.state["response"] = FakeResponse(500, {"error": {"code": "InternalServerError"}})
    assert GraphClient(FakeCredential()).test_connection() is False


def test_granted_permissions_from_token(captured):
    client = GraphClient(FakeCredential({"roles": ["Policy.Read.All"], "scp": "User.Read openid"}))
    assert client.granted_permissions() == {"Policy.Read.All", "User.Read", "openid"}
    assert client.has_permission("Policy.Read.All")
    assert not client.has_permission("Directory.Read.All")


def test_decode_token_claims_tolerates_garbage():
    assert decode_token_claims("not-a-jwt") == {}
    assert decode_token_claims("a.!!!.c") == {}


def test_organization_details(captured):
    captured.state["response"] = FakeResponse(200, {"value": [{
        "id": "tenant-1",
        "displayName": "Contoso",
        "verifiedDomains": [{"name": "contoso.onmicrosoft.com"}, {"name": "contoso.com", "isDefault": True}],
    }]})
    org = GraphClient(FakeCredential()).organization()
    assert org == {"tenant_id": "tenant-1", "display_name": "Contoso", "default_domain": "contoso.com"}


@pytest.mark.parametrize("exc,category", [
    (TimeoutError("t"), "timeout"),
    (GraphThrottledError("HTTP 429"), "throttled"),
    (GraphRequestError("HTTP 404", status_code=404), "not_found"),
    (GraphRequestError("HTTP 401", status_code=401), "permission_denied"),
    (GraphRequestError("HTTP 500", status_code=500), "error"),
])
def test_classify_failure(exc, category):
    assert classify_failure(exc) == category


def test_build_credential_prefers_service_principal():
    sp = build_credential({"tenant_id": "t", "client_id": "c", "client_secret": "s"})
    assert isinstance(sp, ClientSecretCredential)
    assert isinstance(build_credential({}), AzureCliCredential)
