import threading
import time

from schemas.taxonomy import AssessmentDomain
from signals.collector import Collector
from signals.types import EndpointSpec, GraphRequestError

DOMAIN = AssessmentDomain.AUDIT_LOGGING

SPECS = (
    EndpointSpec("first", "first"),
    EndpointSpec("second", "second", essential=True),
    EndpointSpec("third", "third"),
)


def _collector(**kwargs):
    kwargs.setdefault("query_timeout", 5.0)
    kwargs.setdefault("backoff_seconds", 0.01)
    return Collector(**kwargs)


def test_clean_collection_has_no_warnings(make_client):
    client = make_client(payloads={"first": {"value": [1]}, "second": {"value": []}, "third": {}})
    result = _collector().collect(DOMAIN, client, SPECS)
    assert result.success
    assert result.warnings == []
    assert result.unavailable_endpoints == []
    assert list(result.raw_data) == ["first", "second", "third"]


def test_one_failing_endpoint_is_isolated(make_client):
    client = make_client(failures={"first": GraphRequestError("HTTP 500: boom", status_code=500)})
    result = _collector().collect(DOMAIN, client, SPECS)
    assert result.success
    assert result.warnings == ["Failed to collect first: HTTP 500: boom"]
    assert "first" not in result.raw_data
    assert set(result.raw_data) == {"second", "third"}
    # non-essential endpoints never become unavailable
    assert result.unavailable_endpoints == []


def test_failing_essential_endpoint_is_unavailable(make_client, not_found):
    client = make_client(failures={"second": not_found})
    result = _collector().collect(DOMAIN, client, SPECS)
    assert result.success
    assert result.unavailable_endpoints == ["second"]
    assert len(result.warnings) == 1
    assert result.warnings[0].startswith("Failed to collect second:")


def test_second_of_three_times_out(make_client):
    client = make_client(delays={"second": 1.0})
    collector = _collector(query_timeout=0.2)
    result = collector.collect(DOMAIN, client, SPECS)
    assert result.success
    assert set(result.raw_data) == {"first", "third"}
    assert result.warnings == ["Failed to collect second: timeout"]
    failed = [e for e in collector.reset_events() if e["type"] == "endpoint_failed"]
    assert [e["category"] for e in failed] == ["timeout"]


def test_cancelled_before_start_yields_warnings(make_client):
    cancel = threading.Event()
    cancel.set()
    client = make_client()
    result = _collector().collect(DOMAIN, client, SPECS, cancel_event=cancel)
    assert result.success
    assert result.raw_data == {}
    assert result.warnings == [f"Failed to collect {s.key}: cancelled" for s in SPECS]
    assert client.calls == []


def test_throttled_endpoint_is_retried(make_client):
    client = make_client(throttles={"third": 2})
    collector = _collector(max_retries=3)
    result = collector.collect(DOMAIN, client, SPECS)
    assert result.warnings == []
    assert "third" in result.raw_data
    retries = [e for e in collector.reset_events() if e["type"] == "endpoint_retry"]
    assert len(retries) == 2
    assert all(e["endpoint"] == "third" for e in retries)


def test_throttling_beyond_retry_budget_fails_endpoint(make_client):
    client = make_client(throttles={"first": 5})
    result = _collector(max_retries=1).collect(DOMAIN, client, SPECS)
    assert result.success
    assert len(result.warnings) == 1
    assert "throttled after 1 retries" in result.warnings[0]


def test_client_without_fetch_aborts_collection():
    collector = _collector()
    result = collector.collect(DOMAIN, object(), SPECS)
    assert not result.success
    assert result.error_message
    assert result.raw_data == {}
    assert [e["type"] for e in collector.reset_events()] == ["collection_aborted"]


def test_duplicate_keys_abort_collection(make_client):
    specs = (EndpointSpec("a", "x"), EndpointSpec("a", "y"))
    result = _collector().collect(DOMAIN, make_client(), specs)
    assert not result.success
    assert "Duplicate endpoint keys" in result.error_message


def test_events_carry_domain_and_endpoint(make_client):
    collector = _collector()
    collector.collect(DOMAIN, make_client(), SPECS)
    events = collector.reset_events()
    assert {e["domain"] for e in events} == {DOMAIN.value}
    returned = [e for e in events if e["type"] == "endpoint_returned"]
    assert sorted(e["endpoint"] for e in returned) == ["first", "second", "third"]
    assert all("ms" in e for e in returned)
    assert collector.reset_events() == []


def test_hung_endpoint_releases_its_slot(make_client):
    specs = (EndpointSpec("slow", "slow"), EndpointSpec("fast", "fast"))
    client = make_client(payloads={"fast": {"value": [1]}}, delays={"slow": 5.0})
    collector = _collector(max_workers=1, query_timeout=0.2)

    began = time.monotonic()
    result = collector.collect(DOMAIN, client, specs)
    elapsed = time.monotonic() - began

    assert elapsed < 2.0
    assert result.warnings == ["Failed to collect slow: timeout"]
    assert list(result.raw_data) == ["fast"]
