"""Endpoint collector: isolated, bounded-parallel sub-query execution.

Domain modules never loop over Graph calls themselves.  They declare an
ordered tuple of ``EndpointSpec`` and hand it to ``Collector.collect``,
which owns the resilience contract:

  * every endpoint runs in isolation; one failure never aborts the others
  * throttled calls back off and retry a bounded number of times
  * each endpoint has its own timeout, distinct from the run timeout
  * a shared cancellation event stops queued and in-flight endpoints
  * failures become ``"Failed to collect <key>: <cause>"`` warnings
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, wait
from typing import Any, Callable, Sequence

from schemas.taxonomy import AssessmentDomain
from signals.graph_client import classify_failure
from signals.types import (
    CollectionResult,
    EndpointOutcome,
    EndpointSpec,
    EndpointStatus,
    GraphThrottledError,
)

LOGGER = logging.getLogger(__name__)

# Type: (path, *, timeout) -> raw JSON text
FetchFn = Callable[..., str]

_POLL_SECONDS = 0.05


class Collector:
    """
    Run a domain's endpoints against a directory client.
    One instance may serve many domains concurrently; each ``collect``
    call gets its own bounded set of worker threads.
    """

    def __init__(
        self,
        *,
        max_workers: int = 4,
        query_timeout: float = 60.0,
        max_retries: int = 3,
        backoff_seconds: float = 2.0,
        max_backoff_seconds: float = 30.0,
    ):
        self.max_workers = max(1, max_workers)
        self.query_timeout = query_timeout
        self.max_retries = max(0, max_retries)
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.events: list[dict[str, Any]] = []  # for telemetry
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, execution: dict[str, Any]) -> "Collector":
        return cls(
            max_workers=int(execution.get("max_parallel_queries", 4)),
            query_timeout=float(execution.get("query_timeout_seconds", 60)),
            max_retries=int(execution.get("max_retries", 3)),
            backoff_seconds=float(execution.get("backoff_seconds", 2.0)),
        )

    # ══════════════════════════════════════════════════════════════
    #  Public API
    # ══════════════════════════════════════════════════════════════

    def collect(
        self,
        domain: AssessmentDomain,
        client: Any,
        endpoints: Sequence[EndpointSpec],
        *,
        cancel_event: threading.Event | None = None,
    ) -> CollectionResult:
        """Collect every endpoint; only a fault outside the per-endpoint guards fails the domain."""
        cancel_event = cancel_event or threading.Event()
        try:
            fetch: FetchFn = client.get_raw_json
            keys = [spec.key for spec in endpoints]
            if len(keys) != len(set(keys)):
                raise ValueError(f"Duplicate endpoint keys for {domain.value}")
            outcomes = self._run_endpoints(domain, fetch, endpoints, cancel_event)
        except Exception as exc:
            LOGGER.exception("Collection aborted for %s", domain.value)
            self._emit("collection_aborted", domain, "", error=str(exc))
            return CollectionResult.failed(domain, str(exc) or exc.__class__.__name__)

        result = CollectionResult(domain=domain)
        # Report in declared order so completion order never leaks out.
        for spec in endpoints:
            outcome = outcomes[spec.key]
            if outcome.status is EndpointStatus.OK:
                result.raw_data[spec.key] = outcome.payload
                continue
            result.warnings.append(f"Failed to collect {spec.key}: {outcome.cause}")
            if spec.essential:
                result.unavailable_endpoints.append(spec.key)
        return result

    def reset_events(self) -> list[dict[str, Any]]:
        with self._lock:
            events = self.events.copy()
            self.events.clear()
        return events

    # ══════════════════════════════════════════════════════════════
    #  Internals
    # ══════════════════════════════════════════════════════════════

    def _run_endpoints(
        self,
        domain: AssessmentDomain,
        fetch: FetchFn,
        endpoints: Sequence[EndpointSpec],
        cancel_event: threading.Event,
    ) -> dict[str, EndpointOutcome]:
        outcomes: dict[str, EndpointOutcome] = {}
        queued = list(endpoints)
        # future -> (spec, monotonic start); abandoned entries leave this map
        # and free their slot even though the worker thread keeps running.
        running: dict[Future, tuple[EndpointSpec, float]] = {}

        while queued or running:
            if cancel_event.is_set():
                for spec in queued:
                    outcomes[spec.key] = self._abandon(domain, spec, EndpointStatus.CANCELLED, "cancelled")
                queued.clear()
            while queued and len(running) < self.max_workers:
                spec = queued.pop(0)
                running[self._start(domain, fetch, spec, cancel_event)] = (spec, time.monotonic())
            if not running:
                continue

            done, _ = wait(running, timeout=_POLL_SECONDS, return_when=FIRST_COMPLETED)
            for future in done:
                spec, _ = running.pop(future)
                outcomes[spec.key] = self._outcome_of(domain, future, spec)

            now = time.monotonic()
            for future, (spec, t0) in list(running.items()):
                if cancel_event.is_set():
                    outcomes[spec.key] = self._abandon(domain, spec, EndpointStatus.CANCELLED, "cancelled")
                elif now - t0 > self.query_timeout:
                    outcomes[spec.key] = self._abandon(domain, spec, EndpointStatus.TIMEOUT, "timeout")
                else:
                    continue
                del running[future]
        return outcomes

    def _start(
        self,
        domain: AssessmentDomain,
        fetch: FetchFn,
        spec: EndpointSpec,
        cancel_event: threading.Event,
    ) -> Future:
        """Run one endpoint on a daemon thread; an abandoned fetch never blocks exit."""
        future: Future = Future()

        def _target() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(self._fetch_one(domain, fetch, spec, cancel_event))
            except Exception as exc:
                future.set_exception(exc)

        threading.Thread(
            target=_target,
            name=f"collect-{domain.value}-{spec.key}",
            daemon=True,
        ).start()
        return future

    def _fetch_one(
        self,
        domain: AssessmentDomain,
        fetch: FetchFn,
        spec: EndpointSpec,
        cancel_event: threading.Event,
    ) -> EndpointOutcome:
        if cancel_event.is_set():
            return EndpointOutcome(spec.key, EndpointStatus.CANCELLED, cause="cancelled")

        start = time.perf_counter()
        self._emit("endpoint_requested", domain, spec.key)
        attempts = 0
        while True:
            attempts += 1
            try:
                payload = fetch(spec.path, timeout=self.query_timeout)
            except GraphThrottledError as exc:
                if attempts > self.max_retries:
                    return self._failure(
                        domain, spec, f"throttled after {self.max_retries} retries ({exc})",
                        attempts, start, "throttled",
                    )
                delay = self._backoff(attempts, exc.retry_after)
                LOGGER.info(
                    "Throttled on %s/%s, retry %d/%d in %.1fs",
                    domain.value, spec.key, attempts, self.max_retries, delay,
                )
                self._emit("endpoint_retry", domain, spec.key, attempt=attempts, delay=delay)
                if cancel_event.wait(delay):
                    return EndpointOutcome(spec.key, EndpointStatus.CANCELLED, cause="cancelled",
                                           attempts=attempts)
                continue
            except TimeoutError:
                return self._failure(domain, spec, "timeout", attempts, start, "timeout",
                                     status=EndpointStatus.TIMEOUT)
            except Exception as exc:
                return self._failure(
                    domain, spec, str(exc) or exc.__class__.__name__,
                    attempts, start, classify_failure(exc),
                )

            ms = int((time.perf_counter() - start) * 1000)
            self._emit("endpoint_returned", domain, spec.key, ms=ms, attempts=attempts)
            return EndpointOutcome(spec.key, EndpointStatus.OK, payload=payload,
                                   attempts=attempts, duration_ms=ms)

    def _outcome_of(self, domain: AssessmentDomain, future: Future, spec: EndpointSpec) -> EndpointOutcome:
        try:
            outcome = future.result()
        except Exception as exc:
            return self._failure(domain, spec, str(exc), 0, time.perf_counter(), classify_failure(exc))
        if outcome.status is EndpointStatus.CANCELLED:
            self._emit("endpoint_failed", domain, spec.key, category="cancelled")
        return outcome

    def _failure(
        self,
        domain: AssessmentDomain,
        spec: EndpointSpec,
        cause: str,
        attempts: int,
        start: float,
        category: str,
        *,
        status: EndpointStatus = EndpointStatus.FAILED,
    ) -> EndpointOutcome:
        ms = int((time.perf_counter() - start) * 1000)
        LOGGER.warning("Failed to collect %s/%s: %s", domain.value, spec.key, cause)
        self._emit("endpoint_failed", domain, spec.key, category=category, ms=ms, attempts=attempts)
        return EndpointOutcome(spec.key, status, cause=cause, attempts=attempts, duration_ms=ms)

    def _abandon(
        self,
        domain: AssessmentDomain,
        spec: EndpointSpec,
        status: EndpointStatus,
        cause: str,
    ) -> EndpointOutcome:
        LOGGER.warning("Failed to collect %s/%s: %s", domain.value, spec.key, cause)
        self._emit("endpoint_failed", domain, spec.key, category=cause)
        return EndpointOutcome(spec.key, status, cause=cause)

    def _backoff(self, attempt: int, retry_after: float | None) -> float:
        delay = self.backoff_seconds * (2 ** (attempt - 1))
        if retry_after is not None:
            delay = max(delay, retry_after)
        return min(delay, self.max_backoff_seconds)

    def _emit(self, event_type: str, domain: AssessmentDomain, endpoint: str, **kwargs: Any) -> None:
        with self._lock:
            self.events.append({"type": event_type, "domain": domain.value, "endpoint": endpoint, **kwargs})
