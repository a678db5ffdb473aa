from __future__ import annotations

from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)


class Metrics:
    """Prometheus collectors for one repository instance.

    Each instance owns its registry so that independent repositories (and
    tests) never collide on metric names.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry()

        self.requests = Counter(
            "jira_http_requests_total",
            "Jira HTTP requests by operation and outcome",
            ["operation", "method", "status"],
            registry=self.registry,
        )
        self.latency = Histogram(
            "jira_http_request_duration_seconds",
            "Jira HTTP request latency in seconds",
            ["operation", "method"],
            registry=self.registry,
        )
        self.retries = Counter(
            "jira_retries_total",
            "Retried attempts by error class",
            ["error"],
            registry=self.registry,
        )
        self.rate_limit_waits = Counter(
            "jira_rate_limit_wait_seconds_total",
            "Seconds spent waiting for a rate-limit token",
            registry=self.registry,
        )
        self.cache_hits = Counter(
            "jira_cache_hits_total",
            "Fresh cache entries served",
            ["kind"],
            registry=self.registry,
        )
        self.cache_misses = Counter(
            "jira_cache_misses_total",
            "Cache lookups that triggered a fetch",
            ["kind"],
            registry=self.registry,
        )
        self.cache_evictions = Counter(
            "jira_cache_evictions_total",
            "Entries dropped by the size bound",
            registry=self.registry,
        )

    def render(self) -> bytes:
        return generate_latest(self.registry)
