"""
Observability Metrics - Prometheus counters and histograms

Each EngineMetrics instance owns its CollectorRegistry, so several engines
(and test cases) can live in one process without duplicate-metric errors.
"""

import logging
import time
from contextlib import contextmanager
from typing import Dict, Any, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

logger = logging.getLogger(__name__)


class EngineMetrics:
    """Prometheus metrics for the support engine."""

    def __init__(self, namespace: str = "support_engine", registry: Optional[CollectorRegistry] = None):
        self.namespace = namespace
        self.registry = registry or CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._init_metrics()

    def _init_metrics(self):
        ns = self.namespace
        reg = self.registry

        # Counters
        self._metrics["embeddings_total"] = Counter(
            f"{ns}_embeddings_total",
            "Embeddings generated",
            ["provider", "status"],
            registry=reg,
        )
        self._metrics["source_timeouts_total"] = Counter(
            f"{ns}_context_source_timeouts_total",
            "Context sources excluded for exceeding the fetch budget",
            ["source"],
            registry=reg,
        )
        self._metrics["escalations_total"] = Counter(
            f"{ns}_escalations_total",
            "Escalations triggered",
            ["channel", "priority"],
            registry=reg,
        )
        self._metrics["patterns_saved_total"] = Counter(
            f"{ns}_success_patterns_saved_total",
            "Success patterns persisted",
            registry=reg,
        )
        self._metrics["job_retries_total"] = Counter(
            f"{ns}_job_retries_total",
            "Unit-of-work attempts beyond the first",
            ["unit"],
            registry=reg,
        )
        self._metrics["job_failures_total"] = Counter(
            f"{ns}_job_failures_total",
            "Units of work that failed terminally",
            ["unit"],
            registry=reg,
        )

        # Histograms
        self._metrics["retrieval_latency"] = Histogram(
            f"{ns}_retrieval_latency_seconds",
            "Context aggregation latency",
            buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 3.0),
            registry=reg,
        )

    def record_embedding(self, provider: str, status: str = "success"):
        self._metrics["embeddings_total"].labels(provider=provider, status=status).inc()

    def record_source_timeout(self, source: str):
        self._metrics["source_timeouts_total"].labels(source=source).inc()

    def record_escalation(self, channel: str, priority: str):
        self._metrics["escalations_total"].labels(channel=channel, priority=priority).inc()

    def record_pattern_saved(self):
        self._metrics["patterns_saved_total"].inc()

    def record_job_retry(self, unit: str):
        self._metrics["job_retries_total"].labels(unit=unit).inc()

    def record_job_failure(self, unit: str):
        self._metrics["job_failures_total"].labels(unit=unit).inc()

    @contextmanager
    def time_retrieval(self):
        start = time.perf_counter()
        try:
            yield
        finally:
            self._metrics["retrieval_latency"].observe(time.perf_counter() - start)

    def sample(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """Read the current value of a sample (used by tests and health checks)."""
        value = self.registry.get_sample_value(f"{self.namespace}_{name}", labels or {})
        return value or 0.0

    def export(self) -> bytes:
        """Prometheus text exposition of every metric."""
        return generate_latest(self.registry)
