"""Prometheus metrics helpers."""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


class PipelineMetrics:
    """Collectors for one worker process, bound to their own registry."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()

        self.batches = Counter(
            "sentinel_bridge_batches_total",
            "Batches reaching a terminal state",
            labelnames=("status",),
            registry=self.registry,
        )
        self.batch_latency = Histogram(
            "sentinel_bridge_batch_duration_seconds",
            "Wall time from batch start to terminal state",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
            registry=self.registry,
        )
        self.findings_ingested = Counter(
            "sentinel_bridge_findings_ingested_total",
            "Records accepted by the ingestion endpoint",
            registry=self.registry,
        )
        self.findings_failed = Counter(
            "sentinel_bridge_findings_failed_total",
            "Items that could not be delivered",
            labelnames=("stage",),
            registry=self.registry,
        )
        self.duplicates = Counter(
            "sentinel_bridge_duplicates_total",
            "Findings suppressed as duplicates",
            labelnames=("strategy",),
            registry=self.registry,
        )
        self.parse_errors = Counter(
            "sentinel_bridge_parse_errors_total",
            "Malformed JSONL lines",
            registry=self.registry,
        )
        self.retry_attempts = Counter(
            "sentinel_bridge_retry_attempts_total",
            "Retries scheduled after a retryable failure",
            labelnames=("operation",),
            registry=self.registry,
        )
        self.dead_lettered = Counter(
            "sentinel_bridge_dead_lettered_total",
            "Items handed to the dead-letter sink",
            registry=self.registry,
        )
        self.objects = Counter(
            "sentinel_bridge_objects_total",
            "Storage objects handled",
            labelnames=("outcome",),
            registry=self.registry,
        )
        self.queue_depth = Gauge(
            "sentinel_bridge_queue_depth",
            "Items waiting for batch formation",
            registry=self.registry,
        )

    def observe_batch(self, *, status: str, duration_s: float) -> None:
        self.batches.labels(status=status).inc()
        self.batch_latency.observe(duration_s)

    def render(self) -> tuple[bytes, str]:
        payload = generate_latest(self.registry)
        return payload, CONTENT_TYPE_LATEST
