"""Best-effort suppression of findings already seen by this worker."""

from __future__ import annotations

import hashlib
import json
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from sentinel_bridge.context import PipelineContext
from sentinel_bridge.models import (
    AccessKeyResource,
    AwsApiCallAction,
    BucketResource,
    DnsRequestAction,
    Finding,
    InstanceResource,
    KubernetesResource,
    NetworkConnectionAction,
    NoAction,
    UnknownResource,
    utcnow,
)
from sentinel_bridge.settings import DedupStrategy


@dataclass(slots=True)
class DedupConfig:
    enabled: bool = True
    strategy: DedupStrategy = DedupStrategy.FINDING_ID
    cache_size: int = 10000
    time_window_minutes: int = 60

    def __post_init__(self) -> None:
        if self.cache_size < 1:
            raise ValueError("cache_size must be at least 1")
        if self.time_window_minutes < 1:
            raise ValueError("time_window_minutes must be at least 1")


@dataclass(slots=True)
class DedupResult:
    unique: list[Finding] = field(default_factory=list)
    duplicates: list[Finding] = field(default_factory=list)


@dataclass(slots=True)
class DedupStats:
    total_processed: int = 0
    duplicates_detected: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    evictions: int = 0

    def to_dict(self, cache_size: int, max_size: int) -> dict[str, Any]:
        lookups = self.cache_hits + self.cache_misses
        return {
            "total_processed": self.total_processed,
            "duplicates_detected": self.duplicates_detected,
            "deduplication_rate": (
                self.duplicates_detected / self.total_processed if self.total_processed else 0.0
            ),
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "cache_hit_rate": self.cache_hits / lookups if lookups else 0.0,
            "evictions": self.evictions,
            "cache_size": cache_size,
            "max_cache_size": max_size,
        }


def content_fields(finding: Finding) -> dict[str, Any]:
    """Significant fields for content hashing.

    Timestamps, occurrence count, archived flag and free text are left out so a
    re-exported snapshot of the same threat hashes identically.
    """
    resource_id: str | None
    match finding.resource:
        case InstanceResource(instance_id=value):
            resource_id = value
        case BucketResource(bucket_name=value):
            resource_id = value
        case AccessKeyResource(access_key_id=value):
            resource_id = value
        case KubernetesResource(workload_name=value):
            resource_id = value
        case UnknownResource():
            resource_id = None

    remote_ip: str | None = None
    match finding.service.action:
        case NetworkConnectionAction(remote_ip=ip) | AwsApiCallAction(remote_ip=ip) if ip is not None:
            remote_ip = ip.address
        case NetworkConnectionAction() | AwsApiCallAction() | DnsRequestAction() | NoAction():
            pass

    return {
        "type": finding.type,
        "accountId": finding.account_id,
        "region": finding.region,
        "resourceType": finding.resource.resource_type,
        "resourceId": resource_id,
        "severity": finding.severity,
        "serviceName": finding.service.service_name,
        "actionType": finding.service.action.action_type,
        "remoteIp": remote_ip,
    }


def content_hash(finding: Finding) -> str:
    canonical = json.dumps(content_fields(finding), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class Deduplicator:
    """
    Recency-bounded set of identity keys.

    The cache is an LRU: a hit refreshes the key, a miss inserts it, and the
    oldest keys are evicted once capacity is reached. Evicted keys are simply
    forgotten, so a finding seen long ago may be delivered again.
    """

    def __init__(
        self,
        config: DedupConfig | None = None,
        *,
        context: PipelineContext | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or DedupConfig()
        self.context = context or PipelineContext()
        self._logger = self.context.bind("dedup", strategy=self.config.strategy.value)
        self._clock = clock
        self._cache: OrderedDict[str, datetime] = OrderedDict()
        self._listeners: list[Callable[[Finding, str], Any]] = []
        self.stats = DedupStats()

    def on_duplicate(self, listener: Callable[[Finding, str], Any]) -> None:
        """Register a callback receiving (finding, key) for each duplicate."""
        self._listeners.append(listener)

    def key_for(self, finding: Finding) -> str:
        strategy = self.config.strategy
        if strategy is DedupStrategy.FINDING_ID:
            return f"finding:{finding.id}"
        if strategy is DedupStrategy.CONTENT_HASH:
            return f"hash:{content_hash(finding)}"
        if strategy is DedupStrategy.TIME_WINDOW:
            minutes = int(self._clock().timestamp() // 60)
            bucket = minutes // self.config.time_window_minutes
            return f"window:{finding.id}:{bucket}"
        raise ValueError(f"Unknown deduplication strategy: {strategy}")

    def is_duplicate(self, finding: Finding) -> bool:
        """Check and record one finding."""
        self.stats.total_processed += 1
        if not self.config.enabled:
            return False

        key = self.key_for(finding)
        if key in self._cache:
            self.stats.cache_hits += 1
            self.stats.duplicates_detected += 1
            self._cache[key] = self._clock()
            self._cache.move_to_end(key)
            self.context.metrics.duplicates.labels(strategy=self.config.strategy.value).inc()
            for listener in self._listeners:
                listener(finding, key)
            return True

        self.stats.cache_misses += 1
        self._remember(key)
        return False

    def process_batch(self, findings: list[Finding]) -> DedupResult:
        result = DedupResult()
        if not self.config.enabled:
            self.stats.total_processed += len(findings)
            result.unique = list(findings)
            return result

        for finding in findings:
            if self.is_duplicate(finding):
                result.duplicates.append(finding)
            else:
                result.unique.append(finding)

        if result.duplicates:
            self._logger.info(
                "dedup.suppressed",
                duplicates=len(result.duplicates),
                unique=len(result.unique),
            )
        return result

    def deduplicate(self, findings: list[Finding]) -> list[Finding]:
        return self.process_batch(findings).unique

    def _remember(self, key: str) -> None:
        evicted = 0
        while len(self._cache) >= self.config.cache_size:
            self._cache.popitem(last=False)
            evicted += 1
        self._cache[key] = self._clock()
        if evicted:
            self.stats.evictions += evicted
            self._logger.debug("dedup.evicted", count=evicted, cache_size=len(self._cache))

    def __len__(self) -> int:
        return len(self._cache)

    def metrics(self) -> dict[str, Any]:
        data = self.stats.to_dict(len(self._cache), self.config.cache_size)
        data["enabled"] = self.config.enabled
        data["strategy"] = self.config.strategy.value
        return data

    def clear(self) -> None:
        self._cache.clear()
        self.stats = DedupStats()
