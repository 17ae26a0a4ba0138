"""Dependency health checks and their reduction to one status."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Literal

from sentinel_bridge.models import format_timestamp, utcnow

HealthStatus = Literal["healthy", "degraded", "unhealthy"]


@dataclass(slots=True)
class ComponentHealth:
    name: str
    status: HealthStatus
    message: str = ""
    response_time_ms: float = 0.0
    last_checked: datetime = field(default_factory=utcnow)
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "message": self.message,
            "responseTime": self.response_time_ms,
            "lastChecked": format_timestamp(self.last_checked),
            "details": self.details,
        }


@dataclass(slots=True)
class HealthReport:
    status: HealthStatus
    components: list[ComponentHealth]
    uptime_s: float
    version: str
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def http_status(self) -> int:
        return 503 if self.status == "unhealthy" else 200

    @property
    def ready(self) -> bool:
        return self.status != "unhealthy"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "timestamp": format_timestamp(self.timestamp),
            "components": [component.to_dict() for component in self.components],
            "uptime": round(self.uptime_s, 3),
            "version": self.version,
        }


def overall_status(components: list[ComponentHealth]) -> HealthStatus:
    """Unhealthy dominates; degraded only when nothing is unhealthy."""
    statuses = {component.status for component in components}
    if "unhealthy" in statuses:
        return "unhealthy"
    if "degraded" in statuses:
        return "degraded"
    return "healthy"


async def probe(name: str, check: Callable[[], Awaitable[bool]], *, failure_message: str) -> ComponentHealth:
    """Run a reachability check; a False result or any error means unhealthy."""
    started = time.perf_counter()
    try:
        ok = await check()
    except Exception as exc:  # noqa: BLE001 - reported as component state
        return ComponentHealth(
            name=name,
            status="unhealthy",
            message=f"Health check failed: {exc}",
            response_time_ms=round((time.perf_counter() - started) * 1000, 3),
        )
    return ComponentHealth(
        name=name,
        status="healthy" if ok else "unhealthy",
        message="Component is healthy" if ok else failure_message,
        response_time_ms=round((time.perf_counter() - started) * 1000, 3),
    )


def queue_health(name: str, depth: int, threshold: int, **details: Any) -> ComponentHealth:
    if depth > threshold:
        return ComponentHealth(
            name=name,
            status="degraded",
            message=f"Queue depth {depth} exceeds threshold {threshold}",
            details={"queueDepth": depth, "threshold": threshold, **details},
        )
    return ComponentHealth(
        name=name,
        status="healthy",
        message="Queue depth within threshold",
        details={"queueDepth": depth, "threshold": threshold, **details},
    )
