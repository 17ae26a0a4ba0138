from __future__ import annotations

import pytest

from sentinel_bridge.health import ComponentHealth, HealthReport, overall_status, probe, queue_health


def component(status: str) -> ComponentHealth:
    return ComponentHealth(name=status, status=status)  # type: ignore[arg-type]


@pytest.mark.parametrize(
    ("statuses", "expected"),
    [
        (["healthy", "healthy"], "healthy"),
        (["healthy", "degraded"], "degraded"),
        (["degraded", "unhealthy"], "unhealthy"),
        (["unhealthy", "healthy", "degraded"], "unhealthy"),
        ([], "healthy"),
    ],
)
def test_overall_status(statuses: list[str], expected: str) -> None:
    assert overall_status([component(s) for s in statuses]) == expected


def test_queue_health_threshold_is_exclusive() -> None:
    assert queue_health("BatchEngine", 10, 10).status == "healthy"

    degraded = queue_health("BatchEngine", 11, 10, objects=11)
    assert degraded.status == "degraded"
    assert degraded.details == {"queueDepth": 11, "threshold": 10, "objects": 11}


@pytest.mark.asyncio
async def test_dependency_check_maps_results_and_errors() -> None:
    async def ok() -> bool:
        return True

    async def unreachable() -> bool:
        return False

    async def broken() -> bool:
        raise ConnectionError("socket closed")

    assert (await probe("A", ok, failure_message="down")).status == "healthy"

    down = await probe("B", unreachable, failure_message="down")
    assert (down.status, down.message) == ("unhealthy", "down")

    failed = await probe("C", broken, failure_message="down")
    assert failed.status == "unhealthy"
    assert "socket closed" in failed.message


def test_report_serialization() -> None:
    report = HealthReport(status="degraded", components=[component("degraded")], uptime_s=12.3456, version="1.0.0")
    payload = report.to_dict()

    assert report.http_status == 200
    assert payload["status"] == "degraded"
    assert payload["uptime"] == 12.346
    assert payload["components"][0]["name"] == "degraded"
    assert payload["timestamp"].endswith("Z")
