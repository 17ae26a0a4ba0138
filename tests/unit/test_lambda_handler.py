from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import pytest

from transports import aws_lambda_handler

from factories import BUCKET, PREFIX, FakeConnector, finding_dict, finding_line, jsonl_export, make_processor


@dataclass
class FakeLambdaContext:
    remaining_ms: int = 300_000
    aws_request_id: str = "req-123"
    step_ms: int = 0

    def get_remaining_time_in_millis(self) -> int:
        remaining = self.remaining_ms
        self.remaining_ms -= self.step_ms
        return remaining


def s3_event(*keys: str) -> dict[str, Any]:
    return {
        "Records": [
            {
                "eventName": "ObjectCreated:Put",
                "eventTime": "2024-03-01T12:00:00.000Z",
                "s3": {"bucket": {"name": BUCKET}, "object": {"key": key, "size": 100}},
            }
            for key in keys
        ]
    }


@pytest.fixture
def processor(monkeypatch: pytest.MonkeyPatch):
    objects = {
        PREFIX + "a.jsonl.gz": jsonl_export(finding_line(id="a1"), finding_line(id="a2")),
        PREFIX + "b.jsonl.gz": jsonl_export(finding_line(id="b1")),
    }
    processor = make_processor(objects)
    monkeypatch.setattr(aws_lambda_handler, "_processor", processor)
    return processor


def test_s3_notification_is_processed(processor) -> None:
    response = aws_lambda_handler.handler(
        s3_event(PREFIX + "a.jsonl.gz", PREFIX + "b.jsonl.gz"), FakeLambdaContext()
    )
    body = json.loads(response["body"])

    assert response["statusCode"] == 200
    assert body["success"] is True
    assert body["processedRecords"] == 2
    assert body["totalRecords"] == 2
    assert body["stoppedEarly"] is False
    assert body["ingested"] == 3
    assert body["processedBatches"] == 2


def test_stops_before_running_out_of_time(processor) -> None:
    # 40s left for the first object, 20s for the second
    context = FakeLambdaContext(remaining_ms=60_000, step_ms=20_000)

    response = aws_lambda_handler.handler(
        s3_event(PREFIX + "a.jsonl.gz", PREFIX + "b.jsonl.gz"), context
    )
    body = json.loads(response["body"])

    assert body["processedRecords"] == 1
    assert body["totalRecords"] == 2
    assert body["stoppedEarly"] is True
    assert body["ingested"] == 2


def test_non_export_keys_are_reported(processor) -> None:
    response = aws_lambda_handler.handler(s3_event(PREFIX + "manifest.json"), FakeLambdaContext())
    body = json.loads(response["body"])

    assert body["processedRecords"] == 0
    assert body["errors"] == [f"{BUCKET}/{PREFIX}manifest.json: not a finding export object"]


def test_exports_outside_the_findings_tree_are_skipped(processor) -> None:
    other = "AWSLogs/123456789012/CloudTrail/us-east-1/trail.jsonl.gz"
    response = aws_lambda_handler.handler(s3_event(other, PREFIX + "b.jsonl.gz"), FakeLambdaContext())
    body = json.loads(response["body"])

    assert body["processedRecords"] == 1
    assert body["ingested"] == 1
    assert body["errors"] == [f"{BUCKET}/{other}: not a finding export object"]
    assert all(call.get("Key") != other for _, call in processor.object_store._s3.calls)


def test_health_handler(processor) -> None:
    response = aws_lambda_handler.health_handler({}, FakeLambdaContext())

    assert response["statusCode"] == 200
    assert json.loads(response["body"])["status"] == "healthy"


def test_health_handler_reports_unhealthy(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        aws_lambda_handler, "_processor", make_processor(connector=FakeConnector(reachable=False))
    )
    response = aws_lambda_handler.health_handler({}, FakeLambdaContext())

    assert response["statusCode"] == 503
    assert json.loads(response["body"])["status"] == "unhealthy"


def test_manual_handler_with_findings(processor) -> None:
    response = aws_lambda_handler.manual_handler(
        {"findings": [finding_dict(id="m1"), finding_dict(id="m2")]}, FakeLambdaContext()
    )
    body = json.loads(response["body"])

    assert response["statusCode"] == 200
    assert body["success"] is True
    assert body["result"]["ingested"] == 2
    assert body["requestId"] == "req-123"


def test_manual_handler_with_objects(processor) -> None:
    response = aws_lambda_handler.manual_handler(
        {"objects": [{"key": PREFIX + "b.jsonl.gz"}]}, FakeLambdaContext()
    )

    assert json.loads(response["body"])["result"]["ingested"] == 1


def test_manual_handler_defaults_to_listing(processor) -> None:
    response = aws_lambda_handler.manual_handler({}, FakeLambdaContext())

    assert json.loads(response["body"])["result"]["ingested"] == 3


def test_manual_handler_reports_bad_input(processor) -> None:
    response = aws_lambda_handler.manual_handler({"objects": [{"size": 1}]}, FakeLambdaContext())
    body = json.loads(response["body"])

    assert response["statusCode"] == 500
    assert body["success"] is False
