"""Builders and in-memory fakes shared by the unit tests."""

from __future__ import annotations

import copy
import gzip
import io
import json
from datetime import datetime, timezone
from typing import Any

from botocore.exceptions import ClientError

from sentinel_bridge.context import PipelineContext
from sentinel_bridge.dead_letter import InMemoryDeadLetterQueue
from sentinel_bridge.models import Finding
from sentinel_bridge.pipeline import FindingsProcessor
from sentinel_bridge.retry import RetryHandler, RetryPolicy
from sentinel_bridge.settings import Settings
from sentinel_bridge.siem import BaseIngestionConnector, IngestionConfig, IngestionRequest, IngestionResponse
from sentinel_bridge.storage import ObjectStore

BUCKET = "guardduty-exports"
PREFIX = "AWSLogs/123456789012/GuardDuty/us-east-1/"
LAST_MODIFIED = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

_BASE_FINDING: dict[str, Any] = {
    "schemaVersion": "2.0",
    "accountId": "123456789012",
    "region": "us-east-1",
    "partition": "aws",
    "id": "finding-1",
    "arn": "arn:aws:guardduty:us-east-1:123456789012:detector/d1/finding/finding-1",
    "type": "Recon:EC2/PortProbeUnprotectedPort",
    "resource": {
        "resourceType": "Instance",
        "instanceDetails": {
            "instanceId": "i-0abc123def4567890",
            "instanceType": "t3.micro",
            "availabilityZone": "us-east-1a",
        },
    },
    "service": {
        "serviceName": "guardduty",
        "detectorId": "d1",
        "action": {
            "actionType": "NETWORK_CONNECTION",
            "networkConnectionAction": {
                "connectionDirection": "INBOUND",
                "protocol": "TCP",
                "blocked": False,
                "remoteIpDetails": {
                    "ipAddressV4": "198.51.100.7",
                    "country": {"countryName": "Netherlands"},
                    "city": {"cityName": "Amsterdam"},
                    "organization": {"org": "Example Hosting"},
                },
            },
        },
        "archived": False,
        "count": 3,
        "eventFirstSeen": "2024-03-01T10:00:00Z",
        "eventLastSeen": "2024-03-01T12:30:00Z",
        "resourceRole": "TARGET",
    },
    "severity": 5.0,
    "createdAt": "2024-03-01T10:05:00.000Z",
    "updatedAt": "2024-03-01T12:35:00.000Z",
    "title": "Unprotected port on EC2 instance is being probed",
    "description": "EC2 instance has an unprotected port which is being probed by a known malicious host.",
}


def finding_dict(**overrides: Any) -> dict[str, Any]:
    data = copy.deepcopy(_BASE_FINDING)
    data.update(overrides)
    return data


def finding_line(**overrides: Any) -> str:
    return json.dumps(finding_dict(**overrides))


def make_finding(**overrides: Any) -> Finding:
    return Finding.from_dict(finding_dict(**overrides))


def jsonl_export(*lines: str, compress: bool = True) -> bytes:
    data = ("\n".join(lines) + "\n").encode("utf-8")
    return gzip.compress(data) if compress else data


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "s3_bucket_name": BUCKET,
        "s3_bucket_prefix": PREFIX,
        "azure_tenant_id": "tenant-id",
        "azure_client_id": "client-id",
        "azure_client_secret": "client-secret",
        "dcr_immutable_id": "dcr-0123456789abcdef",
        "dcr_stream_name": "Custom-GuardDutyFindings",
        "batch_creation_delay_ms": 0,
        "retry_backoff_ms": 100,
        "max_backoff_ms": 100,
    }
    values.update(overrides)
    return Settings(**values)


def client_error(code: str, status: int, operation: str = "GetObject", message: str = "") -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": message or code},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


class FakeS3Client:
    """Subset of the boto3 S3 client backed by a dict."""

    def __init__(self, objects: dict[str, bytes] | None = None, *, bucket: str = BUCKET) -> None:
        self.bucket = bucket
        self.objects = dict(objects or {})
        self.denied: set[str] = set()
        self.failures: dict[str, ClientError] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def list_objects_v2(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(("list_objects_v2", kwargs))
        if kwargs["Bucket"] in self.denied:
            raise client_error("AccessDenied", 403, "ListObjectsV2")
        prefix = kwargs.get("Prefix", "")
        keys = sorted(key for key in self.objects if key.startswith(prefix))[: kwargs.get("MaxKeys", 1000)]
        return {
            "IsTruncated": False,
            "Contents": [
                {
                    "Key": key,
                    "Size": len(self.objects[key]),
                    "LastModified": LAST_MODIFIED,
                    "ETag": f'"etag-{index}"',
                }
                for index, key in enumerate(keys)
            ],
        }

    def get_object(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(("get_object", kwargs))
        key = kwargs["Key"]
        if key in self.failures:
            raise self.failures[key]
        if kwargs["Bucket"] in self.denied:
            raise client_error("AccessDenied", 403)
        if key not in self.objects:
            raise client_error("NoSuchKey", 404)
        return {"Body": io.BytesIO(self.objects[key]), "ContentLength": len(self.objects[key])}


class FakeKmsClient:
    """KMS stand-in: ``plaintexts`` maps ciphertext to plaintext; anything else is invalid."""

    def __init__(self, plaintexts: dict[bytes, bytes] | None = None, *, error: ClientError | None = None) -> None:
        self.plaintexts = dict(plaintexts or {})
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def decrypt(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        blob = kwargs["CiphertextBlob"]
        if blob not in self.plaintexts:
            raise client_error("InvalidCiphertextException", 400, "Decrypt")
        return {"Plaintext": self.plaintexts[blob], "KeyId": kwargs.get("KeyId")}


class FakeConnector(BaseIngestionConnector):
    """Records submissions; ``failures`` consecutive calls fail before success."""

    def __init__(
        self,
        *,
        failures: int = 0,
        failure_code: str = "503",
        failure_message: str = "ServiceUnavailable: try later",
        reachable: bool = True,
    ) -> None:
        super().__init__(
            IngestionConfig(
                tenant_id="tenant-id",
                client_id="client-id",
                client_secret="client-secret",
                dcr_immutable_id="dcr-0123456789abcdef",
                stream_name="Custom-GuardDutyFindings",
            )
        )
        self.failures = failures
        self.failure_code = failure_code
        self.failure_message = failure_message
        self.reachable = reachable
        self.requests: list[IngestionRequest] = []
        self.calls = 0

    @property
    def records(self) -> list[dict[str, Any]]:
        return [record for request in self.requests for record in request.data]

    async def connect(self) -> None:
        return None

    async def ingest(self, request: IngestionRequest) -> IngestionResponse:
        self.calls += 1
        if self.calls <= self.failures:
            return IngestionResponse(
                status="failed",
                accepted_records=0,
                rejected_records=len(request.data),
                request_id=f"req-{self.calls}",
                errors=[{"code": self.failure_code, "message": self.failure_message}],
            )
        self.requests.append(request)
        return IngestionResponse(
            status="success",
            accepted_records=len(request.data),
            rejected_records=0,
            request_id=f"req-{self.calls}",
        )

    async def test_connection(self) -> bool:
        return self.reachable


async def no_sleep(_: float) -> None:
    return None


def make_processor(
    objects: dict[str, bytes] | None = None,
    *,
    connector: FakeConnector | None = None,
    s3: FakeS3Client | None = None,
    **settings: Any,
) -> FindingsProcessor:
    """Processor over fakes with sleeping disabled in both retry handlers."""
    context = PipelineContext()
    store = ObjectStore(
        s3 or FakeS3Client(objects),
        retry=RetryHandler(RetryPolicy(max_retries=0), context=context, sleep=no_sleep),
        context=context,
    )
    processor = FindingsProcessor(
        make_settings(**settings),
        object_store=store,
        connector=connector or FakeConnector(),
        context=context,
        dead_letter=InMemoryDeadLetterQueue(),
    )
    processor.ingest_retry = RetryHandler(
        processor.ingest_retry.policy,
        dead_letter=processor.dead_letter,
        context=context,
        operation="ingestion",
        sleep=no_sleep,
    )
    return processor
