"""Domain types: findings, storage references, batches and error records."""

from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sentinel_bridge.errors import FindingValidationError

MAX_SEVERITY = 8.9
MIN_SEVERITY = 0.0

REQUIRED_FIELDS = (
    "schemaVersion",
    "accountId",
    "region",
    "id",
    "arn",
    "type",
    "resource",
    "service",
    "severity",
    "createdAt",
    "updatedAt",
    "title",
    "description",
)
IDENTITY_FIELDS = ("id", "accountId", "region", "type", "severity")

_ACCOUNT_ID = re.compile(r"^\d{12}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse an exported ISO-8601 timestamp into an aware UTC datetime."""
    if not isinstance(value, str) or not value:
        raise ValueError(f"not a timestamp: {value!r}")
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# --- Resource variants -------------------------------------------------------


@dataclass(frozen=True, slots=True)
class InstanceResource:
    resource_type: str
    instance_id: str | None = None
    instance_type: str | None = None
    availability_zone: str | None = None


@dataclass(frozen=True, slots=True)
class BucketResource:
    resource_type: str
    bucket_name: str | None = None
    bucket_arn: str | None = None


@dataclass(frozen=True, slots=True)
class AccessKeyResource:
    resource_type: str
    access_key_id: str | None = None
    principal_id: str | None = None
    user_name: str | None = None


@dataclass(frozen=True, slots=True)
class KubernetesResource:
    resource_type: str
    workload_name: str | None = None
    namespace: str | None = None
    user_name: str | None = None


@dataclass(frozen=True, slots=True)
class UnknownResource:
    resource_type: str


ResourceDetail = InstanceResource | BucketResource | AccessKeyResource | KubernetesResource | UnknownResource


# --- Action variants ---------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RemoteIp:
    address: str | None = None
    country: str | None = None
    city: str | None = None
    organization: str | None = None


@dataclass(frozen=True, slots=True)
class NetworkConnectionAction:
    action_type: str
    direction: str | None = None
    protocol: str | None = None
    blocked: bool = False
    remote_ip: RemoteIp | None = None


@dataclass(frozen=True, slots=True)
class AwsApiCallAction:
    action_type: str
    api: str | None = None
    service_name: str | None = None
    caller_type: str | None = None
    remote_ip: RemoteIp | None = None


@dataclass(frozen=True, slots=True)
class DnsRequestAction:
    action_type: str
    domain: str | None = None
    protocol: str | None = None
    blocked: bool = False


@dataclass(frozen=True, slots=True)
class NoAction:
    action_type: str | None = None


ActionDetail = NetworkConnectionAction | AwsApiCallAction | DnsRequestAction | NoAction


@dataclass(frozen=True, slots=True)
class ServiceDetail:
    service_name: str
    detector_id: str | None = None
    action: ActionDetail = field(default_factory=NoAction)
    archived: bool = False
    count: int = 0
    event_first_seen: str | None = None
    event_last_seen: str | None = None
    resource_role: str | None = None
    threat_names: tuple[str, ...] = ()


def _mapping(value: Any, name: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise FindingValidationError(f"Invalid {name}: must be an object")
    return value


def _severity(value: int | float) -> float:
    try:
        return float(value)
    except OverflowError as exc:
        raise FindingValidationError("Invalid severity: must be number between 0 and 8.9") from exc


def _sequence(value: Any, name: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise FindingValidationError(f"Invalid {name}: must be an array")
    return value


def _remote_ip(details: Any) -> RemoteIp | None:
    if details is None:
        return None
    details = _mapping(details, "remoteIpDetails")
    country = _mapping(details.get("country"), "remoteIpDetails.country")
    city = _mapping(details.get("city"), "remoteIpDetails.city")
    organization = _mapping(details.get("organization"), "remoteIpDetails.organization")
    return RemoteIp(
        address=details.get("ipAddressV4"),
        country=country.get("countryName"),
        city=city.get("cityName"),
        organization=organization.get("org") or organization.get("asnOrg"),
    )


def resolve_resource(resource: dict[str, Any]) -> ResourceDetail:
    resource_type = resource.get("resourceType") or ""
    if resource.get("instanceDetails") is not None:
        details = _mapping(resource["instanceDetails"], "instanceDetails")
        return InstanceResource(
            resource_type=resource_type,
            instance_id=details.get("instanceId"),
            instance_type=details.get("instanceType"),
            availability_zone=details.get("availabilityZone"),
        )
    if resource.get("s3BucketDetails") is not None:
        buckets = resource["s3BucketDetails"]
        # exports carry a list of buckets; the first is the affected one
        if isinstance(buckets, list):
            buckets = buckets[0] if buckets else {}
        details = _mapping(buckets, "s3BucketDetails")
        return BucketResource(
            resource_type=resource_type,
            bucket_name=details.get("name"),
            bucket_arn=details.get("arn"),
        )
    if resource.get("accessKeyDetails") is not None:
        details = _mapping(resource["accessKeyDetails"], "accessKeyDetails")
        return AccessKeyResource(
            resource_type=resource_type,
            access_key_id=details.get("accessKeyId"),
            principal_id=details.get("principalId"),
            user_name=details.get("userName"),
        )
    if resource.get("kubernetesDetails") is not None:
        details = _mapping(resource["kubernetesDetails"], "kubernetesDetails")
        workload = _mapping(details.get("kubernetesWorkloadDetails"), "kubernetesWorkloadDetails")
        user = _mapping(details.get("kubernetesUserDetails"), "kubernetesUserDetails")
        return KubernetesResource(
            resource_type=resource_type,
            workload_name=workload.get("name"),
            namespace=workload.get("namespace"),
            user_name=user.get("username"),
        )
    return UnknownResource(resource_type=resource_type)


def resolve_action(action: dict[str, Any]) -> ActionDetail:
    action_type = action.get("actionType")
    if action.get("networkConnectionAction") is not None:
        details = _mapping(action["networkConnectionAction"], "networkConnectionAction")
        return NetworkConnectionAction(
            action_type=action_type or "NETWORK_CONNECTION",
            direction=details.get("connectionDirection"),
            protocol=details.get("protocol"),
            blocked=bool(details.get("blocked", False)),
            remote_ip=_remote_ip(details.get("remoteIpDetails")),
        )
    if action.get("awsApiCallAction") is not None:
        details = _mapping(action["awsApiCallAction"], "awsApiCallAction")
        return AwsApiCallAction(
            action_type=action_type or "AWS_API_CALL",
            api=details.get("api"),
            service_name=details.get("serviceName"),
            caller_type=details.get("callerType"),
            remote_ip=_remote_ip(details.get("remoteIpDetails")),
        )
    if action.get("dnsRequestAction") is not None:
        details = _mapping(action["dnsRequestAction"], "dnsRequestAction")
        return DnsRequestAction(
            action_type=action_type or "DNS_REQUEST",
            domain=details.get("domain"),
            protocol=details.get("protocol"),
            blocked=bool(details.get("blocked", False)),
        )
    return NoAction(action_type=action_type)


def resolve_service(service: dict[str, Any]) -> ServiceDetail:
    evidence = _mapping(service.get("evidence"), "evidence")
    threat_names: list[str] = []
    for detail in _sequence(evidence.get("threatIntelligenceDetails"), "threatIntelligenceDetails"):
        if isinstance(detail, dict):
            threat_names.extend(str(name) for name in _sequence(detail.get("threatNames"), "threatNames"))
    try:
        count = int(service.get("count") or 0)
    except (TypeError, ValueError, OverflowError) as exc:
        raise FindingValidationError("Invalid service.count: must be an integer") from exc
    return ServiceDetail(
        service_name=service.get("serviceName") or "",
        detector_id=service.get("detectorId"),
        action=resolve_action(_mapping(service.get("action"), "action")),
        archived=bool(service.get("archived", False)),
        count=count,
        event_first_seen=service.get("eventFirstSeen"),
        event_last_seen=service.get("eventLastSeen"),
        resource_role=service.get("resourceRole"),
        threat_names=tuple(threat_names),
    )


@dataclass(frozen=True, slots=True)
class Finding:
    """One exported finding, read-only for the lifetime of the pipeline."""

    id: str
    account_id: str
    region: str
    type: str
    severity: float
    created_at: str
    updated_at: str
    title: str
    description: str
    resource: ResourceDetail
    service: ServiceDetail
    raw_json: str
    schema_version: str = "2.0"
    partition: str = "aws"
    arn: str = ""

    @classmethod
    def from_dict(
        cls,
        data: Any,
        *,
        raw_json: str | None = None,
        validate: bool = True,
    ) -> Finding:
        """Build a finding from its exported JSON object.

        With ``validate`` the full export shape is enforced; otherwise only the
        identity fields must be present.
        """
        if not isinstance(data, dict):
            raise FindingValidationError("Parsed JSON is not an object")

        required = REQUIRED_FIELDS if validate else IDENTITY_FIELDS
        for name in required:
            if data.get(name) is None:
                raise FindingValidationError(f"Missing required field: {name}")

        severity = data.get("severity")
        if isinstance(severity, bool) or not isinstance(severity, (int, float)):
            raise FindingValidationError("Invalid severity: must be number between 0 and 8.9")
        if validate:
            if not isinstance(data["accountId"], str) or not _ACCOUNT_ID.match(data["accountId"]):
                raise FindingValidationError("Invalid accountId: must be 12-digit string")
            if not MIN_SEVERITY <= severity <= MAX_SEVERITY:
                raise FindingValidationError("Invalid severity: must be number between 0 and 8.9")
            if not isinstance(data["resource"], dict) or not data["resource"].get("resourceType"):
                raise FindingValidationError("Invalid resource: must be object with resourceType")
            if not isinstance(data["service"], dict) or not data["service"].get("serviceName"):
                raise FindingValidationError("Invalid service: must be object with serviceName")
            for name in ("createdAt", "updatedAt"):
                try:
                    parse_timestamp(data[name])
                except (ValueError, OverflowError) as exc:
                    raise FindingValidationError(
                        f"Invalid {name}: must be valid ISO date string"
                    ) from exc

        resource = _mapping(data.get("resource"), "resource")
        service = _mapping(data.get("service"), "service")

        return cls(
            id=str(data["id"]),
            account_id=str(data["accountId"]),
            region=str(data["region"]),
            type=str(data["type"]),
            severity=_severity(severity),
            created_at=data.get("createdAt") or "",
            updated_at=data.get("updatedAt") or "",
            title=data.get("title") or "",
            description=data.get("description") or "",
            resource=resolve_resource(resource),
            service=resolve_service(service),
            raw_json=raw_json if raw_json is not None else json.dumps(data, separators=(",", ":")),
            schema_version=str(data.get("schemaVersion") or "2.0"),
            partition=str(data.get("partition") or "aws"),
            arn=str(data.get("arn") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        """The original exported object."""
        return json.loads(self.raw_json)


# --- Storage and processing --------------------------------------------------


@dataclass(frozen=True, slots=True)
class StorageObjectRef:
    bucket: str
    key: str
    size: int = 0
    last_modified: datetime | None = None
    etag: str = ""
    kms_key_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StorageObjectRef:
        last_modified = data.get("lastModified") or data.get("last_modified")
        if isinstance(last_modified, str):
            last_modified = parse_timestamp(last_modified)
        return cls(
            bucket=data["bucket"],
            key=data["key"],
            size=int(data.get("size") or 0),
            last_modified=last_modified,
            etag=data.get("etag") or "",
            kms_key_id=data.get("kmsKeyId") or data.get("kms_key_id"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "bucket": self.bucket,
            "key": self.key,
            "size": self.size,
            "lastModified": format_timestamp(self.last_modified) if self.last_modified else None,
            "etag": self.etag,
            "kmsKeyId": self.kms_key_id,
        }


@dataclass(slots=True)
class ProcessingError:
    code: str
    message: str
    timestamp: datetime = field(default_factory=utcnow)
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: BaseException, **details: Any) -> ProcessingError:
        code = getattr(exc, "code", None) or type(exc).__name__
        return cls(code=str(code), message=str(exc), details=details)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "timestamp": format_timestamp(self.timestamp),
            "details": self.details,
        }


class BatchStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (BatchStatus.COMPLETED, BatchStatus.FAILED)


@dataclass(slots=True)
class ProcessingBatch:
    batch_id: str
    object_refs: list[StorageObjectRef] = field(default_factory=list)
    findings: list[Finding] = field(default_factory=list)
    processed_count: int = 0
    failed_count: int = 0
    retry_count: int = 0
    duplicates: int = 0
    status: BatchStatus = BatchStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    error: ProcessingError | None = None
    errors: list[str] = field(default_factory=list)
    # findings resolved from object refs while the batch runs
    resolved_findings: list[Finding] = field(default_factory=list)
    resolved_objects: int = 0
    failed_objects: int = 0

    @property
    def item_count(self) -> int:
        return len(self.findings) + len(self.object_refs)

    @property
    def expected_count(self) -> int:
        """Items the batch must account for.

        A resolved object counts as the findings it produced, a failed object
        as one item, and an object never reached as one item.
        """
        unresolved = len(self.object_refs) - self.resolved_objects - self.failed_objects
        return len(self.findings) + len(self.resolved_findings) + self.failed_objects + max(unresolved, 0)

    def touch(self, status: BatchStatus | None = None) -> None:
        if status is not None:
            self.status = status
        self.updated_at = utcnow()

    def snapshot(self) -> dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "status": self.status.value,
            "objects": [ref.key for ref in self.object_refs],
            "findings": len(self.findings),
            "resolvedFindings": len(self.resolved_findings),
            "resolvedObjects": self.resolved_objects,
            "failedObjects": self.failed_objects,
            "processedCount": self.processed_count,
            "failedCount": self.failed_count,
            "duplicates": self.duplicates,
            "retryCount": self.retry_count,
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
            "error": self.error.to_dict() if self.error else None,
            "errors": list(self.errors),
        }


@dataclass(slots=True)
class DeadLetterItem:
    id: str
    item: Any
    error: ProcessingError
    context: str | None = None
    retry_count: int = 0
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["error"] = self.error.to_dict()
        payload["timestamp"] = format_timestamp(self.timestamp)
        return payload
