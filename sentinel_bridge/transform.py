"""Projection of findings into destination table rows."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Literal

from sentinel_bridge.models import (
    MAX_SEVERITY,
    MIN_SEVERITY,
    AccessKeyResource,
    AwsApiCallAction,
    BucketResource,
    DnsRequestAction,
    Finding,
    InstanceResource,
    KubernetesResource,
    NetworkConnectionAction,
    NoAction,
    RemoteIp,
    UnknownResource,
    format_timestamp,
    parse_timestamp,
    utcnow,
)

NormalizedRecord = dict[str, Any]
Mode = Literal["raw", "normalized"]

DEFAULT_MAX_FIELD_LENGTH = 32768
ORIGINAL_DATA_LIMIT = 500


class TransformFailure(Exception):
    """Raised internally when a single finding cannot be projected."""


@dataclass(slots=True)
class TransformError:
    finding_index: int
    finding_id: str | None
    error: str
    timestamp: datetime = field(default_factory=utcnow)
    original_data: str = ""

    def describe(self) -> str:
        return f"finding {self.finding_id or self.finding_index}: {self.error}"


@dataclass(slots=True)
class TransformResult:
    records: list[NormalizedRecord]
    transformed_count: int
    failed_count: int
    errors: list[TransformError]
    mode: Mode


def _remote_ip(finding: Finding) -> RemoteIp | None:
    match finding.service.action:
        case NetworkConnectionAction(remote_ip=remote_ip) | AwsApiCallAction(remote_ip=remote_ip):
            return remote_ip
        case DnsRequestAction() | NoAction():
            return None


def _resource_identifier(finding: Finding) -> dict[str, str]:
    match finding.resource:
        case InstanceResource(instance_id=instance_id) if instance_id:
            return {"InstanceId": instance_id}
        case BucketResource(bucket_name=name) if name:
            return {"BucketName": name}
        case AccessKeyResource(access_key_id=key_id) if key_id:
            return {"AccessKeyId": key_id}
        case KubernetesResource(workload_name=workload) if workload:
            return {"KubernetesWorkload": workload}
        case InstanceResource() | BucketResource() | AccessKeyResource() | KubernetesResource():
            return {}
        case UnknownResource():
            return {}
    raise TransformFailure(f"unsupported resource detail {type(finding.resource).__name__}")


def _action_columns(finding: Finding) -> dict[str, str]:
    columns: dict[str, str] = {}
    match finding.service.action:
        case DnsRequestAction(action_type=action_type, domain=domain):
            columns["ActionType"] = action_type
            if domain:
                columns["DnsRequestDomain"] = domain
        case NetworkConnectionAction(action_type=action_type) | AwsApiCallAction(action_type=action_type):
            columns["ActionType"] = action_type
        case NoAction(action_type=action_type):
            if action_type:
                columns["ActionType"] = action_type
        case other:
            raise TransformFailure(f"unsupported action detail {type(other).__name__}")

    remote_ip = _remote_ip(finding)
    if remote_ip is not None:
        if remote_ip.address:
            columns["RemoteIpAddress"] = remote_ip.address
        if remote_ip.country:
            columns["RemoteIpCountry"] = remote_ip.country
    return columns


class Transformer:
    """Builds raw or normalized rows; one bad finding never fails the set."""

    def __init__(
        self,
        *,
        normalize: bool = False,
        max_field_length: int = DEFAULT_MAX_FIELD_LENGTH,
        field_mappings: dict[str, str] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if max_field_length <= 3:
            raise ValueError("max_field_length must be greater than 3")
        if "RawJson" in (field_mappings or {}):
            raise ValueError("RawJson cannot be remapped")
        self.normalize = normalize
        self.max_field_length = max_field_length
        self.field_mappings = dict(field_mappings or {})
        self.clock = clock

    @property
    def mode(self) -> Mode:
        return "normalized" if self.normalize else "raw"

    def transform(self, findings: list[Finding]) -> TransformResult:
        records: list[NormalizedRecord] = []
        errors: list[TransformError] = []
        ingested_at = format_timestamp(self.clock())

        for index, finding in enumerate(findings):
            try:
                record = self.transform_one(finding, ingested_at=ingested_at)
            except (TransformFailure, ValueError, TypeError, AttributeError) as exc:
                errors.append(
                    TransformError(
                        finding_index=index,
                        finding_id=getattr(finding, "id", None),
                        error=str(exc),
                        original_data=str(getattr(finding, "raw_json", ""))[:ORIGINAL_DATA_LIMIT],
                    )
                )
                continue
            records.append(record)

        return TransformResult(
            records=records,
            transformed_count=len(records),
            failed_count=len(errors),
            errors=errors,
            mode=self.mode,
        )

    def transform_one(self, finding: Finding, *, ingested_at: str | None = None) -> NormalizedRecord:
        self._validate(finding)
        ingested_at = ingested_at or format_timestamp(self.clock())
        record: NormalizedRecord = {
            "TimeGenerated": ingested_at,
            "FindingId": self._truncate(finding.id),
            "AccountId": self._truncate(finding.account_id),
            "Region": self._truncate(finding.region),
            "Severity": self._clamp_severity(finding.severity),
            "Type": self._truncate(finding.type),
        }
        if self.normalize:
            record.update(self._normalized_columns(finding))
        record["RawJson"] = finding.raw_json
        return self._apply_mappings(record)

    def _normalized_columns(self, finding: Finding) -> NormalizedRecord:
        service = finding.service
        columns: NormalizedRecord = {
            "CreatedAt": format_timestamp(parse_timestamp(finding.created_at)),
            "UpdatedAt": format_timestamp(parse_timestamp(finding.updated_at)),
            "Title": self._truncate(finding.title),
            "Description": self._truncate(finding.description),
            "Service": self._truncate(service.service_name),
            "ResourceType": self._truncate(finding.resource.resource_type),
            "Count": service.count,
            "Archived": service.archived,
        }
        columns.update(
            {name: self._truncate(value) for name, value in _resource_identifier(finding).items()}
        )
        columns.update(
            {name: self._truncate(value) for name, value in _action_columns(finding).items()}
        )
        if service.threat_names:
            columns["ThreatNames"] = self._truncate(", ".join(service.threat_names))
        if service.event_first_seen:
            columns["EventFirstSeen"] = format_timestamp(parse_timestamp(service.event_first_seen))
        if service.event_last_seen:
            columns["EventLastSeen"] = format_timestamp(parse_timestamp(service.event_last_seen))
        return columns

    def _validate(self, finding: Finding) -> None:
        for name in ("id", "account_id", "region", "type"):
            if not getattr(finding, name):
                raise TransformFailure(f"Missing required field: {name}")
        if not finding.service.service_name:
            raise TransformFailure("Missing required field: service.serviceName")
        if not finding.resource.resource_type:
            raise TransformFailure("Missing required field: resource.resourceType")
        for name in ("created_at", "updated_at"):
            try:
                parse_timestamp(getattr(finding, name))
            except ValueError as exc:
                raise TransformFailure(f"Invalid date format in {name} field") from exc
        if not finding.raw_json:
            raise TransformFailure("Finding has no source JSON")
        json.loads(finding.raw_json)

    def _truncate(self, value: Any) -> str:
        text = value if isinstance(value, str) else str(value)
        if len(text) <= self.max_field_length:
            return text
        return text[: self.max_field_length - 3] + "..."

    @staticmethod
    def _clamp_severity(severity: float) -> float:
        if severity != severity:  # NaN
            return MIN_SEVERITY
        return max(MIN_SEVERITY, min(MAX_SEVERITY, float(severity)))

    def _apply_mappings(self, record: NormalizedRecord) -> NormalizedRecord:
        if not self.field_mappings:
            return record
        mapped = dict(record)
        for source, target in self.field_mappings.items():
            if source in mapped and source != target:
                mapped[target] = mapped.pop(source)
        return mapped
