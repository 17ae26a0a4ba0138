"""
Ingestion Connectors

Delivery of normalized records to the destination log store:
- Azure Monitor Logs Ingestion API (data collection rule streams)
"""

from __future__ import annotations

import asyncio
import json
import random
import string
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

import httpx

from sentinel_bridge.context import PipelineContext
from sentinel_bridge.errors import IngestionError
from sentinel_bridge.models import format_timestamp, utcnow
from sentinel_bridge.siem.config import IngestionConfig
from sentinel_bridge.transform import NormalizedRecord

MAX_PAYLOAD_BYTES = 30 * 1024 * 1024
TOKEN_REFRESH_MARGIN_S = 60

IngestionStatus = Literal["success", "partial", "failed"]


def generate_request_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"ingest-{int(time.time() * 1000)}-{suffix}"


@dataclass(slots=True)
class IngestionRequest:
    data: list[NormalizedRecord]
    stream_name: str
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class IngestionResponse:
    status: IngestionStatus
    accepted_records: int
    rejected_records: int
    request_id: str
    errors: list[dict[str, Any]] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "acceptedRecords": self.accepted_records,
            "rejectedRecords": self.rejected_records,
            "errors": list(self.errors),
            "requestId": self.request_id,
            "timestamp": format_timestamp(self.timestamp),
        }


class ClientCredentialsTokenProvider:
    """OAuth2 client-credentials token, cached until shortly before expiry."""

    def __init__(self, config: IngestionConfig, client: httpx.AsyncClient) -> None:
        self.config = config
        self._client = client
        self._token: str | None = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    @property
    def has_valid_token(self) -> bool:
        return self._token is not None and time.monotonic() < self._expires_at - TOKEN_REFRESH_MARGIN_S

    async def get_token(self) -> str:
        async with self._lock:
            if self.has_valid_token:
                return self._token  # type: ignore[return-value]
            await self._refresh()
            return self._token  # type: ignore[return-value]

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0

    async def _refresh(self) -> None:
        secret = self.config.client_secret.get_secret_value() if self.config.client_secret else ""
        try:
            response = await self._client.post(
                self.config.token_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.config.client_id or "",
                    "client_secret": secret,
                    "scope": self.config.scope,
                },
            )
        except httpx.HTTPError as exc:
            raise IngestionError(f"Token request failed: {exc}", "NETWORK_ERROR") from exc

        if response.status_code != 200:
            raise IngestionError(
                f"Token request rejected with HTTP {response.status_code}",
                "AUTHENTICATION_FAILED",
            )
        payload = response.json()
        self._token = payload["access_token"]
        self._expires_at = time.monotonic() + float(payload.get("expires_in", 3600))


class BaseIngestionConnector(ABC):
    """Base class for ingestion connectors."""

    def __init__(
        self,
        config: IngestionConfig,
        *,
        context: PipelineContext | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self.context = context or PipelineContext()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()

    async def connect(self) -> None:
        """Initialize the HTTP client."""
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.timeout),
            verify=self.config.verify_ssl,
            transport=self._transport,
        )

    async def disconnect(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @abstractmethod
    async def ingest(self, request: IngestionRequest) -> IngestionResponse:
        """Deliver one request; endpoint failures are reported, not raised."""

    @abstractmethod
    async def test_connection(self) -> bool:
        """Whether the destination is reachable with the configured credentials."""

    async def submit(self, records: list[NormalizedRecord], stream_name: str | None = None) -> IngestionResponse:
        """Deliver records, raising IngestionError unless every record was accepted."""
        response = await self.ingest(
            IngestionRequest(data=records, stream_name=stream_name or self.config.stream_name or "")
        )
        if response.status == "failed" or response.rejected_records:
            first = response.errors[0] if response.errors else {}
            raise IngestionError(
                first.get("message") or f"Ingestion {response.status}",
                str(first.get("code") or "INGESTION_ERROR"),
                request_id=response.request_id,
                rejected=response.rejected_records,
            )
        return response


class LogsIngestionConnector(BaseIngestionConnector):
    """
    Azure Monitor Logs Ingestion API connector.

    Uploads JSON arrays to a data collection rule stream with a bearer token
    obtained through the client-credentials flow.

    Configuration:
        AZURE_DCR_IMMUTABLE_ID: Data collection rule immutable id
        AZURE_DCR_STREAM_NAME: Target stream (e.g. Custom-GuardDutyFindings)
        AZURE_DCR_ENDPOINT: Ingestion endpoint; defaults to the DCR's built-in endpoint
        AZURE_TENANT_ID / AZURE_CLIENT_ID / AZURE_CLIENT_SECRET: Service principal
    """

    def __init__(
        self,
        config: IngestionConfig,
        *,
        context: PipelineContext | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(config, context=context, transport=transport)
        self._tokens: ClientCredentialsTokenProvider | None = None
        self._logger = self.context.bind("ingestion", stream=config.stream_name)

    async def connect(self) -> None:
        await super().connect()
        if self._tokens is None:
            self._tokens = ClientCredentialsTokenProvider(self.config, self._client)

    async def disconnect(self) -> None:
        await super().disconnect()
        self._tokens = None

    def validate_request(self, request: IngestionRequest) -> bytes:
        """Return the serialized payload or raise ValueError."""
        if not isinstance(request.data, list) or not request.data:
            raise ValueError("Request data must be a non-empty array")
        if not request.stream_name:
            raise ValueError("Stream name must be a non-empty string")
        payload = json.dumps(self.prepare(request.data), separators=(",", ":"), default=str).encode("utf-8")
        if len(payload) > MAX_PAYLOAD_BYTES:
            raise ValueError(
                f"Request data size ({len(payload)} bytes) exceeds maximum allowed size "
                f"({MAX_PAYLOAD_BYTES} bytes)"
            )
        return payload

    @staticmethod
    def prepare(records: list[NormalizedRecord]) -> list[NormalizedRecord]:
        now = format_timestamp(utcnow())
        prepared = []
        for record in records:
            row = {key: ("" if value is None else value) for key, value in record.items()}
            if not row.get("TimeGenerated"):
                row["TimeGenerated"] = now
            elif isinstance(row["TimeGenerated"], datetime):
                row["TimeGenerated"] = format_timestamp(row["TimeGenerated"])
            prepared.append(row)
        return prepared

    async def ingest(self, request: IngestionRequest) -> IngestionResponse:
        request_id = generate_request_id()
        started = time.perf_counter()
        count = len(request.data) if isinstance(request.data, list) else 0

        try:
            payload = self.validate_request(request)
        except ValueError as exc:
            return self._failed(request_id, count, "INVALID_REQUEST", str(exc))

        if not self._client:
            await self.connect()

        try:
            token = await self._tokens.get_token()
            response = await self._client.post(
                self.config.stream_url(request.stream_name),
                content=payload,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/json",
                    "x-ms-client-request-id": request_id,
                },
            )
        except IngestionError as exc:
            return self._failed(request_id, count, exc.code, exc.message)
        except httpx.TimeoutException as exc:
            return self._failed(request_id, count, "TIMEOUT", f"Ingestion request timed out: {exc}")
        except httpx.HTTPError as exc:
            return self._failed(request_id, count, "NETWORK_ERROR", f"Ingestion request failed: {exc}")

        duration_ms = round((time.perf_counter() - started) * 1000, 3)
        if response.status_code < 300:
            self._logger.info(
                "ingestion.sent",
                request_id=request_id,
                records=count,
                duration_ms=duration_ms,
            )
            return IngestionResponse(
                status="success",
                accepted_records=count,
                rejected_records=0,
                request_id=request_id,
            )

        if response.status_code == 401:
            self._tokens.invalidate()
        service_code, message = self._error_body(response)
        self._logger.warning(
            "ingestion.rejected",
            request_id=request_id,
            status_code=response.status_code,
            service_code=service_code,
            records=count,
            duration_ms=duration_ms,
        )
        return self._failed(
            request_id,
            count,
            str(response.status_code),
            f"{service_code}: {message}" if service_code else message,
            status_code=response.status_code,
            service_code=service_code,
        )

    async def test_connection(self) -> bool:
        """Authenticate and reach the stream without writing a row."""
        if not self._client:
            await self.connect()
        try:
            token = await self._tokens.get_token()
            response = await self._client.post(
                self.config.stream_url(self.config.stream_name or ""),
                content=b"[]",
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            )
        except (IngestionError, httpx.HTTPError) as exc:
            self._logger.warning("ingestion.unreachable", error=str(exc))
            return False
        if response.status_code in (401, 403) or response.status_code >= 500:
            self._logger.warning("ingestion.unreachable", status_code=response.status_code)
            return False
        return True

    @staticmethod
    def _error_body(response: httpx.Response) -> tuple[str | None, str]:
        try:
            body = response.json()
        except ValueError:
            return None, response.text[:500] or f"HTTP {response.status_code}"
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            return error.get("code"), error.get("message") or f"HTTP {response.status_code}"
        return None, f"HTTP {response.status_code}"

    def _failed(
        self,
        request_id: str,
        count: int,
        code: str,
        message: str,
        **details: Any,
    ) -> IngestionResponse:
        return IngestionResponse(
            status="failed",
            accepted_records=0,
            rejected_records=count,
            request_id=request_id,
            errors=[{"code": code, "message": message, "details": {"requestId": request_id, **details}}],
        )
