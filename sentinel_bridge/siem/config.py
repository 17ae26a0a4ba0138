"""
Ingestion destination configuration.

Built from the worker ``Settings`` or instantiated directly in tests.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, SecretStr

from sentinel_bridge.settings import Settings

API_VERSION = "2023-01-01"
DEFAULT_SCOPE = "https://monitor.azure.com/.default"
DEFAULT_AUTHORITY = "https://login.microsoftonline.com"


class IngestionConfig(BaseModel):
    """Logs Ingestion API target and service-principal credentials."""

    tenant_id: str | None = None
    client_id: str | None = None
    client_secret: SecretStr | None = None
    dcr_immutable_id: str | None = None
    stream_name: str | None = None
    endpoint: str | None = None

    authority: str = DEFAULT_AUTHORITY
    scope: str = DEFAULT_SCOPE
    api_version: str = API_VERSION
    timeout: float = Field(default=30.0, ge=1.0)
    verify_ssl: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> IngestionConfig:
        return cls(
            tenant_id=settings.azure_tenant_id,
            client_id=settings.azure_client_id,
            client_secret=settings.azure_client_secret,
            dcr_immutable_id=settings.dcr_immutable_id,
            stream_name=settings.dcr_stream_name,
            endpoint=settings.ingestion_endpoint,
            timeout=settings.request_timeout_seconds,
            verify_ssl=settings.azure_verify_ssl,
        )

    @property
    def ingestion_endpoint(self) -> str | None:
        if self.endpoint:
            return self.endpoint.rstrip("/")
        if self.dcr_immutable_id:
            return f"https://{self.dcr_immutable_id}.ingest.monitor.azure.com"
        return None

    @property
    def token_url(self) -> str:
        return f"{self.authority.rstrip('/')}/{self.tenant_id}/oauth2/v2.0/token"

    def stream_url(self, stream_name: str) -> str:
        return (
            f"{self.ingestion_endpoint}/dataCollectionRules/{self.dcr_immutable_id}"
            f"/streams/{stream_name}?api-version={self.api_version}"
        )

    def validate_config(self) -> list[str]:
        """Validate everything needed to authenticate and upload."""
        errors = []

        if not self.dcr_immutable_id:
            errors.append("AZURE_DCR_IMMUTABLE_ID is required for log ingestion")
        if not self.stream_name:
            errors.append("AZURE_DCR_STREAM_NAME is required for log ingestion")
        if not self.tenant_id:
            errors.append("AZURE_TENANT_ID is required for log ingestion")
        if not self.client_id:
            errors.append("AZURE_CLIENT_ID is required for log ingestion")
        if not self.client_secret:
            errors.append("AZURE_CLIENT_SECRET is required for log ingestion")

        return errors
