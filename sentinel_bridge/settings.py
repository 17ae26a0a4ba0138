"""Application settings loaded from environment variables and an optional YAML file."""

from __future__ import annotations

import os
from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr, ValidationError
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from sentinel_bridge.errors import ConfigurationError

CONFIG_FILE_ENV = "CONFIG_FILE"


class DedupStrategy(str, Enum):
    """Identity key used to recognise a finding seen before."""

    FINDING_ID = "finding_id"
    CONTENT_HASH = "content_hash"
    TIME_WINDOW = "time_window"


class Settings(BaseSettings):
    """
    Worker configuration.

    Environment Variables:
        BATCH_SIZE: Items per batch (1-1000, default: 100)
        MAX_RETRIES: Retry attempts for ingestion calls (0-10, default: 3)
        RETRY_BACKOFF_MS: Initial retry backoff (100-60000, default: 1000)
        ENABLE_NORMALIZATION: Extract nested fields into columns (default: false)

        # Deduplication
        DEDUPLICATION_ENABLED: Suppress findings seen before (default: true)
        DEDUPLICATION_STRATEGY: finding_id | content_hash | time_window
        DEDUPLICATION_CACHE_SIZE: Remembered identity keys (default: 10000)
        DEDUPLICATION_TIME_WINDOW_MINUTES: Window width (default: 60)

        # Source
        AWS_REGION, AWS_S3_BUCKET_NAME, AWS_S3_BUCKET_PREFIX, AWS_KMS_KEY_ARN

        # Destination
        AZURE_TENANT_ID, AZURE_CLIENT_ID, AZURE_CLIENT_SECRET
        AZURE_DCR_IMMUTABLE_ID, AZURE_DCR_STREAM_NAME, AZURE_DCR_ENDPOINT

        # HTTP surface
        REQUIRE_API_KEY / API_KEY: Gate the processing endpoints (default: off)
        MAX_REQUEST_SIZE_BYTES: Body limit for processing endpoints (default: 10 MiB)

        # Monitoring
        HEALTH_CHECK_PORT: Port for the health endpoint (default: 8080)
        METRICS_ENABLED: Expose /metrics (default: true)
        LOG_LEVEL: debug | info | warning | error

        CONFIG_FILE: Optional YAML file; environment variables take precedence.
    """

    # Batching & retry
    batch_size: int = Field(default=100, alias="BATCH_SIZE", ge=1, le=1000)
    max_retries: int = Field(default=3, alias="MAX_RETRIES", ge=0, le=10)
    retry_backoff_ms: int = Field(default=1000, alias="RETRY_BACKOFF_MS", ge=100, le=60000)
    max_backoff_ms: int = Field(default=30000, alias="MAX_BACKOFF_MS", ge=100)
    enable_normalization: bool = Field(default=False, alias="ENABLE_NORMALIZATION")
    batch_auto_process: bool = Field(default=False, alias="BATCH_AUTO_PROCESS")
    batch_creation_delay_ms: int = Field(default=10, alias="BATCH_CREATION_DELAY_MS", ge=0)
    completed_batch_retention: int = Field(default=100, alias="COMPLETED_BATCH_RETENTION", ge=1)
    max_objects_per_run: int = Field(default=500, alias="MAX_OBJECTS_PER_RUN", ge=1, le=1000)
    queue_depth_threshold: int = Field(default=1000, alias="QUEUE_DEPTH_THRESHOLD", ge=1)

    # Deduplication
    dedup_enabled: bool = Field(default=True, alias="DEDUPLICATION_ENABLED")
    dedup_strategy: DedupStrategy = Field(
        default=DedupStrategy.FINDING_ID,
        alias="DEDUPLICATION_STRATEGY",
    )
    dedup_cache_size: int = Field(default=10000, alias="DEDUPLICATION_CACHE_SIZE", ge=1)
    dedup_time_window_minutes: int = Field(
        default=60, alias="DEDUPLICATION_TIME_WINDOW_MINUTES", ge=1
    )

    # Source
    aws_region: str = Field(default="us-east-1", alias="AWS_REGION")
    s3_bucket_name: str | None = Field(default=None, alias="AWS_S3_BUCKET_NAME")
    s3_bucket_prefix: str = Field(default="", alias="AWS_S3_BUCKET_PREFIX")
    kms_key_arn: str | None = Field(default=None, alias="AWS_KMS_KEY_ARN")
    dead_letter_queue_url: str | None = Field(default=None, alias="DEAD_LETTER_QUEUE_URL")
    dead_letter_max_items: int = Field(default=1000, alias="DEAD_LETTER_MAX_ITEMS", ge=1)

    # Destination
    azure_tenant_id: str | None = Field(default=None, alias="AZURE_TENANT_ID")
    azure_client_id: str | None = Field(default=None, alias="AZURE_CLIENT_ID")
    azure_client_secret: SecretStr | None = Field(default=None, alias="AZURE_CLIENT_SECRET")
    dcr_immutable_id: str | None = Field(default=None, alias="AZURE_DCR_IMMUTABLE_ID")
    dcr_stream_name: str | None = Field(default=None, alias="AZURE_DCR_STREAM_NAME")
    dcr_endpoint: str | None = Field(default=None, alias="AZURE_DCR_ENDPOINT")
    request_timeout_seconds: float = Field(default=30.0, alias="REQUEST_TIMEOUT_SECONDS", ge=1.0)
    azure_verify_ssl: bool = Field(default=True, alias="AZURE_VERIFY_SSL")

    # HTTP surface
    require_api_key: bool = Field(default=False, alias="REQUIRE_API_KEY")
    api_key: SecretStr | None = Field(default=None, alias="API_KEY")
    max_request_size_bytes: int = Field(default=10 * 1024 * 1024, alias="MAX_REQUEST_SIZE_BYTES", ge=1024)

    # Monitoring
    health_check_port: int = Field(default=8080, alias="HEALTH_CHECK_PORT", ge=1, le=65535)
    metrics_enabled: bool = Field(default=True, alias="METRICS_ENABLED")
    log_level: str = Field(default="info", alias="LOG_LEVEL")
    service_version: str = Field(default="1.0.0", alias="SERVICE_VERSION")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        sources: list[PydanticBaseSettingsSource] = [init_settings, env_settings, dotenv_settings]
        config_file = os.environ.get(CONFIG_FILE_ENV)
        if config_file:
            sources.append(YamlConfigSettingsSource(settings_cls, yaml_file=Path(config_file)))
        sources.append(file_secret_settings)
        return tuple(sources)

    @property
    def ingestion_endpoint(self) -> str | None:
        if self.dcr_endpoint:
            return self.dcr_endpoint.rstrip("/")
        if self.dcr_immutable_id:
            return f"https://{self.dcr_immutable_id}.ingest.monitor.azure.com"
        return None

    def validate_config(self) -> list[str]:
        """Cross-field checks that field constraints cannot express."""
        errors = []

        if not self.s3_bucket_name:
            errors.append("AWS_S3_BUCKET_NAME is required")
        if not self.aws_region:
            errors.append("AWS_REGION is required")

        if not self.dcr_immutable_id:
            errors.append("AZURE_DCR_IMMUTABLE_ID is required")
        if not self.dcr_stream_name:
            errors.append("AZURE_DCR_STREAM_NAME is required")
        if not (self.azure_tenant_id and self.azure_client_id and self.azure_client_secret):
            errors.append("AZURE_TENANT_ID, AZURE_CLIENT_ID and AZURE_CLIENT_SECRET are required")

        if self.max_backoff_ms < self.retry_backoff_ms:
            errors.append("MAX_BACKOFF_MS must not be smaller than RETRY_BACKOFF_MS")
        if self.require_api_key and not self.api_key:
            errors.append("API_KEY is required when REQUIRE_API_KEY is enabled")

        return errors


def load_settings(**overrides) -> Settings:
    """Build settings and refuse to continue on any configuration problem."""
    try:
        settings = Settings(**overrides)
    except ValidationError as exc:
        raise ConfigurationError(
            [f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()]
        ) from exc

    errors = settings.validate_config()
    if errors:
        raise ConfigurationError(errors)
    return settings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached, validated Settings instance."""
    return load_settings()
