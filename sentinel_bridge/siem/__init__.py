"""
Destination ingestion for normalized findings.

Usage:
    from sentinel_bridge.siem import IngestionConfig, LogsIngestionConnector

    config = IngestionConfig.from_settings(settings)
    async with LogsIngestionConnector(config) as connector:
        await connector.submit(records)
"""

from sentinel_bridge.siem.config import IngestionConfig
from sentinel_bridge.siem.connectors import (
    BaseIngestionConnector,
    ClientCredentialsTokenProvider,
    IngestionRequest,
    IngestionResponse,
    LogsIngestionConnector,
)

__all__ = [
    "IngestionConfig",
    "BaseIngestionConnector",
    "ClientCredentialsTokenProvider",
    "IngestionRequest",
    "IngestionResponse",
    "LogsIngestionConnector",
]
