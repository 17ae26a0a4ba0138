"""Error taxonomy for the ingestion bridge."""

from __future__ import annotations


class BridgeError(Exception):
    """Base error carrying a machine-readable code."""

    default_code = "BRIDGE_ERROR"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


class ConfigurationError(BridgeError):
    """Missing or out-of-range configuration; fatal at startup."""

    default_code = "CONFIGURATION_ERROR"

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("invalid configuration: " + "; ".join(self.errors))


class InitializationError(BridgeError):
    """A dependency failed startup validation."""

    default_code = "INITIALIZATION_ERROR"


class FindingValidationError(BridgeError):
    """A record does not have the shape of a finding."""

    default_code = "INVALID_FINDING"


class StreamReadError(BridgeError):
    """The byte stream itself could not be read or decompressed."""

    default_code = "STREAM_READ_ERROR"


class ObjectStoreError(BridgeError):
    """Object storage or key service failure for a single call."""

    default_code = "UnknownError"

    def __init__(self, message: str, code: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message, code)
        self.status_code = status_code


class IngestionError(BridgeError):
    """The ingestion endpoint rejected or did not accept a submission."""

    default_code = "INGESTION_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        *,
        request_id: str | None = None,
        rejected: int = 0,
    ) -> None:
        super().__init__(message, code)
        self.request_id = request_id
        self.rejected = rejected
