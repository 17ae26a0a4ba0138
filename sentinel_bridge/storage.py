"""Object storage and key-management access for exported finding files.

boto3 clients are blocking; every call is pushed to a worker thread so the
event loop keeps serving other batches.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable
from urllib.parse import unquote_plus

from botocore.exceptions import BotoCoreError, ClientError

from sentinel_bridge.context import PipelineContext
from sentinel_bridge.errors import ObjectStoreError
from sentinel_bridge.models import StorageObjectRef, parse_timestamp
from sentinel_bridge.retry import RetryHandler, RetryPolicy

_NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "404"}
_ACCESS_DENIED_CODES = {"AccessDenied", "AccessDeniedException", "403"}


def _client_error(exc: ClientError) -> tuple[str, str, int | None]:
    error = exc.response.get("Error", {})
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return str(error.get("Code") or "UnknownError"), str(error.get("Message") or exc), status


def map_storage_error(exc: Exception, *, bucket: str, key: str | None = None) -> ObjectStoreError:
    where = f"{key} in bucket {bucket}" if key else f"bucket {bucket}"
    if isinstance(exc, ClientError):
        code, message, status = _client_error(exc)
        if code in _NOT_FOUND_CODES or status == 404:
            return ObjectStoreError(f"Object {where} not found", "ObjectNotFound", 404)
        if code in _ACCESS_DENIED_CODES or status == 403:
            return ObjectStoreError(f"Access denied to {where}", "AccessDenied", 403)
        return ObjectStoreError(f"Storage request for {where} failed: {message}", code, status)
    if isinstance(exc, BotoCoreError):
        return ObjectStoreError(f"Storage request for {where} failed: {exc}", "NETWORK_ERROR")
    return ObjectStoreError(f"Unexpected storage error for {where}: {exc}")


def map_kms_error(exc: Exception) -> ObjectStoreError:
    if isinstance(exc, ClientError):
        code, message, status = _client_error(exc)
        if code in _ACCESS_DENIED_CODES:
            return ObjectStoreError("Access denied to KMS key for decryption", "KMSAccessDenied", status)
        if code == "InvalidCiphertextException":
            return ObjectStoreError("Invalid ciphertext provided for KMS decryption", "InvalidCiphertext", status)
        return ObjectStoreError(f"KMS decryption failed: {message}", "DecryptionFailed", status)
    if isinstance(exc, BotoCoreError):
        return ObjectStoreError(f"KMS request failed: {exc}", "NETWORK_ERROR")
    return ObjectStoreError(f"Unexpected error during KMS decryption: {exc}", "UnknownDecryptionError")


class ObjectStore:
    """List, fetch and decrypt exported objects."""

    def __init__(
        self,
        s3_client: Any,
        kms_client: Any | None = None,
        *,
        default_kms_key_id: str | None = None,
        retry: RetryHandler | None = None,
        context: PipelineContext | None = None,
    ) -> None:
        self._s3 = s3_client
        self._kms = kms_client
        self.default_kms_key_id = default_kms_key_id
        self.context = context or PipelineContext()
        self._retry = retry or RetryHandler(
            RetryPolicy.for_object_store(), context=self.context, operation="object_store"
        )
        self._logger = self.context.bind("object_store")

    async def _call(self, fn: Callable[..., Any], mapper: Callable[[Exception], ObjectStoreError], **kwargs: Any) -> Any:
        async def attempt() -> Any:
            try:
                return await asyncio.to_thread(fn, **kwargs)
            except (ClientError, BotoCoreError) as exc:
                raise mapper(exc) from exc

        return await self._retry.execute(attempt, description=getattr(fn, "__name__", "call"))

    async def list_objects(self, bucket: str, prefix: str = "", max_keys: int = 1000) -> list[StorageObjectRef]:
        refs: list[StorageObjectRef] = []
        token: str | None = None
        while len(refs) < max_keys:
            kwargs: dict[str, Any] = {"Bucket": bucket, "MaxKeys": max_keys - len(refs)}
            if prefix:
                kwargs["Prefix"] = prefix
            if token:
                kwargs["ContinuationToken"] = token
            response = await self._call(
                self._s3.list_objects_v2,
                lambda exc: map_storage_error(exc, bucket=bucket),
                **kwargs,
            )
            for entry in response.get("Contents", []):
                if not entry.get("Key") or entry.get("Size") is None or entry.get("LastModified") is None:
                    continue
                if entry["Key"].endswith("/"):
                    continue
                refs.append(
                    StorageObjectRef(
                        bucket=bucket,
                        key=entry["Key"],
                        size=int(entry["Size"]),
                        last_modified=entry["LastModified"],
                        etag=str(entry.get("ETag") or "").strip('"'),
                    )
                )
            token = response.get("NextContinuationToken")
            if not response.get("IsTruncated") or not token:
                break

        self._logger.debug("storage.listed", bucket=bucket, prefix=prefix, count=len(refs))
        return refs[:max_keys]

    async def get_object(self, bucket: str, key: str) -> bytes:
        """Download one object; the body is read inside the retried attempt."""

        def read_object(**kwargs: Any) -> bytes:
            response = self._s3.get_object(**kwargs)
            body = response.get("Body")
            if body is None:
                raise ObjectStoreError(f"Object {key} in bucket {bucket} has no body", "NoObjectBody")
            return body.read()

        return await self._call(
            read_object,
            lambda exc: map_storage_error(exc, bucket=bucket, key=key),
            Bucket=bucket,
            Key=key,
        )

    async def decrypt(self, data: bytes, key_id: str | None = None) -> bytes:
        if self._kms is None:
            raise ObjectStoreError("No key management client configured", "DecryptionFailed")
        kwargs: dict[str, Any] = {"CiphertextBlob": data}
        if key_id:
            kwargs["KeyId"] = key_id
        response = await self._call(self._kms.decrypt, map_kms_error, **kwargs)
        plaintext = response.get("Plaintext")
        if not plaintext:
            raise ObjectStoreError("KMS decryption returned no plaintext data", "DecryptionFailed")
        return plaintext

    async def fetch(self, ref: StorageObjectRef) -> bytes:
        """Bytes of one object, decrypted when a key reference applies."""
        data = await self.get_object(ref.bucket, ref.key)
        key_id = ref.kms_key_id or self.default_kms_key_id
        if not key_id or self._kms is None:
            return data
        try:
            return await self.decrypt(data, key_id)
        except ObjectStoreError as exc:
            if exc.code != "InvalidCiphertext":
                raise
            # server-side encrypted objects already arrive as plaintext
            self._logger.debug("storage.decrypt_skipped", key=ref.key, reason=exc.code)
            return data

    async def _list_once(self, bucket: str) -> None:
        try:
            await asyncio.to_thread(self._s3.list_objects_v2, Bucket=bucket, MaxKeys=1)
        except (ClientError, BotoCoreError) as exc:
            raise map_storage_error(exc, bucket=bucket) from exc

    async def check_access(self, bucket: str, *, retry: bool = True) -> bool:
        """Whether the bucket can be listed; ``retry=False`` makes a single attempt."""
        try:
            if retry:
                await self.list_objects(bucket, max_keys=1)
            else:
                await self._list_once(bucket)
        except ObjectStoreError as exc:
            if exc.code == "AccessDenied":
                return False
            raise
        return True


def refs_from_s3_event(event: dict[str, Any]) -> list[StorageObjectRef]:
    """Object references for the ``ObjectCreated`` records of an S3 notification."""
    refs = []
    for record in event.get("Records") or []:
        if not str(record.get("eventName", "")).startswith("ObjectCreated:"):
            continue
        s3 = record.get("s3") or {}
        bucket = (s3.get("bucket") or {}).get("name")
        obj = s3.get("object") or {}
        if not bucket or not obj.get("key"):
            continue
        event_time = record.get("eventTime")
        refs.append(
            StorageObjectRef(
                bucket=bucket,
                key=unquote_plus(obj["key"]),
                size=int(obj.get("size") or 0),
                last_modified=parse_timestamp(event_time) if event_time else None,
                etag=str(obj.get("eTag") or ""),
            )
        )
    return refs
