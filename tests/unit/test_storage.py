from __future__ import annotations

from typing import Any

import pytest
from botocore.exceptions import EndpointConnectionError

from sentinel_bridge.errors import ObjectStoreError
from sentinel_bridge.models import StorageObjectRef
from sentinel_bridge.retry import RetryHandler, RetryPolicy
from sentinel_bridge.storage import ObjectStore, map_kms_error, map_storage_error, refs_from_s3_event

from factories import BUCKET, LAST_MODIFIED, PREFIX, FakeKmsClient, FakeS3Client, client_error, no_sleep


def fast_retry(max_retries: int = 2) -> RetryHandler:
    policy = RetryPolicy.for_object_store()
    return RetryHandler(
        RetryPolicy(
            max_retries=max_retries,
            initial_backoff_ms=1,
            max_backoff_ms=1,
            retryable_errors=policy.retryable_errors,
        ),
        sleep=no_sleep,
    )


class PagedS3Client(FakeS3Client):
    """Returns one key per page to exercise continuation tokens."""

    def list_objects_v2(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(("list_objects_v2", kwargs))
        keys = sorted(self.objects)
        index = int(kwargs.get("ContinuationToken") or 0)
        more = index + 1 < len(keys)
        response: dict[str, Any] = {
            "IsTruncated": more,
            "Contents": [{"Key": keys[index], "Size": 1, "LastModified": LAST_MODIFIED, "ETag": '"e"'}],
        }
        if more:
            response["NextContinuationToken"] = str(index + 1)
        return response


class TestErrorMapping:
    @pytest.mark.parametrize(
        ("error", "code", "status"),
        [
            (client_error("NoSuchKey", 404), "ObjectNotFound", 404),
            (client_error("AccessDenied", 403), "AccessDenied", 403),
            (client_error("SlowDown", 503), "SlowDown", 503),
        ],
    )
    def test_storage_errors(self, error: Exception, code: str, status: int) -> None:
        mapped = map_storage_error(error, bucket=BUCKET, key="a.jsonl.gz")
        assert mapped.code == code
        assert mapped.status_code == status

    def test_transport_failure_is_a_network_error(self) -> None:
        mapped = map_storage_error(EndpointConnectionError(endpoint_url="https://s3"), bucket=BUCKET)
        assert mapped.code == "NETWORK_ERROR"

    @pytest.mark.parametrize(
        ("error", "code"),
        [
            (client_error("AccessDeniedException", 400, "Decrypt"), "KMSAccessDenied"),
            (client_error("InvalidCiphertextException", 400, "Decrypt"), "InvalidCiphertext"),
            (client_error("DisabledException", 400, "Decrypt"), "DecryptionFailed"),
        ],
    )
    def test_kms_errors(self, error: Exception, code: str) -> None:
        assert map_kms_error(error).code == code


class TestListObjects:
    @pytest.mark.asyncio
    async def test_lists_objects_under_prefix(self) -> None:
        s3 = FakeS3Client(
            {
                PREFIX + "a.jsonl.gz": b"aa",
                PREFIX + "folder/": b"",
                "other/b.jsonl.gz": b"b",
            }
        )
        refs = await ObjectStore(s3).list_objects(BUCKET, PREFIX)

        assert [ref.key for ref in refs] == [PREFIX + "a.jsonl.gz"]
        assert refs[0].size == 2
        assert refs[0].etag == "etag-0"
        assert refs[0].last_modified == LAST_MODIFIED

    @pytest.mark.asyncio
    async def test_follows_continuation_tokens_up_to_the_limit(self) -> None:
        s3 = PagedS3Client({f"k{index}": b"x" for index in range(5)})
        store = ObjectStore(s3)

        assert len(await store.list_objects(BUCKET)) == 5
        assert [ref.key for ref in await store.list_objects(BUCKET, max_keys=2)] == ["k0", "k1"]

    @pytest.mark.asyncio
    async def test_access_check(self) -> None:
        s3 = FakeS3Client()
        store = ObjectStore(s3)
        assert await store.check_access(BUCKET) is True

        s3.denied.add(BUCKET)
        assert await store.check_access(BUCKET) is False
        assert await store.check_access(BUCKET, retry=False) is False

    @pytest.mark.asyncio
    async def test_single_attempt_access_check_skips_retries(self) -> None:
        class Throttled(FakeS3Client):
            def list_objects_v2(self, **kwargs: Any) -> dict[str, Any]:
                self.calls.append(("list_objects_v2", kwargs))
                raise client_error("SlowDown", 503, "ListObjectsV2")

        s3 = Throttled()
        store = ObjectStore(s3, retry=fast_retry(max_retries=3))

        with pytest.raises(ObjectStoreError) as exc_info:
            await store.check_access(BUCKET, retry=False)
        assert exc_info.value.code == "SlowDown"
        assert len(s3.calls) == 1

        with pytest.raises(ObjectStoreError):
            await store.check_access(BUCKET)
        assert len(s3.calls) == 5


class TestFetch:
    @pytest.mark.asyncio
    async def test_plain_object(self) -> None:
        store = ObjectStore(FakeS3Client({"a": b"payload"}))
        assert await store.fetch(StorageObjectRef(bucket=BUCKET, key="a")) == b"payload"

    @pytest.mark.asyncio
    async def test_missing_object(self) -> None:
        store = ObjectStore(FakeS3Client())
        with pytest.raises(ObjectStoreError) as exc_info:
            await store.fetch(StorageObjectRef(bucket=BUCKET, key="missing"))
        assert exc_info.value.code == "ObjectNotFound"

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self) -> None:
        class Flaky(FakeS3Client):
            attempts = 0

            def get_object(self, **kwargs: Any) -> dict[str, Any]:
                Flaky.attempts += 1
                if Flaky.attempts < 3:
                    raise client_error("SlowDown", 503)
                return super().get_object(**kwargs)

        store = ObjectStore(Flaky({"a": b"data"}), retry=fast_retry())
        assert await store.get_object(BUCKET, "a") == b"data"
        assert Flaky.attempts == 3

    @pytest.mark.asyncio
    async def test_access_denied_is_not_retried(self) -> None:
        s3 = FakeS3Client({"a": b"data"})
        s3.failures["a"] = client_error("AccessDenied", 403)
        store = ObjectStore(s3, retry=fast_retry())

        with pytest.raises(ObjectStoreError, match="Access denied"):
            await store.get_object(BUCKET, "a")
        assert len([call for call in s3.calls if call[0] == "get_object"]) == 1

    @pytest.mark.asyncio
    async def test_encrypted_object_is_decrypted(self) -> None:
        kms = FakeKmsClient({b"cipher": b"plain"})
        store = ObjectStore(FakeS3Client({"a": b"cipher"}), kms)

        ref = StorageObjectRef(bucket=BUCKET, key="a", kms_key_id="key-1")
        assert await store.fetch(ref) == b"plain"
        assert kms.calls[0]["KeyId"] == "key-1"

    @pytest.mark.asyncio
    async def test_default_key_applies_when_ref_has_none(self) -> None:
        kms = FakeKmsClient({b"cipher": b"plain"})
        store = ObjectStore(FakeS3Client({"a": b"cipher"}), kms, default_kms_key_id="default-key")

        assert await store.fetch(StorageObjectRef(bucket=BUCKET, key="a")) == b"plain"
        assert kms.calls[0]["KeyId"] == "default-key"

    @pytest.mark.asyncio
    async def test_invalid_ciphertext_falls_back_to_raw_bytes(self) -> None:
        store = ObjectStore(FakeS3Client({"a": b"already-plain"}), FakeKmsClient(), default_kms_key_id="k")
        assert await store.fetch(StorageObjectRef(bucket=BUCKET, key="a")) == b"already-plain"

    @pytest.mark.asyncio
    async def test_kms_access_denied_propagates(self) -> None:
        kms = FakeKmsClient(error=client_error("AccessDeniedException", 400, "Decrypt"))
        store = ObjectStore(FakeS3Client({"a": b"cipher"}), kms, default_kms_key_id="k")

        with pytest.raises(ObjectStoreError) as exc_info:
            await store.fetch(StorageObjectRef(bucket=BUCKET, key="a"))
        assert exc_info.value.code == "KMSAccessDenied"


def test_refs_from_s3_event() -> None:
    event = {
        "Records": [
            {
                "eventName": "ObjectCreated:Put",
                "eventTime": "2024-03-01T12:00:00.000Z",
                "s3": {
                    "bucket": {"name": BUCKET},
                    "object": {"key": "AWSLogs/finding+export%3D1.jsonl.gz", "size": 42, "eTag": "abc"},
                },
            },
            {
                "eventName": "ObjectRemoved:Delete",
                "s3": {"bucket": {"name": BUCKET}, "object": {"key": "gone.jsonl.gz"}},
            },
        ]
    }
    refs = refs_from_s3_event(event)

    assert len(refs) == 1
    assert refs[0].key == "AWSLogs/finding export=1.jsonl.gz"
    assert refs[0].size == 42
    assert refs[0].last_modified == LAST_MODIFIED
