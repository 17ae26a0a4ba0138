from __future__ import annotations

import json
from typing import Any

import pytest

from sentinel_bridge.dead_letter import InMemoryDeadLetterQueue, SqsDeadLetterQueue
from sentinel_bridge.models import ProcessingError


class FakeSqsClient:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.deleted: list[str] = []

    def send_message(self, **kwargs: Any) -> dict[str, Any]:
        self.sent.append(kwargs)
        return {"MessageId": f"msg-{len(self.sent)}"}

    def receive_message(self, **kwargs: Any) -> dict[str, Any]:
        limit = kwargs["MaxNumberOfMessages"]
        return {
            "Messages": [
                {
                    "MessageId": f"msg-{index + 1}",
                    "ReceiptHandle": f"receipt-{index + 1}",
                    "Body": message["MessageBody"],
                }
                for index, message in enumerate(self.sent[:limit])
            ]
        }

    def delete_message(self, **kwargs: Any) -> dict[str, Any]:
        self.deleted.append(kwargs["ReceiptHandle"])
        return {}


def error(code: str = "503") -> ProcessingError:
    return ProcessingError(code=code, message="ServiceUnavailable", details={"operation": "ingestion"})


class TestInMemoryQueue:
    @pytest.mark.asyncio
    async def test_send_receive_delete(self) -> None:
        queue = InMemoryDeadLetterQueue()
        first = await queue.send({"FindingId": "a"}, error(), context="chunk 1", retry_count=3)
        second = await queue.send({"FindingId": "b"}, error("400"))

        items = await queue.receive()
        assert [item.id for item in items] == [first, second]
        assert items[0].retry_count == 3
        assert items[0].context == "chunk 1"

        assert await queue.delete(first) is True
        assert await queue.delete(first) is False
        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_ids_are_unique(self) -> None:
        queue = InMemoryDeadLetterQueue()
        ids = {await queue.send(index, error()) for index in range(50)}
        assert len(ids) == 50

    @pytest.mark.asyncio
    async def test_oldest_item_is_dropped_past_capacity(self) -> None:
        queue = InMemoryDeadLetterQueue(max_items=2)
        for index in range(3):
            await queue.send(index, error())

        assert [item.item for item in await queue.receive()] == [1, 2]
        assert queue.dropped == 1

    @pytest.mark.asyncio
    async def test_receive_respects_limit(self) -> None:
        queue = InMemoryDeadLetterQueue()
        for index in range(5):
            await queue.send(index, error())

        assert len(await queue.receive(max_items=2)) == 2
        assert await queue.receive(max_items=0) == []

    @pytest.mark.asyncio
    async def test_item_serializes_for_the_api(self) -> None:
        queue = InMemoryDeadLetterQueue()
        await queue.send([{"FindingId": "a"}], error(), context="ctx", retry_count=1)

        payload = (await queue.receive())[0].to_dict()
        assert payload["item"] == [{"FindingId": "a"}]
        assert payload["error"]["code"] == "503"
        assert payload["timestamp"].endswith("Z")


class TestSqsQueue:
    @pytest.mark.asyncio
    async def test_send_writes_a_json_message(self) -> None:
        client = FakeSqsClient()
        queue = SqsDeadLetterQueue("https://sqs.us-east-1.amazonaws.com/123456789012/dlq", client)

        message_id = await queue.send([{"FindingId": "a"}], error(), context="chunk 1", retry_count=2)

        assert message_id == "msg-1"
        sent = client.sent[0]
        assert sent["MessageAttributes"]["ErrorCode"]["StringValue"] == "503"
        body = json.loads(sent["MessageBody"])
        assert body["item"] == [{"FindingId": "a"}]
        assert body["retryCount"] == 2
        assert body["context"] == "chunk 1"

    @pytest.mark.asyncio
    async def test_received_messages_can_be_deleted(self) -> None:
        client = FakeSqsClient()
        queue = SqsDeadLetterQueue("queue-url", client)
        await queue.send({"FindingId": "a"}, error())

        items = await queue.receive()
        assert items[0].id == "msg-1"
        assert items[0].error.code == "503"
        assert items[0].item == {"FindingId": "a"}

        assert await queue.delete("msg-1") is True
        assert client.deleted == ["receipt-1"]
        # the receipt handle is consumed by the delete
        assert await queue.delete("msg-1") is False
