"""Dead-letter sinks for work that exhausted its retries."""

from __future__ import annotations

import asyncio
import itertools
import json
import time
from collections import OrderedDict
from typing import Any, Protocol

import structlog

from sentinel_bridge.models import DeadLetterItem, ProcessingError, parse_timestamp, utcnow

logger = structlog.get_logger(__name__)


class DeadLetterSink(Protocol):
    """Where abandoned items go for inspection or replay."""

    async def send(
        self,
        item: Any,
        error: ProcessingError,
        context: str | None = None,
        retry_count: int = 0,
    ) -> str: ...

    async def receive(self, max_items: int = 10) -> list[DeadLetterItem]: ...

    async def delete(self, item_id: str) -> bool: ...


class InMemoryDeadLetterQueue:
    """
    Bounded, insertion-ordered holding area.

    Not durable: items are lost on restart, and the oldest item is dropped
    once ``max_items`` is exceeded.
    """

    def __init__(self, max_items: int = 1000) -> None:
        if max_items < 1:
            raise ValueError("max_items must be at least 1")
        self.max_items = max_items
        self._items: OrderedDict[str, DeadLetterItem] = OrderedDict()
        self._counter = itertools.count(1)
        self.dropped = 0

    async def send(
        self,
        item: Any,
        error: ProcessingError,
        context: str | None = None,
        retry_count: int = 0,
    ) -> str:
        item_id = f"dlq-{int(time.time() * 1000)}-{next(self._counter)}"
        self._items[item_id] = DeadLetterItem(
            id=item_id,
            item=item,
            error=error,
            context=context,
            retry_count=retry_count,
        )
        while len(self._items) > self.max_items:
            dropped_id, _ = self._items.popitem(last=False)
            self.dropped += 1
            logger.warning("dead_letter.dropped", item_id=dropped_id, max_items=self.max_items)
        return item_id

    async def receive(self, max_items: int = 10) -> list[DeadLetterItem]:
        return list(itertools.islice(self._items.values(), max(max_items, 0)))

    async def delete(self, item_id: str) -> bool:
        return self._items.pop(item_id, None) is not None

    def __len__(self) -> int:
        return len(self._items)


class SqsDeadLetterQueue:
    """Durable sink backed by an SQS queue; boto3 calls run in a worker thread."""

    MAX_RECEIVE = 10

    def __init__(self, queue_url: str, client: Any) -> None:
        self.queue_url = queue_url
        self._client = client
        # receipt handles from the latest receive, needed to delete a message
        self._receipts: dict[str, str] = {}

    async def send(
        self,
        item: Any,
        error: ProcessingError,
        context: str | None = None,
        retry_count: int = 0,
    ) -> str:
        body = json.dumps(
            {
                "item": item,
                "error": error.to_dict(),
                "context": context,
                "retryCount": retry_count,
                "timestamp": error.to_dict()["timestamp"],
            },
            default=str,
        )
        response = await asyncio.to_thread(
            self._client.send_message,
            QueueUrl=self.queue_url,
            MessageBody=body,
            MessageAttributes={
                "ErrorCode": {"DataType": "String", "StringValue": error.code},
            },
        )
        return response["MessageId"]

    async def receive(self, max_items: int = 10) -> list[DeadLetterItem]:
        response = await asyncio.to_thread(
            self._client.receive_message,
            QueueUrl=self.queue_url,
            MaxNumberOfMessages=max(1, min(max_items, self.MAX_RECEIVE)),
            MessageAttributeNames=["All"],
        )
        items = []
        for message in response.get("Messages", []):
            self._receipts[message["MessageId"]] = message["ReceiptHandle"]
            items.append(self._to_item(message))
        return items

    async def delete(self, item_id: str) -> bool:
        receipt = self._receipts.pop(item_id, None)
        if receipt is None:
            return False
        await asyncio.to_thread(
            self._client.delete_message,
            QueueUrl=self.queue_url,
            ReceiptHandle=receipt,
        )
        return True

    @staticmethod
    def _to_item(message: dict[str, Any]) -> DeadLetterItem:
        payload = json.loads(message["Body"])
        raw_error = payload.get("error") or {}
        error = ProcessingError(
            code=raw_error.get("code", "UNKNOWN_ERROR"),
            message=raw_error.get("message", ""),
            details=raw_error.get("details") or {},
        )
        if raw_error.get("timestamp"):
            error.timestamp = parse_timestamp(raw_error["timestamp"])
        return DeadLetterItem(
            id=message["MessageId"],
            item=payload.get("item"),
            error=error,
            context=payload.get("context"),
            retry_count=int(payload.get("retryCount") or 0),
            timestamp=parse_timestamp(payload["timestamp"]) if payload.get("timestamp") else utcnow(),
        )
