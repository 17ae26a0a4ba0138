from __future__ import annotations

import pytest

from sentinel_bridge.events import EventEmitter


@pytest.mark.asyncio
async def test_sync_and_async_handlers_receive_arguments() -> None:
    emitter = EventEmitter("batch-created")
    received: list[tuple[str, int]] = []

    async def async_handler(name: str, size: int) -> None:
        received.append(("async", size))

    emitter.subscribe("batch-created", lambda name, size: received.append(("sync", size)))
    emitter.subscribe("batch-created", async_handler)

    await emitter.emit("batch-created", "batch-1", 3)

    assert received == [("sync", 3), ("async", 3)]


@pytest.mark.asyncio
async def test_failing_handler_does_not_stop_the_others() -> None:
    emitter = EventEmitter("retry-attempt")
    seen: list[int] = []

    def broken(attempt: int) -> None:
        raise RuntimeError("observer bug")

    emitter.subscribe("retry-attempt", broken)
    emitter.subscribe("retry-attempt", seen.append)

    await emitter.emit("retry-attempt", 1)

    assert seen == [1]


@pytest.mark.asyncio
async def test_unsubscribe() -> None:
    emitter = EventEmitter("dead-lettered")
    seen: list[str] = []
    unsubscribe = emitter.subscribe("dead-lettered", seen.append)

    unsubscribe()
    unsubscribe()
    await emitter.emit("dead-lettered", "item")

    assert seen == []
    assert emitter.listeners("dead-lettered") == 0


def test_unknown_event_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown event"):
        EventEmitter("batch-created").subscribe("batch-deleted", print)
