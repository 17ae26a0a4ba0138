"""
Batch Engine

Groups queued object references and findings into bounded batches and runs
them concurrently through a caller-supplied handler.

Two operating modes:
- pull (default): callers enqueue, then ``await engine.process_pending()``
- push (``auto_process=True``): enqueueing schedules draining on the running loop
"""

from __future__ import annotations

import asyncio
import itertools
import time
from collections import deque
from typing import Any, Awaitable, Callable

from sentinel_bridge.context import PipelineContext
from sentinel_bridge.events import EventEmitter
from sentinel_bridge.models import (
    BatchStatus,
    Finding,
    ProcessingBatch,
    ProcessingError,
    StorageObjectRef,
)

BATCH_CREATED = "batch-created"
BATCH_COMPLETED = "batch-completed"
BATCH_FAILED = "batch-failed"

BatchHandler = Callable[[ProcessingBatch], Awaitable[None]]


class BatchStats:
    """Running totals across terminal batches."""

    def __init__(self) -> None:
        self.batches_completed = 0
        self.batches_failed = 0
        self.total_processed = 0
        self.total_failed = 0
        self.total_duration_ms = 0.0

    @property
    def success_rate(self) -> float:
        total = self.total_processed + self.total_failed
        return self.total_processed / total if total else 1.0

    @property
    def avg_duration_ms(self) -> float:
        batches = self.batches_completed + self.batches_failed
        return self.total_duration_ms / batches if batches else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "batches_completed": self.batches_completed,
            "batches_failed": self.batches_failed,
            "total_processed": self.total_processed,
            "total_failed": self.total_failed,
            "success_rate": self.success_rate,
            "avg_duration_ms": round(self.avg_duration_ms, 3),
        }


class BatchEngine:
    """
    Owns every batch from formation to the bounded archive.

    Formation drains the findings queue first (no fetch needed), then fills
    the remaining capacity from the object queue. Empty batches are never
    created. Failed batches are archived, not retried.
    """

    def __init__(
        self,
        handler: BatchHandler,
        *,
        batch_size: int = 100,
        context: PipelineContext | None = None,
        auto_process: bool = False,
        creation_delay: float = 0.01,
        completed_retention: int = 100,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._handler = handler
        self.batch_size = batch_size
        self.auto_process = auto_process
        self.creation_delay = creation_delay
        self.context = context or PipelineContext()
        self._logger = self.context.bind("batch_engine")
        self.events = EventEmitter(BATCH_CREATED, BATCH_COMPLETED, BATCH_FAILED)

        self._object_queue: deque[StorageObjectRef] = deque()
        self._finding_queue: deque[Finding] = deque()
        self._active: dict[str, ProcessingBatch] = {}
        self._archive: deque[ProcessingBatch] = deque(maxlen=completed_retention)
        self._counter = itertools.count(1)
        self._drain_task: asyncio.Task | None = None
        self._stats = BatchStats()

    # -- enqueue -----------------------------------------------------------

    def add_objects(self, refs: list[StorageObjectRef]) -> None:
        self._object_queue.extend(refs)
        self._queue_changed()

    def add_findings(self, findings: list[Finding]) -> None:
        self._finding_queue.extend(findings)
        self._queue_changed()

    def subscribe(self, event: str, handler: Callable[..., Any]) -> Callable[[], None]:
        return self.events.subscribe(event, handler)

    def _queue_changed(self) -> None:
        self.context.metrics.queue_depth.set(self.queue_depth)
        if self.auto_process:
            self._schedule_drain()

    def _schedule_drain(self) -> None:
        if self._drain_task is not None and not self._drain_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._logger.debug("batch.drain_deferred", reason="no running event loop")
            return
        self._drain_task = loop.create_task(self._drain_until_empty())

    async def _drain_until_empty(self) -> list[ProcessingBatch]:
        drained: list[ProcessingBatch] = []
        while self.queue_depth:
            drained.extend(await self._dispatch_all())
        return drained

    # -- formation and dispatch -------------------------------------------

    def _create_batch(self) -> ProcessingBatch | None:
        findings = [
            self._finding_queue.popleft()
            for _ in range(min(self.batch_size, len(self._finding_queue)))
        ]
        capacity = self.batch_size - len(findings)
        refs = [
            self._object_queue.popleft()
            for _ in range(min(capacity, len(self._object_queue)))
        ]
        if not findings and not refs:
            return None

        batch = ProcessingBatch(
            batch_id=f"batch-{next(self._counter)}-{int(time.time() * 1000)}",
            object_refs=refs,
            findings=findings,
        )
        self._active[batch.batch_id] = batch
        self.context.metrics.queue_depth.set(self.queue_depth)
        return batch

    async def process_pending(self) -> list[ProcessingBatch]:
        """Drain both queues into batches and wait for all of them to finish.

        Returns the batches created while waiting, each in a terminal state.
        In push mode this includes batches dispatched by the background drain.
        """
        batches: list[ProcessingBatch] = []
        drain = self._drain_task
        if drain is not None and not drain.done() and drain is not asyncio.current_task():
            batches.extend(await asyncio.shield(drain))
        batches.extend(await self._dispatch_all())
        return batches

    async def _dispatch_all(self) -> list[ProcessingBatch]:
        batches: list[ProcessingBatch] = []
        tasks: list[asyncio.Task] = []
        while True:
            batch = self._create_batch()
            if batch is None:
                break
            batches.append(batch)
            self._logger.info(
                "batch.created",
                batch_id=batch.batch_id,
                findings=len(batch.findings),
                objects=len(batch.object_refs),
            )
            await self.events.emit(BATCH_CREATED, batch.snapshot())
            tasks.append(asyncio.create_task(self._run(batch)))
            if self.queue_depth and self.creation_delay > 0:
                # pacing between dispatches to protect the ingestion endpoint
                await asyncio.sleep(self.creation_delay)

        if tasks:
            await asyncio.gather(*tasks)
        return batches

    async def _run(self, batch: ProcessingBatch) -> None:
        started = time.perf_counter()
        batch.touch(BatchStatus.PROCESSING)
        try:
            await self._handler(batch)
        except Exception as exc:  # noqa: BLE001 - recorded on the batch
            await self._fail(batch, exc, started)
        else:
            await self._complete(batch, started)

    async def _complete(self, batch: ProcessingBatch, started: float) -> None:
        batch.touch(BatchStatus.COMPLETED)
        duration_s = time.perf_counter() - started
        self._retire(batch, duration_s)
        self._logger.info(
            "batch.completed",
            batch_id=batch.batch_id,
            processed=batch.processed_count,
            failed=batch.failed_count,
            duplicates=batch.duplicates,
            duration_ms=round(duration_s * 1000, 3),
        )
        await self.events.emit(BATCH_COMPLETED, batch.snapshot())

    async def _fail(self, batch: ProcessingBatch, exc: Exception, started: float) -> None:
        batch.error = ProcessingError(
            code="BATCH_PROCESSING_ERROR",
            message=str(exc),
            details={
                "batchId": batch.batch_id,
                "findingsCount": len(batch.findings),
                "objectsCount": len(batch.object_refs),
                "cause": type(exc).__name__,
            },
        )
        # charge everything not already accounted for to the failed side
        batch.failed_count = max(batch.failed_count, batch.expected_count - batch.processed_count)
        batch.touch(BatchStatus.FAILED)
        duration_s = time.perf_counter() - started
        self._retire(batch, duration_s)
        self._logger.error(
            "batch.failed",
            batch_id=batch.batch_id,
            processed=batch.processed_count,
            failed=batch.failed_count,
            error=str(exc),
        )
        await self.events.emit(BATCH_FAILED, batch.snapshot())

    def _retire(self, batch: ProcessingBatch, duration_s: float) -> None:
        self._active.pop(batch.batch_id, None)
        self._archive.append(batch)
        stats = self._stats
        if batch.status is BatchStatus.COMPLETED:
            stats.batches_completed += 1
        else:
            stats.batches_failed += 1
        stats.total_processed += batch.processed_count
        stats.total_failed += batch.failed_count
        stats.total_duration_ms += duration_s * 1000
        self.context.metrics.observe_batch(status=batch.status.value, duration_s=duration_s)

    # -- inspection --------------------------------------------------------

    @property
    def queue_depth(self) -> int:
        return len(self._object_queue) + len(self._finding_queue)

    def queue_status(self) -> dict[str, int]:
        return {
            "objects": len(self._object_queue),
            "findings": len(self._finding_queue),
            "active_batches": len(self._active),
        }

    def active_batches(self) -> list[ProcessingBatch]:
        return list(self._active.values())

    def completed_batches(self) -> list[ProcessingBatch]:
        return list(self._archive)

    def stats(self) -> dict[str, Any]:
        return {**self._stats.to_dict(), "queue_size": self.queue_depth}

    def clear(self) -> None:
        self._object_queue.clear()
        self._finding_queue.clear()
        self._active.clear()
        self._archive.clear()
        self._stats = BatchStats()
        self.context.metrics.queue_depth.set(0)
