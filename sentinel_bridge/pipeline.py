"""Pipeline orchestration: object listing through ingestion."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from functools import partial
from typing import Any

import boto3
import structlog

from sentinel_bridge.batching import BatchEngine
from sentinel_bridge.context import PipelineContext
from sentinel_bridge.dead_letter import DeadLetterSink, InMemoryDeadLetterQueue, SqsDeadLetterQueue
from sentinel_bridge.dedup import DedupConfig, Deduplicator
from sentinel_bridge.errors import BridgeError, FindingValidationError, InitializationError
from sentinel_bridge.health import (
    ComponentHealth,
    HealthReport,
    overall_status,
    probe,
    queue_health,
)
from sentinel_bridge.metrics import PipelineMetrics
from sentinel_bridge.models import BatchStatus, Finding, ProcessingBatch, StorageObjectRef
from sentinel_bridge.parser import JSONLParser
from sentinel_bridge.retry import RetryHandler, RetryPolicy
from sentinel_bridge.settings import Settings
from sentinel_bridge.siem import BaseIngestionConnector, IngestionConfig, LogsIngestionConnector
from sentinel_bridge.storage import ObjectStore
from sentinel_bridge.transform import Transformer


@dataclass(slots=True)
class ProcessingResult:
    processed_batches: int = 0
    failed_batches: int = 0
    total_findings: int = 0
    ingested: int = 0
    failed_count: int = 0
    duplicates: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: float = 0.0
    batch_ids: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed_batches == 0 and self.failed_count == 0 and not self.errors

    def add_batch(self, batch: ProcessingBatch) -> None:
        if batch.status is BatchStatus.COMPLETED:
            self.processed_batches += 1
        else:
            self.failed_batches += 1
            if batch.error is not None:
                self.errors.append(f"{batch.batch_id}: {batch.error.message}")
        self.batch_ids.append(batch.batch_id)
        self.total_findings += batch.processed_count
        self.ingested += batch.processed_count - batch.duplicates
        self.failed_count += batch.failed_count
        self.duplicates += batch.duplicates
        self.errors.extend(batch.errors)

    def merge(self, other: ProcessingResult) -> None:
        self.processed_batches += other.processed_batches
        self.failed_batches += other.failed_batches
        self.total_findings += other.total_findings
        self.ingested += other.ingested
        self.failed_count += other.failed_count
        self.duplicates += other.duplicates
        self.errors.extend(other.errors)
        self.duration_ms += other.duration_ms
        self.batch_ids.extend(other.batch_ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processedBatches": self.processed_batches,
            "failedBatches": self.failed_batches,
            "totalFindings": self.total_findings,
            "ingested": self.ingested,
            "failedCount": self.failed_count,
            "duplicates": self.duplicates,
            "errors": list(self.errors),
            "durationMs": self.duration_ms,
            "batchIds": list(self.batch_ids),
        }


def _chunks(records: list[Any], size: int):
    for start in range(0, len(records), size):
        yield records[start : start + size]


class FindingsProcessor:
    """
    Ties storage, parsing, dedup, transform and ingestion to the Batch Engine.

    No cursor is persisted: each call handles whatever it is given or whatever
    the listing returns at that moment.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        object_store: ObjectStore,
        connector: BaseIngestionConnector,
        context: PipelineContext | None = None,
        dead_letter: DeadLetterSink | None = None,
        deduplicator: Deduplicator | None = None,
        transformer: Transformer | None = None,
        parser: JSONLParser | None = None,
    ) -> None:
        self.settings = settings
        self.context = context or PipelineContext()
        self.object_store = object_store
        self.connector = connector
        self.dead_letter = dead_letter
        self.parser = parser or JSONLParser()
        self.transformer = transformer or Transformer(normalize=settings.enable_normalization)
        self.deduplicator = deduplicator or Deduplicator(
            DedupConfig(
                enabled=settings.dedup_enabled,
                strategy=settings.dedup_strategy,
                cache_size=settings.dedup_cache_size,
                time_window_minutes=settings.dedup_time_window_minutes,
            ),
            context=self.context,
        )
        self.ingest_retry = RetryHandler(
            RetryPolicy.for_ingestion(
                max_retries=settings.max_retries,
                initial_backoff_ms=settings.retry_backoff_ms,
                max_backoff_ms=settings.max_backoff_ms,
            ),
            dead_letter=dead_letter,
            context=self.context,
            operation="ingestion",
        )
        self.engine = BatchEngine(
            self._handle_batch,
            batch_size=settings.batch_size,
            context=self.context,
            auto_process=settings.batch_auto_process,
            creation_delay=settings.batch_creation_delay_ms / 1000,
            completed_retention=settings.completed_batch_retention,
        )
        self.initialized = False
        self._started = time.monotonic()
        self._logger = self.context.bind("processor")

    async def initialize(self) -> None:
        """Verify both dependencies before serving; safe to call repeatedly."""
        if self.initialized:
            return
        bucket = self.settings.s3_bucket_name or ""
        try:
            bucket_ok = await self.object_store.check_access(bucket)
        except BridgeError as exc:
            raise InitializationError(f"Object storage check failed: {exc.message}") from exc
        if not bucket_ok:
            raise InitializationError(f"Access denied to bucket {bucket}")
        if not await self.connector.test_connection():
            raise InitializationError("Log ingestion endpoint is not reachable")

        self.initialized = True
        self._logger.info(
            "processor.initialized",
            bucket=bucket,
            batch_size=self.settings.batch_size,
            normalization=self.settings.enable_normalization,
            dedup_strategy=self.settings.dedup_strategy.value,
        )

    # -- entry points ------------------------------------------------------

    async def process_pending_objects(self) -> ProcessingResult:
        started = time.perf_counter()
        bucket = self.settings.s3_bucket_name or ""
        try:
            refs = await self.object_store.list_objects(
                bucket,
                self.settings.s3_bucket_prefix,
                self.settings.max_objects_per_run,
            )
        except BridgeError as exc:
            self._logger.error("processor.listing_failed", bucket=bucket, error=exc.message)
            result = ProcessingResult(errors=[f"Failed to list objects in {bucket}: {exc.message}"])
            result.duration_ms = self._elapsed_ms(started)
            return result

        self._logger.info("processor.listed", bucket=bucket, objects=len(refs))
        return await self.process_specific_objects(refs, started=started)

    async def process_specific_objects(
        self,
        refs: list[StorageObjectRef],
        *,
        started: float | None = None,
    ) -> ProcessingResult:
        started = started if started is not None else time.perf_counter()
        if not refs:
            return ProcessingResult(duration_ms=self._elapsed_ms(started))
        self.engine.add_objects(list(refs))
        return await self._collect(started)

    async def process_findings(self, findings: list[Finding | dict[str, Any]]) -> ProcessingResult:
        started = time.perf_counter()
        accepted: list[Finding] = []
        rejected: list[str] = []
        for index, item in enumerate(findings):
            if isinstance(item, Finding):
                accepted.append(item)
                continue
            try:
                accepted.append(Finding.from_dict(item))
            except FindingValidationError as exc:
                rejected.append(f"finding[{index}]: {exc.message}")

        if accepted:
            self.engine.add_findings(accepted)
            result = await self._collect(started)
        else:
            result = ProcessingResult(duration_ms=self._elapsed_ms(started))
        result.failed_count += len(rejected)
        result.errors.extend(rejected)
        return result

    async def _collect(self, started: float) -> ProcessingResult:
        result = ProcessingResult()
        for batch in await self.engine.process_pending():
            result.add_batch(batch)
        result.duration_ms = self._elapsed_ms(started)
        self._logger.info(
            "processor.run_complete",
            batches=result.processed_batches,
            failed_batches=result.failed_batches,
            findings=result.total_findings,
            failed=result.failed_count,
            duplicates=result.duplicates,
            duration_ms=result.duration_ms,
        )
        return result

    # -- batch handler -----------------------------------------------------

    async def _handle_batch(self, batch: ProcessingBatch) -> None:
        metrics = self.context.metrics
        for ref in batch.object_refs:
            try:
                data = await self.object_store.fetch(ref)
                parsed = self.parser.parse_bytes(data)
            except Exception as exc:  # noqa: BLE001 - an object failure stays with that object
                message = exc.message if isinstance(exc, BridgeError) else str(exc)
                code = exc.code if isinstance(exc, BridgeError) else type(exc).__name__
                batch.failed_objects += 1
                batch.failed_count += 1
                batch.errors.append(f"{ref.key}: {message}")
                metrics.objects.labels(outcome="failed").inc()
                metrics.findings_failed.labels(stage="fetch").inc()
                self._logger.warning("processor.object_failed", key=ref.key, code=code, error=message)
                continue

            batch.resolved_objects += 1
            batch.resolved_findings.extend(parsed.findings)
            metrics.objects.labels(outcome="parsed").inc()
            if parsed.errors:
                metrics.parse_errors.inc(len(parsed.errors))
                batch.errors.extend(f"{ref.key}:{error.line_number}: {error.error}" for error in parsed.errors)
            self._logger.debug(
                "processor.object_parsed",
                key=ref.key,
                findings=parsed.valid_findings,
                invalid_lines=parsed.invalid_lines,
            )

        findings = batch.findings + batch.resolved_findings
        if not findings:
            return

        deduped = self.deduplicator.process_batch(findings)
        batch.duplicates = len(deduped.duplicates)
        batch.processed_count += batch.duplicates

        transformed = self.transformer.transform(deduped.unique)
        if transformed.failed_count:
            batch.failed_count += transformed.failed_count
            batch.errors.extend(error.describe() for error in transformed.errors)
            metrics.findings_failed.labels(stage="transform").inc(transformed.failed_count)

        stream = self.connector.config.stream_name
        for chunk in _chunks(transformed.records, self.settings.batch_size):
            outcome = await self.ingest_retry.execute_with_dead_letter(
                partial(self.connector.submit, chunk, stream),
                chunk,
                description=f"{batch.batch_id}: {len(chunk)} records to {stream}",
            )
            batch.retry_count += outcome.attempts - 1
            if outcome.dead_lettered:
                batch.failed_count += len(chunk)
                batch.errors.append(
                    f"{batch.batch_id}: {len(chunk)} records dead-lettered ({outcome.dead_letter_id}): {outcome.error}"
                )
                metrics.findings_failed.labels(stage="ingestion").inc(len(chunk))
            else:
                batch.processed_count += len(chunk)
                metrics.findings_ingested.inc(len(chunk))

    # -- health ------------------------------------------------------------

    async def get_health(self) -> HealthReport:
        bucket = self.settings.s3_bucket_name or ""
        components: list[ComponentHealth] = [
            await probe(
                "ObjectStorage",
                partial(self.object_store.check_access, bucket, retry=False),
                failure_message=f"Cannot access bucket {bucket}",
            ),
            await probe(
                "LogsIngestion",
                self.connector.test_connection,
                failure_message="Log ingestion endpoint is not reachable",
            ),
            queue_health(
                "BatchEngine",
                self.engine.queue_depth,
                self.settings.queue_depth_threshold,
                **self.engine.queue_status(),
            ),
            ComponentHealth(
                name="Deduplication",
                status="healthy",
                message="Deduplication enabled" if self.settings.dedup_enabled else "Deduplication disabled",
                details=self.deduplicator.metrics(),
            ),
        ]
        return HealthReport(
            status=overall_status(components),
            components=components,
            uptime_s=time.monotonic() - self._started,
            version=self.settings.service_version,
        )

    async def close(self) -> None:
        await self.connector.disconnect()

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return round((time.perf_counter() - started) * 1000, 3)


def build_processor(settings: Settings, *, metrics: PipelineMetrics | None = None) -> FindingsProcessor:
    """Wire a processor against the real AWS and Azure clients."""

    context = PipelineContext(
        logger=structlog.get_logger("sentinel_bridge"),
        metrics=metrics or PipelineMetrics(),
    )
    object_store = ObjectStore(
        boto3.client("s3", region_name=settings.aws_region),
        boto3.client("kms", region_name=settings.aws_region),
        default_kms_key_id=settings.kms_key_arn,
        context=context,
    )
    dead_letter: DeadLetterSink
    if settings.dead_letter_queue_url:
        dead_letter = SqsDeadLetterQueue(
            settings.dead_letter_queue_url,
            boto3.client("sqs", region_name=settings.aws_region),
        )
    else:
        dead_letter = InMemoryDeadLetterQueue(settings.dead_letter_max_items)

    connector = LogsIngestionConnector(IngestionConfig.from_settings(settings), context=context)
    return FindingsProcessor(
        settings,
        object_store=object_store,
        connector=connector,
        context=context,
        dead_letter=dead_letter,
    )
