"""AWS Lambda adapter: S3 notifications, health checks and manual runs."""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Dict

import structlog

from sentinel_bridge.errors import BridgeError
from sentinel_bridge.main import configure_logging
from sentinel_bridge.models import StorageObjectRef, format_timestamp, utcnow
from sentinel_bridge.pipeline import FindingsProcessor, ProcessingResult, build_processor
from sentinel_bridge.settings import get_settings
from sentinel_bridge.storage import refs_from_s3_event

# stop starting new objects when less than this much execution time is left
REMAINING_TIME_BUFFER_MS = 30_000
EXPORT_SUFFIX = ".jsonl.gz"
EXPORT_MARKER = "GuardDuty"

logger = structlog.get_logger("sentinel_bridge.lambda")

# reused across warm invocations of the same container
_processor: FindingsProcessor | None = None
_loop: asyncio.AbstractEventLoop | None = None


def _run(coro):
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
    return _loop.run_until_complete(coro)


async def _get_processor() -> FindingsProcessor:
    global _processor
    if _processor is None:
        settings = get_settings()
        configure_logging(settings.log_level)
        processor = build_processor(settings)
        await processor.initialize()
        _processor = processor
    return _processor


def _json_response(status_code: int, body: dict[str, Any]) -> Dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps(body, default=str),
    }


async def process_s3_event(event: Dict[str, Any], context: Any, processor: FindingsProcessor) -> dict[str, Any]:
    """Process notified objects one at a time while enough time remains."""
    refs = refs_from_s3_event(event)
    result = ProcessingResult()
    processed_records = 0
    stopped_early = False

    for ref in refs:
        remaining = context.get_remaining_time_in_millis()
        if remaining < REMAINING_TIME_BUFFER_MS:
            logger.warning(
                "lambda.time_exhausted",
                request_id=getattr(context, "aws_request_id", None),
                remaining_ms=remaining,
                processed_records=processed_records,
                total_records=len(refs),
            )
            stopped_early = True
            break
        if EXPORT_MARKER not in ref.key or not ref.key.endswith(EXPORT_SUFFIX):
            result.errors.append(f"{ref.bucket}/{ref.key}: not a finding export object")
            continue

        result.merge(await processor.process_specific_objects([ref]))
        processed_records += 1

    return {
        "processedRecords": processed_records,
        "totalRecords": len(refs),
        "stoppedEarly": stopped_early,
        **result.to_dict(),
    }


def handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    started = time.perf_counter()

    async def invoke() -> dict[str, Any]:
        processor = await _get_processor()
        logger.info(
            "lambda.invoked",
            request_id=getattr(context, "aws_request_id", None),
            records=len(event.get("Records") or []),
            remaining_ms=context.get_remaining_time_in_millis(),
        )
        return await process_s3_event(event, context, processor)

    try:
        summary = _run(invoke())
    except Exception as exc:
        logger.error(
            "lambda.failed",
            request_id=getattr(context, "aws_request_id", None),
            error=str(exc),
            duration_ms=round((time.perf_counter() - started) * 1000, 3),
        )
        raise

    duration_ms = round((time.perf_counter() - started) * 1000, 3)
    if summary["errors"]:
        logger.error("lambda.partial_failure", errors=summary["errors"])
    logger.info("lambda.completed", duration_ms=duration_ms, findings=summary["totalFindings"])
    return {
        "statusCode": 200,
        "body": json.dumps({"success": True, "duration": duration_ms, **summary}),
    }


def health_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    del event, context
    try:
        report = _run(_health())
    except BridgeError as exc:
        return _json_response(
            500,
            {"status": "unhealthy", "message": exc.message, "timestamp": format_timestamp(utcnow())},
        )
    return _json_response(report.http_status, report.to_dict())


async def _health():
    processor = await _get_processor()
    return await processor.get_health()


def manual_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Process ``objects`` or ``findings`` from the event, else the pending listing."""
    started = time.perf_counter()
    request_id = getattr(context, "aws_request_id", None)

    async def invoke() -> ProcessingResult:
        processor = await _get_processor()
        settings = processor.settings
        if isinstance(event.get("objects"), list):
            refs = [
                StorageObjectRef.from_dict({"bucket": settings.s3_bucket_name, **item})
                for item in event["objects"]
            ]
            return await processor.process_specific_objects(refs)
        if isinstance(event.get("findings"), list):
            return await processor.process_findings(event["findings"])
        return await processor.process_pending_objects()

    try:
        result = _run(invoke())
    except (BridgeError, KeyError, ValueError) as exc:
        logger.error("lambda.manual_failed", request_id=request_id, error=str(exc))
        return _json_response(
            500,
            {
                "success": False,
                "error": str(exc),
                "duration": round((time.perf_counter() - started) * 1000, 3),
                "requestId": request_id,
            },
        )

    return _json_response(
        200,
        {
            "success": True,
            "result": result.to_dict(),
            "duration": round((time.perf_counter() - started) * 1000, 3),
            "requestId": request_id,
        },
    )
