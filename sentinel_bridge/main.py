"""FastAPI application: health surface and processing triggers."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Annotated, Any, Literal

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from sentinel_bridge.models import StorageObjectRef
from sentinel_bridge.pipeline import FindingsProcessor, build_processor
from sentinel_bridge.settings import Settings, get_settings
from sentinel_bridge.storage import refs_from_s3_event

SettingsDep = Annotated[Settings, Depends(get_settings)]

_security_logger = structlog.get_logger("security")

_LIMITED_PATHS = {"/process", "/webhook/s3"}


def get_processor(request: Request) -> FindingsProcessor:
    processor = getattr(request.app.state, "processor", None)
    if processor is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="not initialized")
    return processor


ProcessorDep = Annotated[FindingsProcessor, Depends(get_processor)]


async def verify_api_key(
    request: Request,
    settings: SettingsDep,
    x_api_key: str | None = Header(default=None),
) -> None:
    """Simple API key gate for processing endpoints."""
    if not settings.require_api_key:
        return
    if not settings.api_key:
        _security_logger.error(
            "auth_config_error",
            path=str(request.url.path),
            reason="api_key_not_configured",
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="API key not configured",
        )
    if x_api_key != settings.api_key.get_secret_value():
        _security_logger.warning(
            "auth_failure",
            path=str(request.url.path),
            reason="invalid_api_key",
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="unauthorized",
        )


def configure_logging(log_level: str) -> None:
    numeric_level = logging.getLevelName(log_level.upper())
    if isinstance(numeric_level, str):
        numeric_level = logging.INFO
    logging.basicConfig(level=numeric_level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=True,
    )


class ObjectRefModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    key: str
    bucket: str | None = None
    size: int = 0
    etag: str = ""
    kms_key_id: str | None = Field(default=None, alias="kmsKeyId")


class ProcessRequestModel(BaseModel):
    mode: Literal["auto", "specific", "findings"] = "auto"
    objects: list[ObjectRefModel] = Field(default_factory=list)
    findings: list[dict[str, Any]] = Field(default_factory=list)


class ProcessResponseModel(BaseModel):
    processedBatches: int
    failedBatches: int
    totalFindings: int
    ingested: int
    failedCount: int
    duplicates: int
    errors: list[str]
    durationMs: float
    batchIds: list[str]


def create_app(settings: Settings | None = None, processor: FindingsProcessor | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    logger = structlog.get_logger("sentinel_bridge.api")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active = app.state.processor or build_processor(settings)
        # an initialization failure propagates and aborts startup
        await active.initialize()
        app.state.processor = active
        logger.info("api.started", version=settings.service_version, port=settings.health_check_port)
        try:
            yield
        finally:
            await active.close()
            logger.info("api.stopped")

    app = FastAPI(title="Sentinel Bridge", version=settings.service_version, lifespan=lifespan)
    app.state.processor = processor
    app.dependency_overrides[get_settings] = lambda: settings

    @app.middleware("http")
    async def enforce_limits(request: Request, call_next):
        if request.url.path in _LIMITED_PATHS:
            limit = settings.max_request_size_bytes
            content_length = request.headers.get("content-length")
            if content_length:
                try:
                    size = int(content_length)
                    if size > limit:
                        _security_logger.warning(
                            "request_rejected",
                            path=str(request.url.path),
                            reason="body_too_large",
                            size=size,
                            limit=limit,
                        )
                        return Response(
                            content="request too large",
                            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                            media_type="text/plain",
                        )
                except ValueError:
                    pass  # Ignore malformed header and fall through
        return await call_next(request)

    @app.get("/health")
    async def health(processor: ProcessorDep) -> JSONResponse:
        report = await processor.get_health()
        return JSONResponse(content=report.to_dict(), status_code=report.http_status)

    @app.get("/health/live")
    async def live() -> dict[str, str]:
        return {"status": "alive"}

    @app.get("/health/ready")
    async def ready(processor: ProcessorDep) -> JSONResponse:
        report = await processor.get_health()
        is_ready = processor.initialized and report.ready
        return JSONResponse(
            content={
                "status": "ready" if is_ready else "not-ready",
                "components": [
                    {"name": c.name, "status": c.status, "ready": c.status != "unhealthy"}
                    for c in report.components
                ],
            },
            status_code=200 if is_ready else 503,
        )

    @app.get("/metrics")
    async def metrics_endpoint(settings: SettingsDep, processor: ProcessorDep) -> Response:
        if not settings.metrics_enabled:
            raise HTTPException(status_code=404, detail="metrics disabled")
        payload, content_type = processor.context.metrics.render()
        return Response(content=payload, media_type=content_type)

    @app.post("/process", response_model=ProcessResponseModel)
    async def process_endpoint(
        body: ProcessRequestModel,
        settings: SettingsDep,
        processor: ProcessorDep,
        _: None = Depends(verify_api_key),
    ) -> ProcessResponseModel:
        if body.mode == "auto":
            result = await processor.process_pending_objects()
        elif body.mode == "specific":
            if not body.objects:
                raise HTTPException(status_code=422, detail="objects are required for mode 'specific'")
            refs = [
                StorageObjectRef(
                    bucket=ref.bucket or settings.s3_bucket_name or "",
                    key=ref.key,
                    size=ref.size,
                    etag=ref.etag,
                    kms_key_id=ref.kms_key_id,
                )
                for ref in body.objects
            ]
            result = await processor.process_specific_objects(refs)
        else:
            if not body.findings:
                raise HTTPException(status_code=422, detail="findings are required for mode 'findings'")
            result = await processor.process_findings(body.findings)
        return ProcessResponseModel(**result.to_dict())

    @app.post("/webhook/s3", response_model=ProcessResponseModel)
    async def s3_webhook(
        event: dict[str, Any],
        processor: ProcessorDep,
        _: None = Depends(verify_api_key),
    ) -> ProcessResponseModel:
        refs = refs_from_s3_event(event)
        logger.info("api.webhook_received", objects=len(refs))
        result = await processor.process_specific_objects(refs)
        return ProcessResponseModel(**result.to_dict())

    @app.get("/batches")
    async def batches(processor: ProcessorDep) -> dict[str, Any]:
        engine = processor.engine
        return {
            "active": [batch.snapshot() for batch in engine.active_batches()],
            "completed": [batch.snapshot() for batch in engine.completed_batches()],
            "queue": engine.queue_status(),
            "stats": engine.stats(),
        }

    @app.get("/dead-letters")
    async def dead_letters(
        processor: ProcessorDep,
        _: None = Depends(verify_api_key),
        limit: int = Query(default=10, ge=1, le=1000),
    ) -> dict[str, Any]:
        if processor.dead_letter is None:
            raise HTTPException(status_code=404, detail="dead-letter sink not configured")
        items = await processor.dead_letter.receive(limit)
        return {"items": [item.to_dict() for item in items], "count": len(items)}

    @app.delete("/dead-letters/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_dead_letter(
        item_id: str,
        processor: ProcessorDep,
        _: None = Depends(verify_api_key),
    ) -> Response:
        if processor.dead_letter is None or not await processor.dead_letter.delete(item_id):
            raise HTTPException(status_code=404, detail="dead-letter item not found")
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return app
