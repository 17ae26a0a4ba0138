"""HTTP transport: the long-running worker with its health surface."""

from __future__ import annotations

import os

import uvicorn

from sentinel_bridge.main import create_app
from sentinel_bridge.settings import get_settings

settings = get_settings()
app = create_app(settings)


if __name__ == "__main__":  # pragma: no cover - manual run helper
    host = os.getenv("HOST", "0.0.0.0")
    reload = os.getenv("DEV_RELOAD", "false").lower() in {"1", "true", "yes"}
    uvicorn.run(
        "transports.http_fastapi_sync:app",
        host=host,
        port=settings.health_check_port,
        reload=reload,
    )
