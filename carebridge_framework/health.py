"""FastAPI health endpoints for Kubernetes liveness and readiness probes."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse


def create_health_app(
    service: str,
    *,
    details: Callable[[], dict[str, Any]],
    is_ready: Callable[[], bool],
    app: FastAPI | None = None,
) -> FastAPI:
    """Add ``/health`` and ``/ready`` routes to *app* (or a fresh app).

    *details* is called on every ``/health`` request and its dict is
    merged into the response; *is_ready* drives ``/ready``.
    """
    if app is None:
        app = FastAPI(title=f"{service} health", docs_url=None, redoc_url=None)
    started = time.monotonic()

    @app.get("/health")
    async def health() -> JSONResponse:
        return JSONResponse({
            "service": service,
            "uptime_seconds": time.monotonic() - started,
            **details(),
        })

    @app.get("/ready")
    async def ready() -> JSONResponse:
        ok = is_ready()
        return JSONResponse({"ready": ok}, status_code=200 if ok else 503)

    return app


async def serve_until(app: FastAPI, *, port: int, shutdown_event: asyncio.Event) -> None:
    """Serve *app* with uvicorn until *shutdown_event* is set."""
    config = uvicorn.Config(app, host="0.0.0.0", port=port, log_level="warning")
    server = uvicorn.Server(config)

    serve_task = asyncio.create_task(server.serve())
    await shutdown_event.wait()
    server.should_exit = True
    await serve_task
