"""FastAPI application for the access gateway."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from carebridge_framework import GrantRefused, create_health_app
from carebridge_schema import AccessGrant, GrantRequest

if TYPE_CHECKING:
    from .gateway import AccessGateway


def create_gateway_app(gateway: AccessGateway) -> FastAPI:
    """Grant API plus ``/health`` and ``/ready`` probes."""
    app = FastAPI(title="access-gateway", docs_url=None, redoc_url=None)

    @app.exception_handler(GrantRefused)
    async def _grant_refused(request: Request, exc: GrantRefused) -> JSONResponse:
        return JSONResponse(
            {"detail": str(exc)},
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        )

    @app.post("/v1/grants", status_code=status.HTTP_201_CREATED)
    async def issue_grant(body: GrantRequest) -> AccessGrant:
        return await gateway.issue_grant(body.object_key, content_type=body.content_type)

    return create_health_app(
        "access-gateway",
        details=lambda: {
            "grants_issued": gateway.grants_issued,
            "grants_refused": gateway.grants_refused,
        },
        is_ready=lambda: gateway.is_ready,
        app=app,
    )
