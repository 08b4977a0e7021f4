"""HTTP stage handler — POST the stage request to a remote service.

Transport failures, timeouts, HTTP 429 and 5xx are reported as
``TransientError``; any other 4xx, or a body that is not a valid stage
response, as ``PermanentError``.
"""

from __future__ import annotations

import httpx
import structlog
from pydantic import ValidationError

from carebridge_framework import ConfigurationError
from carebridge_schema import StageName, StageRequest, StageResponse

from ..config import StageConfig, StagesConfig
from .base import StageHandler
from .registry import StageHandlerRegistry

logger = structlog.get_logger()


class HttpStageHandler(StageHandler):
    def __init__(
        self,
        stage: StageName,
        config: StageConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not config.endpoint_url:
            raise ConfigurationError(f"stage {stage.value!r} has no endpoint_url")
        self._stage = stage
        self._config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def stage(self) -> StageName:
        return self._stage

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            timeout=self._config.timeout_seconds,
            transport=self._transport,
        )

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def invoke(self, request: StageRequest) -> StageResponse:
        assert self._client is not None, "HTTP client not started"
        try:
            response = await self._client.post(
                self._config.endpoint_url,
                content=request.model_dump_json(),
                headers={"Content-Type": "application/json"},
            )
        except httpx.TimeoutException as exc:
            return StageResponse.transient(f"{self._stage.value} timed out: {exc!r}")
        except httpx.TransportError as exc:
            return StageResponse.transient(f"{self._stage.value} unreachable: {exc!r}")

        code = response.status_code
        if code == 429 or code >= 500:
            return StageResponse.transient(f"{self._stage.value} returned HTTP {code}")
        if code >= 400:
            return StageResponse.permanent(f"{self._stage.value} returned HTTP {code}")

        try:
            return StageResponse.model_validate_json(response.content)
        except ValidationError as exc:
            logger.warning(
                "stage_response_invalid",
                stage=self._stage.value,
                errors=exc.error_count(),
            )
            return StageResponse.permanent(f"{self._stage.value} returned an invalid response")


def create_http_handlers(
    stages: StagesConfig,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> StageHandlerRegistry:
    """Build a registry with one :class:`HttpStageHandler` per stage."""
    registry = StageHandlerRegistry()
    for stage in StageName:
        registry.register(HttpStageHandler(stage, stages.for_stage(stage), transport=transport))
    registry.validate_complete()
    return registry
