"""Access gateway configuration loaded from environment variables."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings

from carebridge_framework import StorageConfig


class GatewayConfig(BaseSettings):
    """Access Gateway: issue create-only upload grants for the triggering zone."""

    model_config = {"env_prefix": "GATEWAY_"}

    grant_ttl_seconds: int = Field(
        default=900,
        gt=0,
        le=7 * 24 * 3600,
        description="Lifetime of a presigned upload URL",
    )
    api_port: int = Field(default=8093, description="Port for the grant API and probes")
    storage: StorageConfig = Field(default_factory=StorageConfig)
