"""Pipeline orchestrator configuration loaded from environment variables.

The whole structure is frozen and handed to the orchestrator at
construction; nothing below reads the environment after startup.  Stage
settings nest with ``__``, e.g.::

    PIPELINE_STAGES__GUARDRAIL__ENDPOINT_URL=http://guardrail:8000/v1/invoke
    PIPELINE_STAGES__INGEST__RECORD_STORE_ID=clinical-records-prod
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from carebridge_framework import KafkaConfig, RetryConfig, StorageConfig
from carebridge_schema import StageName


class StageConfig(BaseModel):
    """Settings for one stage handler."""

    model_config = {"frozen": True}

    endpoint_url: str = Field(default="", description="URL the stage request is POSTed to")
    timeout_seconds: float = Field(default=30.0, gt=0, description="Per-invocation timeout")
    max_attempts: int = Field(default=3, ge=1, description="Retry budget for TransientError")
    params: dict[str, Any] = Field(
        default_factory=dict,
        description="Opaque settings forwarded to the handler as stage_config",
    )

    def handler_config(self) -> dict[str, Any]:
        return dict(self.params)


class IngestStageConfig(StageConfig):
    record_store_id: str = Field(
        default="clinical-records",
        description="Identifier of the structured clinical record store",
    )

    def handler_config(self) -> dict[str, Any]:
        return {**self.params, "record_store_id": self.record_store_id}


class StagesConfig(BaseModel):
    model_config = {"frozen": True}

    router: StageConfig = Field(default_factory=StageConfig)
    splitter: StageConfig = Field(default_factory=StageConfig)
    guardrail: StageConfig = Field(default_factory=StageConfig)
    ingest: IngestStageConfig = Field(default_factory=IngestStageConfig)

    def for_stage(self, stage: StageName) -> StageConfig:
        return getattr(self, stage.value)


class PipelineConfig(BaseSettings):
    """Top-level orchestrator configuration."""

    model_config = {
        "env_prefix": "PIPELINE_",
        "env_nested_delimiter": "__",
        "frozen": True,
    }

    consumer_group: str = Field(
        default="pipeline-orchestrator",
        description="Kafka consumer group ID for storage notifications",
    )
    health_port: int = Field(default=8092, description="Port for K8s health probe endpoints")
    database_url: str = Field(
        default="sqlite+aiosqlite:///carebridge-executions.db",
        description="Async SQLAlchemy URL of the execution store",
    )
    dedup_window_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="Window in which repeated (document_key, hash) notifications collapse",
    )
    max_concurrent_executions: int = Field(
        default=32,
        ge=1,
        description="Executions driven at once by this worker",
    )
    retention_days: float = Field(
        default=30.0,
        gt=0,
        description="How long terminal executions are kept",
    )
    retention_sweep_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="Interval between retention sweeps",
    )
    stages: StagesConfig = Field(default_factory=StagesConfig)
    kafka: KafkaConfig = Field(default_factory=KafkaConfig)
    retry: RetryConfig = Field(
        default_factory=RetryConfig,
        description="Backoff shape for stage retries and store writes",
    )
    storage: StorageConfig = Field(default_factory=StorageConfig)
