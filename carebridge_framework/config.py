"""Shared configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars,
which is the natural config mechanism in Kubernetes.  Zones are given as
a JSON list, e.g.::

    STORAGE_ZONES='[{"name": "incoming", "prefix": "incoming/", "triggers_pipeline": true}]'
"""

from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

from carebridge_schema import Zone

from .zones import ZoneRegistry


def _default_zones() -> list[Zone]:
    return [
        Zone(name="incoming", prefix="incoming/", triggers_pipeline=True),
        Zone(name="raw-email", prefix="raw-email/"),
        Zone(name="scratch", prefix="scratch/"),
        Zone(name="pipeline", prefix="pipeline/"),
        Zone(name="quarantine", prefix="quarantine/"),
    ]


class KafkaConfig(BaseSettings):
    """Kafka connection and topic settings."""

    model_config = {"env_prefix": "KAFKA_"}

    bootstrap_servers: str = Field(
        default="localhost:9092",
        description="Comma-separated Kafka bootstrap servers",
    )
    storage_events_topic: str = Field(
        default="storage-events",
        description="Topic carrying object-store change notifications",
    )
    extraction_topic: str = Field(
        default="email-extraction",
        description="Topic carrying extraction requests for raw emails",
    )
    alerts_topic: str = Field(
        default="operational-alerts",
        description="Topic for permanent failures surfaced to operators",
    )
    producer_acks: str = Field(
        default="all",
        description="Producer acknowledgement level",
    )
    producer_compression: str = Field(
        default="gzip",
        description="Compression codec for produced messages",
    )
    auto_offset_reset: str = Field(
        default="earliest",
        description="Where a new consumer group starts reading",
    )


class RetryConfig(BaseSettings):
    """Retry / backoff settings driven by Tenacity."""

    model_config = {"env_prefix": "RETRY_"}

    max_attempts: int = Field(default=5, ge=1, description="Maximum attempts per operation")
    initial_wait_seconds: float = Field(
        default=1.0,
        description="Initial backoff wait in seconds",
    )
    max_wait_seconds: float = Field(
        default=60.0,
        description="Maximum backoff wait in seconds",
    )
    multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")


class StorageConfig(BaseSettings):
    """Object store bucket and zone layout."""

    model_config = {"env_prefix": "STORAGE_"}

    bucket: str = Field(description="S3 bucket holding every zone")
    region: str = Field(default="us-east-1", description="AWS region")
    endpoint_url: str | None = Field(
        default=None,
        description="Custom S3 endpoint URL (e.g. for MinIO)",
    )
    zones: list[Zone] = Field(
        default_factory=_default_zones,
        description="Zone layout; exactly one zone may trigger the pipeline",
    )
    trigger_key_pattern: str = Field(
        default=r"incoming/.*[^/]",
        description="Regex a key must fully match to start a pipeline run",
    )
    raw_email_zone: str = Field(default="raw-email", description="Zone for raw MIME blobs")
    pipeline_zone: str = Field(default="pipeline", description="Zone for stage outputs")
    quarantine_zone: str = Field(default="quarantine", description="Zone for quarantine records")

    @model_validator(mode="after")
    def _validate_zones(self) -> StorageConfig:
        registry = self.zone_registry()
        for name in (self.raw_email_zone, self.pipeline_zone, self.quarantine_zone):
            if registry.require(name).triggers_pipeline:
                raise ValueError(f"zone {name} must not trigger the pipeline")
        return self

    def zone_registry(self) -> ZoneRegistry:
        return ZoneRegistry(self.zones, self.trigger_key_pattern)
