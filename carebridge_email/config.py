"""Email intake and extraction configuration loaded from environment variables."""

from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from carebridge_framework import KafkaConfig, RetryConfig, StorageConfig


class IntakeConfig(BaseSettings):
    """Email Intake Adapter: validate recipient → raw-email zone → extraction topic."""

    model_config = {"env_prefix": "INTAKE_"}

    recipients: list[str] = Field(
        description="Addresses this deployment accepts mail for (JSON list)",
    )
    api_port: int = Field(default=8090, description="Port for the receipt API and probes")
    kafka: KafkaConfig = Field(default_factory=KafkaConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @field_validator("recipients")
    @classmethod
    def _normalize_recipients(cls, value: list[str]) -> list[str]:
        cleaned = [addr.strip().lower() for addr in value if addr.strip()]
        if not cleaned:
            raise ValueError("at least one recipient address is required")
        return cleaned


class ExtractorConfig(BaseSettings):
    """MIME Extraction Stage: extraction topic → parse → triggering zone."""

    model_config = {"env_prefix": "EXTRACTOR_"}

    consumer_group: str = Field(
        default="email-extractor",
        description="Kafka consumer group ID",
    )
    health_port: int = Field(
        default=8091,
        description="Port for K8s health probe endpoints",
    )
    include_body_text: bool = Field(
        default=True,
        description="Emit the plain-text body as a document when it has content",
    )
    email_subpath: str = Field(
        default="email",
        description="Sub-path of the triggering zone for extracted documents",
    )
    kafka: KafkaConfig = Field(default_factory=KafkaConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
