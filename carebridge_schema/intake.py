"""Email intake models shared by the intake adapter and the extraction stage."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


class ExtractionStatus(str, Enum):
    PENDING = "pending"
    EXTRACTED = "extracted"
    FAILED = "failed"


class InboundEmail(BaseModel):
    """Email receipt contract: a raw MIME blob has become available."""

    recipient: str = Field(description="Envelope recipient the message was delivered to")
    raw_blob_ref: str = Field(description="s3:// URI of the raw MIME blob")
    message_id: str = Field(min_length=1, description="RFC 5322 Message-ID")


class IntakeAck(BaseModel):
    """Acknowledgement returned once the raw artifact is durable."""

    message_id: str
    raw_blob_ref: str = Field(description="s3:// URI of the artifact in the raw-email zone")
    accepted_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ExtractionRequest(BaseModel):
    """Published by the intake adapter, consumed by the extraction stage."""

    message_id: str
    raw_blob_ref: str


class RawEmailArtifact(BaseModel):
    """Lifecycle record of one raw email, stored beside the blob."""

    message_id: str = Field(description="RFC 5322 Message-ID")
    recipient: str = Field(description="Validated recipient address")
    blob_ref: str = Field(description="s3:// URI of the raw MIME blob")
    status: ExtractionStatus = Field(default=ExtractionStatus.PENDING)
    received_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    error: str | None = Field(default=None, description="Why extraction failed")
    document_keys: list[str] = Field(
        default_factory=list,
        description="Keys of the document objects extraction produced",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in (ExtractionStatus.EXTRACTED, ExtractionStatus.FAILED)
