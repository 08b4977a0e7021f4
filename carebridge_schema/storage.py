"""Storage substrate models — zones, change notifications, document objects."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

UNZONED = "unzoned"


class EventType(str, Enum):
    """Kind of change reported by the object store."""

    OBJECT_CREATED = "ObjectCreated"
    OBJECT_REMOVED = "ObjectRemoved"
    OTHER = "Other"


class Provenance(str, Enum):
    """How a document object entered the triggering zone."""

    UPLOADED = "uploaded"
    EMAIL_EXTRACTED = "email-extracted"


class Zone(BaseModel):
    """A logical partition of the object store with a trigger policy.

    Zones are non-triggering unless explicitly marked.
    """

    model_config = {"frozen": True}

    name: str = Field(min_length=1, description="Symbolic zone name (e.g. incoming)")
    prefix: str = Field(min_length=1, description="Key prefix in the bucket, ending in '/'")
    triggers_pipeline: bool = Field(
        default=False,
        description="Whether ObjectCreated events in this zone start a pipeline run",
    )

    def contains(self, key: str) -> bool:
        return key.startswith(self.prefix)


class StorageNotification(BaseModel):
    """A typed storage-change notification."""

    zone: str = Field(description="Name of the zone the key belongs to")
    event_type: EventType = Field(description="Kind of change")
    document_key: str = Field(description="Full object key within the bucket")
    content_type: str | None = Field(default=None, description="MIME type, if reported")
    size: int = Field(default=0, ge=0, description="Object size in bytes")
    hash: str = Field(default="", description="Content hash (eTag or sha256)")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the change happened (UTC)",
    )


class DocumentObject(BaseModel):
    """An immutable object written to the storage substrate."""

    key: str = Field(description="Zone-qualified object key")
    zone: str = Field(description="Zone name")
    content_type: str = Field(description="MIME type")
    size: int = Field(ge=0, description="Size in bytes")
    content_hash: str = Field(description="sha256 hex digest of the content")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="Write timestamp (UTC)",
    )
    provenance: Provenance = Field(description="uploaded or email-extracted")
    source_message_id: str | None = Field(
        default=None,
        description="Message-ID of the originating email (email-extracted only)",
    )
    part_index: int | None = Field(
        default=None,
        description="Index of the MIME part this object was extracted from",
    )


class AccessGrant(BaseModel):
    """A time-bounded, single-object write credential."""

    object_key: str = Field(description="The only key this grant can write")
    url: str = Field(description="Presigned PUT URL")
    expiry_timestamp: datetime = Field(description="When the URL stops working (UTC)")


class GrantRequest(BaseModel):
    object_key: str = Field(min_length=1, description="Key the client intends to create")
    content_type: str | None = Field(default=None, description="Content-Type the upload will carry")
