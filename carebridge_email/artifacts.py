"""Raw email artifact layout in the raw-email zone.

Every message id maps to one directory::

    <raw-email prefix><message key>/message.eml     raw MIME blob
    <raw-email prefix><message key>/artifact.json   RawEmailArtifact record

The zone never triggers the pipeline, so writing either file is inert.
"""

from __future__ import annotations

import structlog

from carebridge_framework import ObjectStore
from carebridge_schema import RawEmailArtifact

from .envelope import message_key

logger = structlog.get_logger()


class ArtifactStore:
    """Read and write raw email artifacts under deterministic keys."""

    def __init__(self, store: ObjectStore, zone_name: str) -> None:
        self._store = store
        self._zone_name = zone_name

    def blob_key(self, message_id: str) -> str:
        return self._store.zone_key(self._zone_name, f"{message_key(message_id)}/message.eml")

    def record_key(self, message_id: str) -> str:
        return self._store.zone_key(self._zone_name, f"{message_key(message_id)}/artifact.json")

    async def load(self, message_id: str) -> RawEmailArtifact | None:
        body = await self._store.get_bytes_if_exists(self._store.uri(self.record_key(message_id)))
        if body is None:
            return None
        return RawEmailArtifact.model_validate_json(body)

    async def save(self, artifact: RawEmailArtifact) -> str:
        uri = await self._store.put_json(self.record_key(artifact.message_id), artifact)
        logger.debug(
            "artifact_saved",
            message_id=artifact.message_id,
            status=artifact.status.value,
        )
        return uri
