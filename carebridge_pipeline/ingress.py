"""Ingress filter — decides which storage writes start a pipeline run.

Loop prevention is structural: only ``ObjectCreated`` events in the one
zone flagged ``triggers_pipeline`` whose key matches the trigger pattern
are accepted.  Raw-email, scratch, pipeline-internal and quarantine writes,
and any zone nobody marked, are ignored unconditionally.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from urllib.parse import unquote_plus

import structlog

from carebridge_framework import ZoneRegistry
from carebridge_schema import UNZONED, EventType, StorageNotification

logger = structlog.get_logger()


@dataclass(frozen=True)
class Accept:
    document_key: str
    notification: StorageNotification


@dataclass(frozen=True)
class Ignore:
    reason: str


Decision = Accept | Ignore


class IngressFilter:
    """Pure predicate over typed notifications; never touches storage."""

    def __init__(self, zones: ZoneRegistry) -> None:
        self._zones = zones

    def evaluate(self, notification: StorageNotification) -> Decision:
        if notification.event_type != EventType.OBJECT_CREATED:
            return Ignore("not_object_created")

        zone = self._zones.get(notification.zone)
        if zone is None:
            return Ignore("unknown_zone")
        if not zone.triggers_pipeline:
            return Ignore("non_triggering_zone")
        if not zone.contains(notification.document_key):
            return Ignore("key_outside_zone")
        if not self._zones.matches_trigger(notification.document_key):
            return Ignore("key_pattern_mismatch")

        return Accept(document_key=notification.document_key, notification=notification)


# ------------------------------------------------------------------
# S3 / MinIO bucket notifications
# ------------------------------------------------------------------


def _event_type(event_name: str) -> EventType:
    family = event_name.removeprefix("s3:").split(":", 1)[0]
    if family == "ObjectCreated":
        return EventType.OBJECT_CREATED
    if family == "ObjectRemoved":
        return EventType.OBJECT_REMOVED
    return EventType.OTHER


def notifications_from_s3_event(
    payload: dict[str, Any],
    zones: ZoneRegistry,
    *,
    bucket: str | None = None,
) -> list[StorageNotification]:
    """Convert an S3 event document (``{"Records": [...]}``) to notifications.

    Keys arrive URL-encoded.  Records for other buckets are dropped; keys
    outside every zone carry the ``unzoned`` zone name.
    """
    notifications: list[StorageNotification] = []
    for record in payload.get("Records", []):
        s3 = record.get("s3", {})
        record_bucket = s3.get("bucket", {}).get("name")
        if bucket is not None and record_bucket != bucket:
            logger.debug("s3_record_other_bucket", bucket=record_bucket)
            continue

        obj = s3.get("object", {})
        key = unquote_plus(obj.get("key", ""))
        if not key:
            continue
        zone = zones.zone_for_key(key)

        fields: dict[str, Any] = {
            "zone": zone.name if zone else UNZONED,
            "event_type": _event_type(record.get("eventName", "")),
            "document_key": key,
            "content_type": obj.get("contentType"),
            "size": obj.get("size") or 0,
            "hash": str(obj.get("eTag", "")).strip('"'),
        }
        if record.get("eventTime"):
            fields["timestamp"] = record["eventTime"]
        notifications.append(StorageNotification(**fields))
    return notifications
