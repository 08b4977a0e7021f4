"""S3 storage substrate shared by every service.

All boto3 calls are wrapped with ``asyncio.to_thread()`` to avoid blocking.
Keys are always built from a zone prefix, so every write lands in a zone
whose trigger policy is known.
"""

from __future__ import annotations

import asyncio
import re

import boto3
import structlog
from botocore.exceptions import ClientError
from pydantic import BaseModel

from .config import StorageConfig
from .zones import ZoneRegistry

logger = structlog.get_logger()


class ObjectStore:
    """Write, read and presign objects in the configured bucket."""

    def __init__(self, config: StorageConfig) -> None:
        self._config = config
        self._zones: ZoneRegistry = config.zone_registry()
        self._client = None  # type: ignore[assignment]

    @property
    def bucket(self) -> str:
        return self._config.bucket

    @property
    def zones(self) -> ZoneRegistry:
        return self._zones

    async def start(self) -> None:
        """Create the boto3 S3 client."""
        kwargs: dict = {"region_name": self._config.region}
        if self._config.endpoint_url:
            kwargs["endpoint_url"] = self._config.endpoint_url
        self._client = await asyncio.to_thread(boto3.client, "s3", **kwargs)
        logger.info("object_store_started", bucket=self._config.bucket)

    async def stop(self) -> None:
        """Clean up the boto3 client."""
        self._client = None
        logger.info("object_store_stopped")

    # ------------------------------------------------------------------
    # Keys and references
    # ------------------------------------------------------------------

    def zone_key(self, zone_name: str, relative: str) -> str:
        """Build a key inside *zone_name* from a zone-relative path."""
        return self._zones.require(zone_name).prefix + relative.lstrip("/")

    def uri(self, key: str) -> str:
        return f"s3://{self._config.bucket}/{key}"

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def put_bytes(
        self,
        key: str,
        body: bytes,
        *,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> str:
        """Write *body* at *key*.  Returns the ``s3://`` URI."""
        assert self._client is not None, "S3 client not started"
        kwargs: dict = {
            "Bucket": self._config.bucket,
            "Key": key,
            "Body": body,
            "ContentType": content_type,
        }
        if metadata:
            kwargs["Metadata"] = metadata
        await asyncio.to_thread(self._client.put_object, **kwargs)
        uri = self.uri(key)
        logger.debug("object_written", uri=uri, size=len(body))
        return uri

    async def put_json(self, key: str, payload: BaseModel) -> str:
        body = payload.model_dump_json(indent=2).encode("utf-8")
        return await self.put_bytes(key, body, content_type="application/json")

    async def copy(self, source_uri: str, key: str, *, content_type: str) -> str:
        """Server-side copy of *source_uri* to *key* in this bucket."""
        assert self._client is not None, "S3 client not started"
        bucket, source_key = parse_s3_uri(source_uri)
        await asyncio.to_thread(
            self._client.copy_object,
            Bucket=self._config.bucket,
            Key=key,
            CopySource={"Bucket": bucket, "Key": source_key},
            ContentType=content_type,
            MetadataDirective="REPLACE",
        )
        uri = self.uri(key)
        logger.debug("object_copied", source=source_uri, uri=uri)
        return uri

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_bytes(self, uri: str) -> bytes:
        """Download the object behind an ``s3://`` URI."""
        assert self._client is not None, "S3 client not started"
        bucket, key = parse_s3_uri(uri)
        response = await asyncio.to_thread(
            self._client.get_object,
            Bucket=bucket,
            Key=key,
        )
        body: bytes = await asyncio.to_thread(response["Body"].read)
        logger.debug("object_read", uri=uri, size=len(body))
        return body

    async def get_bytes_if_exists(self, uri: str) -> bytes | None:
        """Like :meth:`get_bytes`, but returns None for a missing object."""
        try:
            return await self.get_bytes(uri)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                return None
            raise

    # ------------------------------------------------------------------
    # Presigned access
    # ------------------------------------------------------------------

    async def presign_create(self, key: str, *, expires_in: int, content_type: str | None) -> str:
        """Presign a create-only ``PUT`` for *key*.

        ``If-None-Match: *`` makes the URL fail once the object exists, so
        the grant can write the key at most once.
        """
        assert self._client is not None, "S3 client not started"
        params: dict = {
            "Bucket": self._config.bucket,
            "Key": key,
            "IfNoneMatch": "*",
        }
        if content_type:
            params["ContentType"] = content_type
        return await asyncio.to_thread(
            self._client.generate_presigned_url,
            "put_object",
            Params=params,
            ExpiresIn=expires_in,
            HttpMethod="PUT",
        )


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def parse_s3_uri(uri: str) -> tuple[str, str]:
    """Parse ``s3://bucket/key`` into (bucket, key)."""
    if not uri.startswith("s3://"):
        raise ValueError(f"Invalid S3 URI: {uri}")
    without_scheme = uri[5:]
    bucket, _, key = without_scheme.partition("/")
    if not bucket or not key:
        raise ValueError(f"Invalid S3 URI: {uri}")
    return bucket, key


def sanitize_filename(name: str) -> str:
    """Remove characters unsafe for S3 keys."""
    return re.sub(r"[^\w.\-]", "_", name)
