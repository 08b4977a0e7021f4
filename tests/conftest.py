"""Shared test fixtures for the Carebridge test suite."""

from __future__ import annotations

import io
from collections.abc import Callable
from datetime import timedelta
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
from botocore.exceptions import ClientError

from carebridge_framework import AlertPublisher, EventPublisher, ObjectStore, RetryConfig, StorageConfig
from carebridge_pipeline import (
    ExecutionStore,
    PipelineConfig,
    StageHandler,
    StageHandlerRegistry,
    WorkflowOrchestrator,
)
from carebridge_schema import (
    EventType,
    StageName,
    StageRequest,
    StageResponse,
    StorageNotification,
)

# ------------------------------------------------------------------
# In-memory S3 client
# ------------------------------------------------------------------


class FakeS3Client:
    """Stands in for the boto3 S3 client; objects live in a dict."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], dict[str, Any]] = {}
        self.presigned: list[dict[str, Any]] = []
        self.put_failures: int = 0

    def put_object(self, *, Bucket, Key, Body, ContentType, Metadata=None):  # noqa: N803
        if self.put_failures > 0:
            self.put_failures -= 1
            raise ClientError({"Error": {"Code": "SlowDown", "Message": "slow down"}}, "PutObject")
        self.objects[(Bucket, Key)] = {
            "Body": bytes(Body),
            "ContentType": ContentType,
            "Metadata": dict(Metadata or {}),
        }
        return {"ETag": '"etag"'}

    def get_object(self, *, Bucket, Key):  # noqa: N803
        try:
            stored = self.objects[(Bucket, Key)]
        except KeyError:
            raise ClientError(
                {"Error": {"Code": "NoSuchKey", "Message": "not found"}},
                "GetObject",
            ) from None
        return {"Body": io.BytesIO(stored["Body"]), "ContentType": stored["ContentType"]}

    def copy_object(self, *, Bucket, Key, CopySource, ContentType, MetadataDirective):  # noqa: N803
        source = self.get_object(Bucket=CopySource["Bucket"], Key=CopySource["Key"])
        self.objects[(Bucket, Key)] = {
            "Body": source["Body"].read(),
            "ContentType": ContentType,
            "Metadata": {},
        }

    def generate_presigned_url(self, operation, *, Params, ExpiresIn, HttpMethod):  # noqa: N803
        self.presigned.append(
            {"operation": operation, "params": Params, "expires_in": ExpiresIn, "method": HttpMethod}
        )
        return f"https://{Params['Bucket']}.s3.test/{Params['Key']}?X-Amz-Expires={ExpiresIn}"

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(key for _, key in self.objects if key.startswith(prefix))

    def body(self, key: str, bucket: str = "test-bucket") -> bytes:
        return self.objects[(bucket, key)]["Body"]


@pytest.fixture
def storage_config() -> StorageConfig:
    return StorageConfig(bucket="test-bucket")


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(
        max_attempts=3,
        initial_wait_seconds=0.0,
        max_wait_seconds=0.0,
        multiplier=0.0,
    )


@pytest.fixture
def s3_client() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
async def object_store(storage_config: StorageConfig, s3_client: FakeS3Client) -> ObjectStore:
    store = ObjectStore(storage_config)
    with patch("carebridge_framework.storage.boto3") as mock_boto3:
        mock_boto3.client.return_value = s3_client
        await store.start()
    return store


@pytest.fixture
def publisher() -> AsyncMock:
    return AsyncMock(spec=EventPublisher)


# ------------------------------------------------------------------
# Sample EML builders
# ------------------------------------------------------------------


def build_plain_email(
    *,
    subject: str = "Referral",
    from_addr: str = "clinic@example.org",
    to_addr: str = "intake@carebridge.test",
    body: str = "Please see the attached referral.",
    message_id: str = "<plain-001@example.org>",
) -> bytes:
    """Build a simple plain-text email as raw bytes."""
    msg = MIMEText(body, "plain")
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_addr
    msg["Message-ID"] = message_id
    msg["Date"] = "Mon, 01 Jun 2025 12:00:00 +0000"
    return msg.as_bytes()


def build_multipart_email(
    *,
    body_text: str = "Plain body",
    attachments: list[tuple[str, str, bytes]] | None = None,
    message_id: str = "<multi-001@example.org>",
    to_addr: str = "intake@carebridge.test",
) -> bytes:
    """Build a multipart email with a text body and optional attachments."""
    msg = MIMEMultipart("mixed")
    msg["Subject"] = "Lab results"
    msg["From"] = "lab@example.org"
    msg["To"] = to_addr
    msg["Message-ID"] = message_id
    msg["Date"] = "Mon, 01 Jun 2025 12:00:00 +0000"

    alt = MIMEMultipart("alternative")
    alt.attach(MIMEText(body_text, "plain"))
    alt.attach(MIMEText(f"<p>{body_text}</p>", "html"))
    msg.attach(alt)

    for filename, content_type, payload in attachments or []:
        maintype, subtype = content_type.split("/", 1)
        part = MIMEBase(maintype, subtype)
        part.set_payload(payload)
        encoders.encode_base64(part)
        part.add_header("Content-Disposition", "attachment", filename=filename)
        msg.attach(part)

    return msg.as_bytes()


@pytest.fixture
def plain_eml_bytes() -> bytes:
    return build_plain_email()


@pytest.fixture
def multipart_eml_bytes() -> bytes:
    return build_multipart_email(
        attachments=[
            ("report.pdf", "application/pdf", b"%PDF-1.4 fake pdf content"),
            ("labs.csv", "text/csv", b"test,value\nhba1c,6.1\n"),
        ],
    )


# ------------------------------------------------------------------
# Notifications
# ------------------------------------------------------------------


def make_notification(
    key: str = "incoming/report.pdf",
    *,
    zone: str = "incoming",
    event_type: EventType = EventType.OBJECT_CREATED,
    content_hash: str = "hash-1",
) -> StorageNotification:
    return StorageNotification(
        zone=zone,
        event_type=event_type,
        document_key=key,
        content_type="application/pdf",
        size=1024,
        hash=content_hash,
    )


def make_s3_event(key: str, *, event_name: str = "s3:ObjectCreated:Put", bucket: str = "test-bucket") -> dict:
    return {
        "EventName": event_name,
        "Key": f"{bucket}/{key}",
        "Records": [
            {
                "eventVersion": "2.0",
                "eventSource": "minio:s3",
                "eventTime": "2025-06-01T12:00:00.000Z",
                "eventName": event_name,
                "s3": {
                    "bucket": {"name": bucket},
                    "object": {
                        "key": key,
                        "size": 2048,
                        "eTag": '"d41d8cd98f00b204e9800998ecf8427e"',
                        "contentType": "application/pdf",
                    },
                },
            }
        ],
    }


# ------------------------------------------------------------------
# Stage handlers
# ------------------------------------------------------------------

Step = StageResponse | BaseException | Callable[[StageRequest], Any]


class ScriptedHandler(StageHandler):
    """Replays a scripted list of outcomes, then accepts.

    Each step is a :class:`StageResponse`, an exception to raise, or an
    async callable receiving the request.  Accepting writes nothing; the
    output reference is ``<output_prefix>result.json``.
    """

    def __init__(self, stage: StageName, script: list[Step] | None = None) -> None:
        self._stage = stage
        self._script = list(script or [])
        self.requests: list[StageRequest] = []

    @property
    def stage(self) -> StageName:
        return self._stage

    async def invoke(self, request: StageRequest) -> StageResponse:
        self.requests.append(request)
        if self._script:
            step = self._script.pop(0)
            if isinstance(step, BaseException):
                raise step
            if isinstance(step, StageResponse):
                return step
            return await step(request)
        return StageResponse.accept(f"{request.output_prefix}result.json")


def make_handlers(**scripts: list[Step]) -> tuple[StageHandlerRegistry, dict[StageName, ScriptedHandler]]:
    registry = StageHandlerRegistry()
    handlers = {stage: ScriptedHandler(stage, scripts.get(stage.value)) for stage in StageName}
    for handler in handlers.values():
        registry.register(handler)
    return registry, handlers


# ------------------------------------------------------------------
# Pipeline
# ------------------------------------------------------------------


@pytest.fixture
def pipeline_config(storage_config: StorageConfig, retry_config: RetryConfig) -> PipelineConfig:
    return PipelineConfig(
        database_url="sqlite+aiosqlite://",
        storage=storage_config,
        retry=retry_config,
        retention_sweep_seconds=3600,
    )


@pytest.fixture
async def execution_store():
    store = ExecutionStore("sqlite+aiosqlite://", dedup_window=timedelta(hours=1))
    await store.create_schema()
    yield store
    await store.close()


def build_orchestrator(
    config: PipelineConfig,
    store: ExecutionStore,
    registry: StageHandlerRegistry,
    objects: ObjectStore,
    publisher: AsyncMock,
) -> WorkflowOrchestrator:
    return WorkflowOrchestrator(
        config,
        store,
        registry,
        objects,
        AlertPublisher(publisher, "pipeline"),
    )
