"""Tests for carebridge_email.intake (EmailIntakeAdapter and the receipt API)."""

from __future__ import annotations

from unittest.mock import AsyncMock

import httpx
import pytest

from carebridge_email import ArtifactStore, EmailIntakeAdapter, IntakeConfig, create_intake_app, message_key
from carebridge_framework import ObjectStore, RecipientRejected, RetryConfig, StorageConfig
from carebridge_schema import ExtractionRequest, ExtractionStatus, InboundEmail

from tests.conftest import FakeS3Client, build_plain_email


@pytest.fixture
def intake_config(storage_config: StorageConfig, retry_config: RetryConfig) -> IntakeConfig:
    return IntakeConfig(
        recipients=["Intake@CareBridge.test"],
        storage=storage_config,
        retry=retry_config,
    )


@pytest.fixture
def adapter(intake_config: IntakeConfig, object_store: ObjectStore, publisher: AsyncMock) -> EmailIntakeAdapter:
    return EmailIntakeAdapter(intake_config, store=object_store, publisher=publisher)


@pytest.fixture
def artifacts(object_store: ObjectStore) -> ArtifactStore:
    return ArtifactStore(object_store, "raw-email")


class TestIntakeConfig:
    def test_recipients_normalized(self, intake_config: IntakeConfig):
        assert intake_config.recipients == ["intake@carebridge.test"]

    def test_recipients_required(self, storage_config: StorageConfig):
        with pytest.raises(ValueError):
            IntakeConfig(recipients=["  "], storage=storage_config)


class TestReceiveRaw:
    @pytest.mark.asyncio
    async def test_accepts_known_recipient(
        self,
        adapter: EmailIntakeAdapter,
        artifacts: ArtifactStore,
        s3_client: FakeS3Client,
        publisher: AsyncMock,
        plain_eml_bytes: bytes,
    ):
        ack = await adapter.receive_raw("intake@carebridge.test", plain_eml_bytes)

        key = f"raw-email/{message_key('<plain-001@example.org>')}/message.eml"
        assert ack.message_id == "<plain-001@example.org>"
        assert ack.raw_blob_ref == f"s3://test-bucket/{key}"
        assert s3_client.body(key) == plain_eml_bytes

        artifact = await artifacts.load("<plain-001@example.org>")
        assert artifact is not None
        assert artifact.status == ExtractionStatus.PENDING
        assert artifact.recipient == "intake@carebridge.test"

        publisher.send_extraction_request.assert_awaited_once_with(
            ExtractionRequest(message_id=ack.message_id, raw_blob_ref=ack.raw_blob_ref)
        )
        assert adapter.messages_accepted == 1

    @pytest.mark.asyncio
    async def test_nothing_lands_in_triggering_zone(
        self,
        adapter: EmailIntakeAdapter,
        s3_client: FakeS3Client,
        plain_eml_bytes: bytes,
    ):
        await adapter.receive_raw("intake@carebridge.test", plain_eml_bytes)
        assert s3_client.keys("incoming/") == []

    @pytest.mark.asyncio
    async def test_rejects_unknown_recipient(
        self,
        adapter: EmailIntakeAdapter,
        s3_client: FakeS3Client,
        publisher: AsyncMock,
        plain_eml_bytes: bytes,
    ):
        with pytest.raises(RecipientRejected):
            await adapter.receive_raw("someone@else.test", plain_eml_bytes)
        assert s3_client.objects == {}
        publisher.send_extraction_request.assert_not_awaited()
        assert adapter.messages_rejected == 1

    @pytest.mark.asyncio
    async def test_missing_message_id_uses_digest(self, adapter: EmailIntakeAdapter):
        raw = b"From: a@example.org\r\nTo: intake@carebridge.test\r\n\r\nhello\r\n"
        ack = await adapter.receive_raw("intake@carebridge.test", raw)
        assert ack.message_id.startswith("<sha256-")
        assert ack.message_id.endswith("@carebridge.invalid>")

    @pytest.mark.asyncio
    async def test_redelivery_of_settled_message_not_republished(
        self,
        adapter: EmailIntakeAdapter,
        artifacts: ArtifactStore,
        publisher: AsyncMock,
        plain_eml_bytes: bytes,
    ):
        await adapter.receive_raw("intake@carebridge.test", plain_eml_bytes)
        artifact = await artifacts.load("<plain-001@example.org>")
        artifact.status = ExtractionStatus.EXTRACTED
        await artifacts.save(artifact)

        await adapter.receive_raw("intake@carebridge.test", plain_eml_bytes)
        assert publisher.send_extraction_request.await_count == 1

    @pytest.mark.asyncio
    async def test_pending_redelivery_keeps_received_at(
        self,
        adapter: EmailIntakeAdapter,
        artifacts: ArtifactStore,
        publisher: AsyncMock,
        plain_eml_bytes: bytes,
    ):
        await adapter.receive_raw("intake@carebridge.test", plain_eml_bytes)
        first = await artifacts.load("<plain-001@example.org>")
        await adapter.receive_raw("intake@carebridge.test", plain_eml_bytes)
        second = await artifacts.load("<plain-001@example.org>")
        assert second.received_at == first.received_at
        assert publisher.send_extraction_request.await_count == 2

    @pytest.mark.asyncio
    async def test_publish_failure_alerts_and_raises(
        self,
        adapter: EmailIntakeAdapter,
        publisher: AsyncMock,
        plain_eml_bytes: bytes,
    ):
        publisher.send_extraction_request.side_effect = ConnectionError("broker down")
        with pytest.raises(ConnectionError):
            await adapter.receive_raw("intake@carebridge.test", plain_eml_bytes)
        assert publisher.send_extraction_request.await_count == 3
        publisher.send_alert.assert_awaited_once()
        assert adapter.messages_accepted == 0


class TestReceive:
    @pytest.mark.asyncio
    async def test_copies_blob_into_raw_email_zone(
        self,
        adapter: EmailIntakeAdapter,
        object_store: ObjectStore,
        s3_client: FakeS3Client,
    ):
        raw = build_plain_email(message_id="<copy-1@example.org>")
        staged = await object_store.put_bytes("scratch/upload.eml", raw, content_type="message/rfc822")

        ack = await adapter.receive(
            InboundEmail(
                recipient="intake@carebridge.test",
                raw_blob_ref=staged,
                message_id="<copy-1@example.org>",
            )
        )
        assert ack.raw_blob_ref.startswith("s3://test-bucket/raw-email/")
        assert s3_client.body(ack.raw_blob_ref.removeprefix("s3://test-bucket/")) == raw


class TestIntakeApi:
    @pytest.mark.asyncio
    async def test_raw_endpoint(self, adapter: EmailIntakeAdapter, plain_eml_bytes: bytes):
        app = create_intake_app(adapter)
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.post(
                "/v1/inbound-email/raw",
                params={"recipient": "intake@carebridge.test"},
                content=plain_eml_bytes,
            )
        assert resp.status_code == 202
        assert resp.json()["message_id"] == "<plain-001@example.org>"

    @pytest.mark.asyncio
    async def test_unknown_recipient_is_403(self, adapter: EmailIntakeAdapter, plain_eml_bytes: bytes):
        app = create_intake_app(adapter)
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.post(
                "/v1/inbound-email/raw",
                params={"recipient": "nobody@carebridge.test"},
                content=plain_eml_bytes,
            )
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_not_ready_before_start(self, adapter: EmailIntakeAdapter):
        app = create_intake_app(adapter)
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.get("/ready")
        assert resp.status_code == 503
